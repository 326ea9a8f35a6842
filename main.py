from paccat.CLI import paccat


if __name__ == "__main__":
    # Examples:
    #   python main.py pacman -- pacman.conf
    #   python main.py -q ./pacman-7.0.0-1-x86_64.pkg.tar.zst -- '*'
    #   python main.py -x -a linux -- 'modules\.(alias|dep)'
    paccat()
