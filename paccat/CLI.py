"""paccat CLI entrypoint.

This module provides the `paccat` click command, which resolves package
targets to local archives (downloading and verifying them when needed)
and then prints, lists, extracts or installs the requested files.

Usage example (from shell):
    paccat pacman -- pacman.conf
    paccat -x -a linux -- 'modules\\.alias'
    paccat -F -q -- libalpm.so

The command wires the pipeline together and owns the user interaction:
argument validation, logging, download progress and the exit status.
"""

import logging
import os
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn, TransferSpeedColumn

from . import __version__
from .Config import Behavior, Options, SearchMode, load_config, with_cache_dir
from .Database import PackageQuery
from .EntryStream import EntryStreamProcessor
from .Errors import PaccatError, render_error
from .FileIO import Downloader, DownloadResult
from .Matcher import Matcher
from .Output import OutputRouter, find_pager
from .TarArchive import TarArchiveDecoder
from .Targets import SignaturePolicies, TargetResolver
from .Verify import GpgVerifier, VerificationGate

# Diagnostics go to stderr; stdout carries file content only.
console = Console(stderr=True)

EPILOG = """\b
a target can be specified as:
    <pkgname>, <repo>/<pkgname>, <url> or <file>.

files can be specified as just the filename or the full path.
"""

FILES_META = "paccat.files"


class TargetsAndFiles(click.Command):
    """Split ``<targets>... -- <files>...`` before click parses the targets."""

    def parse_args(self, ctx: click.Context, args: List[str]) -> List[str]:
        if "--" in args:
            split = args.index("--")
            ctx.meta[FILES_META] = args[split + 1:]
            args = args[:split]
        return super().parse_args(ctx, args)


def setup_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False, markup=False)],
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _read_stdin_values() -> List[str]:
    return click.get_text_stream("stdin").read().split()


def _expand_stdin(values: Sequence[str]) -> List[str]:
    expanded = []
    for value in values:
        if value == "-":
            expanded.extend(_read_stdin_values())
        else:
            expanded.append(value)
    return expanded


def _search_mode(targets: Sequence[str], localdb: bool, filedb: bool) -> Tuple[SearchMode, List[str]]:
    every = list(targets) == ["*"]
    if localdb:
        return SearchMode.LOCAL_DB, [] if every else list(targets)
    if every:
        return SearchMode.EVERY, []
    if filedb:
        return SearchMode.FILE_DB, list(targets)
    if not targets:
        raise click.UsageError("no targets specified")
    return SearchMode.TARGETS, list(targets)


def _download_callbacks(progress: Progress):
    tasks = {}

    def on_progress(filename: str, advance: int, total: Optional[int]) -> None:
        if filename not in tasks:
            tasks[filename] = progress.add_task(filename, total=total)
        progress.update(tasks[filename], advance=advance)

    def on_event(filename: str, result: DownloadResult) -> None:
        if result is DownloadResult.SUCCESS:
            progress.console.print(f"{filename} downloaded", highlight=False)
        elif result is DownloadResult.UP_TO_DATE:
            progress.console.print(f"{filename} is up to date", highlight=False)
        elif result is DownloadResult.FAILED:
            progress.console.print(f"[red]{filename} failed to download[/red]", highlight=False)
        if filename in tasks:
            progress.remove_task(tasks.pop(filename))

    return on_event, on_progress


def run(options: Options, targets: Sequence[str], files: Sequence[str], mode: SearchMode,
        config_path: Optional[Path] = None, root: Optional[Path] = None,
        dbpath: Optional[Path] = None, cachedir: Optional[Path] = None) -> int:
    """Resolve `targets` and process their archives.

    Returns:
        int: 0 if every pattern in `files` matched at least once, else 1.

    Raises:
        PaccatError: On any resolution, download, verification, decode,
            extraction or pager failure.
    """
    # Patterns are compiled before any I/O so a bad regex fails fast.
    matcher = Matcher(files, regex=options.regex)
    config = with_cache_dir(load_config(config_path, root=root, dbpath=dbpath), cachedir)
    query = PackageQuery(config, filedb=options.filedb)
    policies = SignaturePolicies(
        local_file=config.local_file_siglevel,
        repository=config.siglevel,
        remote_file=config.remote_file_siglevel,
    )

    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        console=console,
        transient=True,
        disable=not console.is_terminal,
    ) as progress:
        on_event, on_progress = _download_callbacks(progress)
        with Downloader(config.cache_dirs, on_event=on_event, on_progress=on_progress) as downloader:
            if options.refresh > 0:
                progress.console.print("synchronising package databases...")
                query.refresh(downloader, force=options.refresh > 1)

            resolver = TargetResolver(
                query,
                downloader,
                VerificationGate(GpgVerifier(config.gpg_dir)),
                matcher,
                policies,
                all_matches=options.all,
                executable_only=options.executable,
            )
            resolved = resolver.resolve(targets, mode)

    pager = None
    if options.color and options.behavior is Behavior.PRINT:
        pager = find_pager()
    router = OutputRouter(sys.stdout.buffer, pager=pager, elevated=os.geteuid() == 0)
    destination = config.root_dir if options.behavior is Behavior.INSTALL else Path.cwd()
    processor = EntryStreamProcessor(matcher, router, TarArchiveDecoder(), options, destination)

    for resolved_file in resolved:
        processor.scan(resolved_file.path)

    return 0 if matcher.all_matched() else 1


def _silence_stdout() -> None:
    # Python flushes stdout at exit; point it at devnull so that flush
    # cannot raise again on the closed pipe.
    try:
        fileno = sys.stdout.fileno()
    except (AttributeError, OSError):
        return
    devnull = os.open(os.devnull, os.O_WRONLY)
    os.dup2(devnull, fileno)


@click.command(cls=TargetsAndFiles, epilog=EPILOG,
               context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument("targets", nargs=-1)
@click.option("--regex", "-x", is_flag=True, help="Enable searching using regular expressions")
@click.option("--all", "-a", "all_", is_flag=True, help="Print all matches of files instead of just the first")
@click.option("--quiet", "-q", is_flag=True, help="Print file names instead of file content")
@click.option("--extract", "-e", is_flag=True, help="Extract matched files to the current directory")
@click.option("--install", "-i", is_flag=True, help="Install matched files into the root directory")
@click.option("--binary", is_flag=True, help="Print binary files")
@click.option("--executable", is_flag=True, help="Only match executable files")
@click.option("--color", type=click.Choice(["auto", "always", "never"]), default="auto",
              show_default=True, help="Colorize and page output with bat")
@click.option("--files", "-F", "filedb", is_flag=True,
              help="Use files database to search for files before deciding to download")
@click.option("--query", "-Q", "localdb", is_flag=True,
              help="Use local database to search for files before deciding to download")
@click.option("--refresh", "-y", count=True, help="Download fresh package databases (twice to force)")
@click.option("--root", "-r", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Set an alternative root directory")
@click.option("--dbpath", "-b", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Set an alternative database location")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Use an alternative pacman.conf")
@click.option("--cachedir", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Set an alternative cache directory")
@click.option("--debug", is_flag=True, help="Show debug messages")
@click.version_option(__version__, prog_name="paccat")
def paccat(targets: Tuple[str, ...], regex: bool, all_: bool, quiet: bool, extract: bool,
           install: bool, binary: bool, executable: bool, color: str, filedb: bool,
           localdb: bool, refresh: int, root: Optional[Path], dbpath: Optional[Path],
           config_path: Optional[Path], cachedir: Optional[Path], debug: bool):
    """Print pacman package files.

    Targets and the files to search for are separated by `--`. With
    --query or --files and no `--`, every argument is a file and the
    database is searched for packages containing them. A bare `-` reads
    targets or files from standard input.
    """
    setup_logging(debug)
    ctx = click.get_current_context()

    if sum((quiet, extract, install)) > 1:
        raise click.UsageError("--quiet, --extract and --install are mutually exclusive")
    if filedb and localdb:
        raise click.UsageError("--files and --query are mutually exclusive")

    files = ctx.meta.get(FILES_META)
    if files is None:
        if not (localdb or filedb):
            raise click.UsageError("no files specified (separate targets and files with --)")
        targets, files = (), list(targets)
    if "-" in targets and "-" in files:
        raise click.UsageError("targets and files cannot both be read from stdin")
    targets = _expand_stdin(targets)
    files = _expand_stdin(files)
    if not files:
        raise click.UsageError("no files specified")

    mode, targets = _search_mode(targets, localdb, filedb)

    stdout_tty = sys.stdout.isatty()
    if quiet:
        behavior = Behavior.LIST
    elif extract:
        behavior = Behavior.EXTRACT
    elif install:
        behavior = Behavior.INSTALL
    else:
        behavior = Behavior.PRINT

    options = Options(
        regex=regex,
        all=all_,
        behavior=behavior,
        binary_requested=binary,
        binary_allowed=binary or not stdout_tty,
        executable=executable,
        color=color == "always" or (color == "auto" and stdout_tty),
        refresh=refresh,
        localdb=localdb,
        filedb=filedb,
    )

    try:
        code = run(options, targets, files, mode, config_path=config_path,
                   root=root, dbpath=dbpath, cachedir=cachedir)
    except BrokenPipeError:
        _silence_stdout()
        sys.exit(1)
    except (PaccatError, OSError) as e:
        console.print(render_error(e), style="red", markup=False, highlight=False)
        sys.exit(1)
    sys.exit(code)
