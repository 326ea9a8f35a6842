"""pacman.conf parsing and per-run options.

`load_config` reads the subset of pacman.conf paccat needs: filesystem
locations, signature levels and the repository list with its servers.
`Options` collects the behavioral flags of one run so they can be passed
around as a single value.
"""

import enum
import glob
import logging
import platform
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .Errors import ConfigError
from .Verify import DEFAULT_POLICY, TrustPolicy, parse_siglevel

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path("/etc/pacman.conf")
DEFAULT_ROOT = Path("/")
DEFAULT_DB_PATH = Path("var/lib/pacman")
DEFAULT_CACHE_DIR = Path("/var/cache/pacman/pkg")
DEFAULT_GPG_DIR = Path("/etc/pacman.d/gnupg")


class Behavior(enum.Enum):
    """What to do with a matched entry."""
    PRINT = "print"
    LIST = "list"
    EXTRACT = "extract"
    INSTALL = "install"


class SearchMode(enum.Enum):
    """How candidate packages are found."""
    TARGETS = "targets"
    LOCAL_DB = "localdb"
    FILE_DB = "filedb"
    EVERY = "every"


@dataclass
class Options:
    regex: bool = False
    all: bool = False
    behavior: Behavior = Behavior.PRINT
    # --binary given on the command line
    binary_requested: bool = False
    # binary content may be written (requested, or stdout is not a terminal)
    binary_allowed: bool = False
    executable: bool = False
    color: bool = False
    refresh: int = 0
    localdb: bool = False
    filedb: bool = False


@dataclass
class Repo:
    name: str
    servers: List[str] = field(default_factory=list)
    siglevel: Optional[str] = None


@dataclass
class PacmanConfig:
    """Settings read from pacman.conf.

    Attributes:
        root_dir (Path): Installation root.
        db_path (Path): Directory holding ``local/`` and ``sync/``.
        cache_dirs (list[Path]): Package caches, searched in order. The
            first entry is where downloads are written.
        gpg_dir (Path): gpg home with the pacman keyring.
        architecture (str): Architecture substituted for ``$arch``.
        siglevel (TrustPolicy): Policy for repository packages.
        local_file_siglevel (TrustPolicy): Policy for local package files.
        remote_file_siglevel (TrustPolicy): Policy for packages from URLs.
        repos (list[Repo]): Sync repositories in configuration order.
    """
    root_dir: Path = DEFAULT_ROOT
    db_path: Path = DEFAULT_ROOT / DEFAULT_DB_PATH
    cache_dirs: List[Path] = field(default_factory=list)
    gpg_dir: Path = DEFAULT_GPG_DIR
    architecture: str = ""
    siglevel: TrustPolicy = DEFAULT_POLICY
    local_file_siglevel: TrustPolicy = DEFAULT_POLICY
    remote_file_siglevel: TrustPolicy = DEFAULT_POLICY
    repos: List[Repo] = field(default_factory=list)

    def repo_policy(self, name: str) -> TrustPolicy:
        for repo in self.repos:
            if repo.name == name and repo.siglevel:
                return parse_siglevel(repo.siglevel, self.siglevel)
        return self.siglevel


def _read_lines(path: Path) -> List[str]:
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigError(f"failed to read {path}") from e
    return text.splitlines()


def _parse(path: Path, section: Optional[str], values: Dict[str, Dict[str, List[str]]],
           order: List[str], depth: int = 0) -> Optional[str]:
    if depth > 10:
        raise ConfigError(f"too many nested includes at {path}")
    for raw in _read_lines(path):
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        if line.startswith("[") and line.endswith("]"):
            section = line[1:-1].strip()
            if section not in values:
                values[section] = {}
                order.append(section)
            continue
        if section is None:
            raise ConfigError(f"{path}: key '{line}' outside of a section")

        key, _, value = line.partition("=")
        key, value = key.strip(), value.strip()
        if key == "Include":
            matches = sorted(glob.glob(value))
            if not matches:
                logger.debug("include %s matched no files", value)
            for include in matches:
                _parse(Path(include), section, values, order, depth + 1)
            continue
        values[section].setdefault(key, []).append(value)
    return section


def load_config(path: Optional[Path] = None, root: Optional[Path] = None,
                dbpath: Optional[Path] = None) -> PacmanConfig:
    """Load a pacman.conf file.

    Args:
        path: Config file; the system default is used when None and
            silently skipped if it does not exist.
        root: Alternative installation root. Also moves the default
            database path below it.
        dbpath: Alternative database directory.

    Returns:
        PacmanConfig: The parsed settings with overrides applied.

    Raises:
        ConfigError: If an explicitly given file is missing or malformed.
    """
    values: Dict[str, Dict[str, List[str]]] = {}
    order: List[str] = []
    conf_path = path or DEFAULT_CONFIG
    if path is not None or conf_path.exists():
        _parse(conf_path, None, values, order)
    else:
        logger.debug("%s not found, using defaults", conf_path)

    options = values.get("options", {})

    def last(key: str) -> Optional[str]:
        found = options.get(key)
        return found[-1] if found else None

    config = PacmanConfig()
    if root is not None:
        config.root_dir = Path(root)
    elif last("RootDir"):
        config.root_dir = Path(last("RootDir"))

    if dbpath is not None:
        config.db_path = Path(dbpath)
    elif root is None and last("DBPath"):
        config.db_path = Path(last("DBPath"))
    else:
        config.db_path = config.root_dir / DEFAULT_DB_PATH

    cache_dirs = [Path(v) for value in options.get("CacheDir", []) for v in value.split()]
    config.cache_dirs = cache_dirs or [DEFAULT_CACHE_DIR]

    if last("GPGDir"):
        config.gpg_dir = Path(last("GPGDir"))

    arches = [a for value in options.get("Architecture", []) for a in value.split()]
    arch = arches[0] if arches else "auto"
    config.architecture = platform.machine() if arch == "auto" else arch

    if last("SigLevel"):
        config.siglevel = parse_siglevel(last("SigLevel"))
    config.local_file_siglevel = parse_siglevel(last("LocalFileSigLevel") or "", config.siglevel)
    config.remote_file_siglevel = parse_siglevel(last("RemoteFileSigLevel") or "", config.siglevel)

    for name in order:
        if name == "options":
            continue
        section = values[name]
        servers = [
            server.replace("$repo", name).replace("$arch", config.architecture)
            for server in section.get("Server", [])
        ]
        siglevel = section.get("SigLevel")
        config.repos.append(Repo(name=name, servers=servers, siglevel=siglevel[-1] if siglevel else None))

    return config


def with_cache_dir(config: PacmanConfig, cachedir: Optional[Path]) -> PacmanConfig:
    """Put the run's download directory in front of the configured caches.

    Downloads go to `cachedir` if given, otherwise to a ``paccat``
    directory below the system temporary directory.
    """
    first = Path(cachedir) if cachedir else Path(tempfile.gettempdir()) / "paccat"
    rest = [d for d in config.cache_dirs if d != first]
    config.cache_dirs = [first] + rest
    return config
