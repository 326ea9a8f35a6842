"""Read access to pacman's local and sync package databases.

The local database is a directory per installed package holding ``desc``
and ``files`` records. A sync database is a compressed tarball of the
same records, one directory per package; the ``.files`` flavour adds the
file manifests. Both are parsed into `Package` records on first use.
"""

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .Config import PacmanConfig, Repo
from .Errors import DecodeError, DownloadFailure
from .Protocols import Package
from .TarArchive import DECODE_ERRORS, open_tar_stream
from .Verify import TrustPolicy

logger = logging.getLogger(__name__)

_DEPEND = re.compile(r"^(?P<name>[^<>=]+)(?:(?P<op><=|>=|<|>|=)(?P<version>.+))?$")


def _rpmvercmp(a: str, b: str) -> int:
    if a == b:
        return 0
    i = j = 0
    while True:
        si, sj = i, j
        while i < len(a) and not a[i].isalnum():
            i += 1
        while j < len(b) and not b[j].isalnum():
            j += 1
        if i >= len(a) or j >= len(b):
            break
        if (i - si) != (j - sj):
            return -1 if (i - si) < (j - sj) else 1

        isnum = a[i].isdigit()
        k, m = i, j
        if isnum:
            while k < len(a) and a[k].isdigit():
                k += 1
            while m < len(b) and b[m].isdigit():
                m += 1
        else:
            while k < len(a) and a[k].isalpha():
                k += 1
            while m < len(b) and b[m].isalpha():
                m += 1

        one, two = a[i:k], b[j:m]
        if not two:
            # segments of different types: numeric is newer
            return 1 if isnum else -1
        if isnum:
            one, two = one.lstrip("0"), two.lstrip("0")
            if len(one) != len(two):
                return 1 if len(one) > len(two) else -1
        if one != two:
            return 1 if one > two else -1
        i, j = k, m

    if i >= len(a) and j >= len(b):
        return 0
    # a leftover alpha segment never beats an empty one
    if (i >= len(a) and not b[j].isalpha()) or (i < len(a) and a[i].isalpha()):
        return -1
    return 1


def _split_evr(version: str) -> Tuple[str, str, Optional[str]]:
    epoch, sep, rest = version.partition(":")
    if not sep or not epoch.isdigit():
        epoch, rest = "0", version
    ver, sep, rel = rest.rpartition("-")
    if not sep:
        return epoch, rest, None
    return epoch, ver, rel


def vercmp(a: str, b: str) -> int:
    """Compare two package versions like pacman's vercmp.

    Returns:
        int: negative, zero or positive as `a` is older, equal or newer.
    """
    if a == b:
        return 0
    e1, v1, r1 = _split_evr(a)
    e2, v2, r2 = _split_evr(b)
    ret = _rpmvercmp(e1, e2)
    if ret == 0:
        ret = _rpmvercmp(v1, v2)
        if ret == 0 and r1 is not None and r2 is not None:
            ret = _rpmvercmp(r1, r2)
    return ret


def _satisfies(version: str, op: Optional[str], wanted: Optional[str]) -> bool:
    if op is None:
        return True
    cmp = vercmp(version, wanted)
    return {
        "=": cmp == 0,
        "<": cmp < 0,
        "<=": cmp <= 0,
        ">": cmp > 0,
        ">=": cmp >= 0,
    }[op]


def parse_target(target: str) -> Tuple[Optional[str], str, Optional[str], Optional[str]]:
    """Split ``[repo/]name[op version]`` into its parts.

    Returns:
        tuple: ``(repo, name, op, version)``; absent parts are None.
    """
    repo = None
    if "/" in target:
        repo, target = target.split("/", 1)
    m = _DEPEND.match(target)
    if not m:
        return repo, target, None, None
    return repo, m.group("name"), m.group("op"), m.group("version")


def parse_desc(text: str) -> Dict[str, List[str]]:
    """Parse a ``desc``/``files`` record into ``{KEY: [values]}``."""
    fields: Dict[str, List[str]] = {}
    key = None
    for line in text.splitlines():
        if line.startswith("%") and line.endswith("%") and len(line) > 2:
            key = line[1:-1]
            fields[key] = []
        elif not line:
            key = None
        elif key is not None:
            fields[key].append(line)
    return fields


def _package_from(fields: Dict[str, List[str]], db: str) -> Optional[Package]:
    def first(key: str) -> str:
        values = fields.get(key)
        return values[0] if values else ""

    if not first("NAME"):
        return None
    files = fields.get("FILES")
    return Package(
        name=first("NAME"),
        version=first("VERSION"),
        db=db,
        filename=first("FILENAME"),
        arch=first("ARCH"),
        provides=tuple(fields.get("PROVIDES", ())),
        files=tuple(files) if files is not None else None,
    )


class PackageDatabase:
    """An ordered name -> Package mapping for one database."""

    def __init__(self, name: str, packages: Iterable[Package] = (),
                 servers: Iterable[str] = ()) -> None:
        self.name = name
        self.servers = list(servers)
        self.packages: Dict[str, Package] = {}
        for pkg in packages:
            self.packages[pkg.name] = pkg

    def __iter__(self) -> Iterator[Package]:
        return iter(self.packages.values())

    def satisfier(self, name: str, op: Optional[str], version: Optional[str]) -> Optional[Package]:
        pkg = self.packages.get(name)
        if pkg is not None and _satisfies(pkg.version, op, version):
            return pkg
        for pkg in self:
            for provide in pkg.provides:
                _, pname, _, pversion = parse_target(provide)
                if pname != name:
                    continue
                if op is None or (pversion is not None and _satisfies(pversion, op, version)):
                    return pkg
        return None


def load_local_db(path: Path) -> PackageDatabase:
    """Read the local database directory (``<dbpath>/local``)."""
    packages = []
    if not path.is_dir():
        logger.debug("local database %s does not exist", path)
        return PackageDatabase("local")
    for entry in sorted(path.iterdir()):
        desc = entry / "desc"
        if not desc.is_file():
            continue
        text = desc.read_text()
        files = entry / "files"
        if files.is_file():
            text += "\n" + files.read_text()
        pkg = _package_from(parse_desc(text), "local")
        if pkg is not None:
            packages.append(pkg)
    return PackageDatabase("local", packages)


def load_sync_db(path: Path, name: str, servers: Iterable[str] = ()) -> PackageDatabase:
    """Read a sync database tarball.

    Raises:
        DecodeError: If the database file is corrupt.
    """
    records: Dict[str, str] = {}
    try:
        with open(path, "rb") as stream, open_tar_stream(stream) as archive:
            for member in archive:
                if not member.isreg():
                    continue
                directory, _, record = member.name.rpartition("/")
                if record not in ("desc", "files"):
                    continue
                data = archive.extractfile(member).read().decode("utf-8", "replace")
                records[directory] = records.get(directory, "") + "\n" + data
    except DECODE_ERRORS as e:
        raise DecodeError(f"failed to read database {path}") from e

    packages = []
    for directory in sorted(records):
        pkg = _package_from(parse_desc(records[directory]), name)
        if pkg is not None:
            packages.append(pkg)
    return PackageDatabase(name, packages, servers)


class PackageQuery:
    """Package lookup over the configured local and sync databases.

    Implements `paccat.Protocols.PackageQueryProtocol`.

    Attributes:
        config (PacmanConfig): Source of db_path and the repository list.
        filedb (bool): Load ``<repo>.files`` instead of ``<repo>.db`` so
            sync packages carry file manifests.
    """

    def __init__(self, config: PacmanConfig, filedb: bool = False) -> None:
        self.config = config
        self.filedb = filedb
        self._local: Optional[PackageDatabase] = None
        self._sync: Optional[List[PackageDatabase]] = None

    @property
    def extension(self) -> str:
        return ".files" if self.filedb else ".db"

    def sync_path(self, repo: Repo) -> Path:
        return self.config.db_path / "sync" / f"{repo.name}{self.extension}"

    @property
    def localdb(self) -> PackageDatabase:
        if self._local is None:
            self._local = load_local_db(self.config.db_path / "local")
        return self._local

    @property
    def syncdbs(self) -> List[PackageDatabase]:
        if self._sync is None:
            dbs = []
            for repo in self.config.repos:
                path = self.sync_path(repo)
                if not path.exists():
                    logger.warning("database file for %s does not exist (use pacman to download)", repo.name)
                    dbs.append(PackageDatabase(repo.name, servers=repo.servers))
                    continue
                dbs.append(load_sync_db(path, repo.name, repo.servers))
            self._sync = dbs
        return self._sync

    def find(self, target: str, local: bool = False) -> Optional[Package]:
        repo, name, op, version = parse_target(target)
        if local:
            if repo is not None:
                return None
            return self.localdb.satisfier(name, op, version)
        for db in self.syncdbs:
            if repo is not None and db.name != repo:
                continue
            pkg = db.satisfier(name, op, version)
            if pkg is not None:
                return pkg
        return None

    def file_manifest(self, pkg: Package) -> Optional[List[str]]:
        return list(pkg.files) if pkg.files is not None else None

    def packages(self, local: bool = False) -> Iterator[Package]:
        if local:
            yield from self.localdb
            return
        for db in self.syncdbs:
            yield from db

    def _db(self, name: str) -> Optional[PackageDatabase]:
        for db in self.syncdbs:
            if db.name == name:
                return db
        return None

    def download_url(self, pkg: Package) -> str:
        """Return ``<server>/<filename>`` for `pkg`.

        Installed packages are looked up in the sync databases by name
        and version first, since the local database records no origin.

        Raises:
            DownloadFailure: If no repository carries the package or its
                repository has no server.
        """
        if pkg.is_local:
            synced = next(
                (p for db in self.syncdbs for p in db
                 if p.name == pkg.name and p.version == pkg.version),
                None,
            )
            if synced is None:
                raise DownloadFailure(f"no repository provides {pkg.name}-{pkg.version}")
            pkg = synced

        db = self._db(pkg.db)
        if db is None or not db.servers:
            raise DownloadFailure(f"no servers configured for repository: {pkg.db}")
        return f"{db.servers[0].rstrip('/')}/{pkg.filename}"

    def policy_for(self, pkg: Package) -> Optional[TrustPolicy]:
        if pkg.is_local:
            return None
        return self.config.repo_policy(pkg.db)

    def refresh(self, downloader, force: bool = False) -> None:
        """Download fresh copies of the sync databases.

        Args:
            downloader: A `paccat.FileIO.Downloader`.
            force: Download even if the local copy looks current.

        Raises:
            DownloadFailure: If a repository could not be fetched from any
                of its servers.
        """
        for repo in self.config.repos:
            dest = self.sync_path(repo)
            errors = []
            for server in repo.servers:
                url = f"{server.rstrip('/')}/{repo.name}{self.extension}"
                try:
                    downloader.refresh(url, dest, force=force)
                    break
                except DownloadFailure as e:
                    errors.append(e)
            else:
                if errors:
                    raise DownloadFailure(f"failed to synchronize {repo.name}") from errors[-1]
                raise DownloadFailure(f"no servers configured for repository: {repo.name}")
        self._sync = None
