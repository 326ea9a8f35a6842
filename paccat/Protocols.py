"""Collaborator protocols and the records passed between them.

This module declares the interfaces the resolution and extraction
pipeline depends on: a package query service, a batch downloader, a
signature verifier and an archive decoder. Concrete implementations live
in `paccat.Database`, `paccat.FileIO`, `paccat.Verify` and
`paccat.TarArchive`; tests substitute their own.
"""

import enum
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Protocol, Union

from .Verify import TrustPolicy


class Provenance(enum.Enum):
    """Where a package archive came from; selects the trust policy."""
    LOCAL_FILE = "local"
    REPOSITORY = "repository"
    REMOTE_FILE = "remote"


@dataclass(frozen=True)
class Package:
    """A package record read from a local or sync database.

    Attributes:
        name: Package name.
        version: Full ``epoch:version-release`` string.
        db: Name of the database the record came from (``local`` for the
            local database, otherwise the repository name).
        filename: Archive file name on the repository servers.
        provides: Virtual names this package satisfies.
        files: File manifest, or None when the database carries none.
    """
    name: str
    version: str
    db: str
    filename: str = ""
    arch: str = ""
    provides: tuple = ()
    files: Optional[tuple] = field(default=None, compare=False, repr=False)

    @property
    def is_local(self) -> bool:
        return self.db == "local"


@dataclass(frozen=True)
class ArchiveEntry:
    """One filesystem object inside a package archive.

    `mode` is a full ``st_mode`` value: file type bits plus permissions.
    """
    path: str
    mode: int
    uid: int = 0
    gid: int = 0

    @property
    def is_regular(self) -> bool:
        return stat.S_ISREG(self.mode)

    @property
    def permissions(self) -> int:
        return stat.S_IMODE(self.mode)

    @property
    def is_executable(self) -> bool:
        return bool(self.mode & 0o111)


@dataclass(frozen=True)
class EntryStart:
    entry: ArchiveEntry


@dataclass(frozen=True)
class DataChunk:
    data: bytes


@dataclass(frozen=True)
class EntryEnd:
    pass


ArchiveEvent = Union[EntryStart, DataChunk, EntryEnd]


@dataclass(frozen=True)
class ResolvedFile:
    """A local package archive that exists and passed verification."""
    path: Path
    provenance: Provenance
    policy: TrustPolicy


class PackageQueryProtocol(Protocol):
    """Read access to the package databases."""

    def find(self, target: str, local: bool = False) -> Optional[Package]:
        """Return the package satisfying `target`, or None.

        Args:
            target: A package name, ``repo/name`` or dependency string
                such as ``name>=1.0``.
            local: Search the local (installed) database instead of the
                sync databases.
        """
        ...

    def file_manifest(self, pkg: Package) -> Optional[List[str]]:
        """Return the package's file list, or None if the database has none."""
        ...

    def download_url(self, pkg: Package) -> str:
        """Return the URL the package archive can be fetched from."""
        ...

    def packages(self, local: bool = False) -> Iterable[Package]:
        """Iterate over every package of the local or sync databases."""
        ...

    def policy_for(self, pkg: Package) -> Optional[TrustPolicy]:
        """Return the repository-specific trust policy, if any."""
        ...


class DownloaderProtocol(Protocol):
    """Batch downloader for package archives."""

    def fetch(self, urls: List[str], signatures: bool = True) -> List[Path]:
        """Download `urls` and return local paths in the same order."""
        ...


class VerifierProtocol(Protocol):
    def verify(self, path: Path, policy: TrustPolicy) -> None:
        """Raise VerificationFailure if `path` does not satisfy `policy`."""
        ...


class ArchiveDecoderProtocol(Protocol):
    def events(self, path: Path) -> Iterator[ArchiveEvent]:
        """Yield the archive's entries as start/chunk/end events, in order.

        Raises:
            DecodeError: If the archive is corrupt or unreadable.
        """
        ...
