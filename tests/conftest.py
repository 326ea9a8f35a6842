"""Shared pytest fixtures for paccat tests.

Package archives and sync databases are built on the fly with tarfile so
every test works on small, fully known inputs.
"""

from __future__ import annotations

import io
import stat
import tarfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest
import zstandard

from paccat.Protocols import ArchiveEntry, DataChunk, EntryEnd, EntryStart

# ============================================================================
# Archive builders
# ============================================================================


def write_archive(path: Path, files: Dict[str, bytes], *, modes: Optional[Dict[str, int]] = None,
                  dirs: Iterable[str] = (), symlinks: Optional[Dict[str, str]] = None,
                  owners: Optional[Dict[str, tuple]] = None, compression: str = "gz") -> Path:
    """Write a tarball with directories, regular files and symlinks, in that order.

    `compression` is a tarfile suffix ("gz", "xz", "bz2"), "zst" or "" for none.
    """
    modes = modes or {}
    symlinks = symlinks or {}
    owners = owners or {}
    buffer = io.BytesIO()
    mode = "w" if compression in ("", "zst") else f"w:{compression}"
    with tarfile.open(fileobj=buffer, mode=mode) as tar:
        for name in dirs:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = modes.get(name, 0o644)
            info.uid, info.gid = owners.get(name, (0, 0))
            tar.addfile(info, io.BytesIO(data))
        for name, target in symlinks.items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tar.addfile(info)
    data = buffer.getvalue()
    if compression == "zst":
        data = zstandard.ZstdCompressor().compress(data)
    path.write_bytes(data)
    return path


def desc_record(**fields) -> str:
    lines = []
    for key, value in fields.items():
        values = value if isinstance(value, (list, tuple)) else [value]
        lines.append(f"%{key.upper()}%")
        lines.extend(values)
        lines.append("")
    return "\n".join(lines) + "\n"


def write_sync_db(path: Path, packages: List[dict], compression: str = "gz") -> Path:
    """Write a sync database; a package dict may carry a ``files`` list."""
    path.parent.mkdir(parents=True, exist_ok=True)
    records = {}
    for pkg in packages:
        pkg = dict(pkg)
        files = pkg.pop("files", None)
        directory = f"{pkg['name']}-{pkg['version']}"
        records[f"{directory}/desc"] = desc_record(**pkg).encode()
        if files is not None:
            records[f"{directory}/files"] = desc_record(files=files).encode()
    return write_archive(path, records, compression=compression)


@pytest.fixture
def make_archive(tmp_path: Path):
    """Factory writing package archives below tmp_path."""

    def factory(name: str, files: Dict[str, bytes], **kwargs) -> Path:
        return write_archive(tmp_path / name, files, **kwargs)

    return factory


# ============================================================================
# Event fixtures
# ============================================================================


def file_events(path: str, *chunks: bytes, mode: int = 0o644) -> list:
    entry = ArchiveEntry(path, stat.S_IFREG | mode)
    return [EntryStart(entry), *[DataChunk(c) for c in chunks], EntryEnd()]


def dir_events(path: str) -> list:
    return [EntryStart(ArchiveEntry(path, stat.S_IFDIR | 0o755)), EntryEnd()]


class ListDecoder:
    """Archive decoder serving prepared event lists keyed by archive path."""

    def __init__(self, archives: Dict[str, list]) -> None:
        self.archives = archives
        self.scanned: List[str] = []

    def events(self, path):
        self.scanned.append(str(path))
        for event in self.archives[str(path)]:
            if isinstance(event, Exception):
                raise event
            yield event


@pytest.fixture
def stdout() -> io.BytesIO:
    return io.BytesIO()
