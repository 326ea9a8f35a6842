"""Streaming decoder for package archives.

Package files and sync databases are tarballs, usually compressed. The
compression is detected from the leading magic bytes and the archive is
then read with `tarfile` in streaming mode, so each member's content is
visited exactly once, in archive order, one chunk at a time. zstd, the
format of current pacman packages, is decompressed with `zstandard`.
"""

import logging
import lzma
import stat
import tarfile
import zlib
from pathlib import Path
from typing import BinaryIO, Iterator

import zstandard

from .Errors import DecodeError
from .Protocols import ArchiveEntry, ArchiveEvent, DataChunk, EntryEnd, EntryStart

logger = logging.getLogger(__name__)

CHUNK_SIZE = 128 * 1024  # 128 KiB

TAR_COMPRESSION_TYPES = {
    b"\x1f\x8b": "gz",  # GZIP compressed
    b"\xfd7zXZ\x00": "xz",  # XZ compressed
    b"BZh": "bz2",  # BZIP2 compressed
    b"\x28\xb5\x2f\xfd": "zst",  # ZSTD compressed
}

# Errors the decompressors and tarfile raise on damaged input
DECODE_ERRORS = (tarfile.TarError, EOFError, zlib.error, lzma.LZMAError, zstandard.ZstdError, OSError)


def detect_compression(stream: BinaryIO) -> str:
    """Return the tarfile compression suffix for `stream` ("" if none).

    The stream position is restored afterwards.
    """
    start = stream.tell()
    magic_bytes = stream.read(8)  # Read 8 bytes to cover all compression types
    stream.seek(start)
    for signature, comp in TAR_COMPRESSION_TYPES.items():
        if magic_bytes.startswith(signature):
            return comp
    return ""


def open_tar_stream(stream: BinaryIO) -> tarfile.TarFile:
    """Open a seekable binary stream as a streaming tar reader.

    zstd is decompressed with `zstandard` and handed to tarfile as a plain
    tar stream; the other compressions are left to tarfile.
    """
    comp = detect_compression(stream)
    logger.debug("%s compression detected", comp or "no")
    if comp == "zst":
        reader = zstandard.ZstdDecompressor().stream_reader(stream, read_across_frames=True, closefd=False)
        return tarfile.open(fileobj=reader, mode="r|")
    return tarfile.open(fileobj=stream, mode=f"r|{comp}")


def _entry_mode(member: tarfile.TarInfo) -> int:
    if member.isreg():
        kind = stat.S_IFREG
    elif member.isdir():
        kind = stat.S_IFDIR
    elif member.issym():
        kind = stat.S_IFLNK
    elif member.ischr():
        kind = stat.S_IFCHR
    elif member.isblk():
        kind = stat.S_IFBLK
    elif member.isfifo():
        kind = stat.S_IFIFO
    else:
        # hard links carry no data of their own in the stream
        kind = 0
    return kind | stat.S_IMODE(member.mode)


class TarArchiveDecoder:
    """Turn a package archive into start/chunk/end events.

    Attributes:
        chunk_size (int): Maximum size of each DataChunk.
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE) -> None:
        self.chunk_size = chunk_size

    def events(self, path: Path) -> Iterator[ArchiveEvent]:
        """Yield the entries of the archive at `path`.

        Raises:
            DecodeError: If the file cannot be opened or decoded.
        """
        try:
            with open(path, "rb") as stream, open_tar_stream(stream) as archive:
                for member in archive:
                    entry = ArchiveEntry(
                        path=member.name,
                        mode=_entry_mode(member),
                        uid=member.uid,
                        gid=member.gid,
                    )
                    yield EntryStart(entry)
                    if member.isreg():
                        source = archive.extractfile(member)
                        while chunk := source.read(self.chunk_size):
                            yield DataChunk(chunk)
                    yield EntryEnd()
        except DECODE_ERRORS as e:
            raise DecodeError(f"failed to read {path}") from e
