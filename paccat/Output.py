"""Destinations for matched entry content.

The `OutputRouter` owns standard output and at most one open sink at a
time: the terminal pass-through, a pager subprocess, or a destination
file being extracted. A sink is always closed before the next one opens,
and closing a pager waits for it and checks its exit status.
"""

import enum
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Callable, List, Optional

from .Errors import ExtractionIoFailure, PagerFailure
from .Protocols import ArchiveEntry

logger = logging.getLogger(__name__)

PagerCommand = Callable[[str], List[str]]


def find_pager() -> Optional[PagerCommand]:
    """Return a command builder for the syntax highlighting pager, if installed."""
    for name in ("bat", "batcat"):
        exe = shutil.which(name)
        if exe:
            return lambda path, exe=exe: [exe, "-pp", "--color=always", "--file-name", path]
    return None


class SinkKind(enum.Enum):
    PASS_THROUGH = "pass-through"
    PAGER = "pager"
    FILE = "file"


@dataclass
class Sink:
    """The live destination for the current entry.

    Only the field matching `kind` is set: `process` for a pager, `fd`
    and `path` for a destination file.
    """
    kind: SinkKind
    process: Optional[subprocess.Popen] = None
    fd: Optional[int] = None
    path: Optional[Path] = None


def safe_destination(root: Path, entry_path: str) -> Path:
    """Join an archive entry path onto `root`, refusing to escape it.

    Raises:
        ExtractionIoFailure: For absolute paths or ``..`` components.
    """
    relative = PurePosixPath(entry_path)
    if relative.is_absolute() or ".." in relative.parts:
        raise ExtractionIoFailure(f"refusing to extract unsafe path {entry_path}")
    return root.joinpath(*relative.parts)


class OutputRouter:
    """Route matched content to stdout, a pager, or a file on disk.

    Attributes:
        stdout (BinaryIO): Binary stream used for pass-through and path listing.
        pager (PagerCommand | None): Builds the pager argv for an entry path;
            None disables paging.
        elevated (bool): Running with root privileges; new extracted files
            are then chowned to the archive-recorded owner.
        sink (Sink | None): The open sink, if any.
    """

    def __init__(self, stdout: BinaryIO, pager: Optional[PagerCommand] = None,
                 elevated: bool = False) -> None:
        self.stdout = stdout
        self.pager = pager
        self.elevated = elevated
        self.sink: Optional[Sink] = None

    @property
    def kind(self) -> Optional[SinkKind]:
        return self.sink.kind if self.sink else None

    def print_path(self, path: str) -> None:
        self.stdout.write(path.encode() + b"\n")
        self.stdout.flush()

    def open_stream(self, entry_path: str) -> None:
        """Open a pass-through or pager sink for the entry's content.

        Does nothing if a destination file is already open for this entry.
        """
        if self.kind is SinkKind.FILE:
            return
        self.close()

        if self.pager is None:
            self.sink = Sink(SinkKind.PASS_THROUGH)
            return

        command = self.pager(entry_path)
        logger.debug("starting pager %s", " ".join(command))
        self.stdout.flush()
        process = subprocess.Popen(command, stdin=subprocess.PIPE)
        self.sink = Sink(SinkKind.PAGER, process=process)

    def open_destination(self, root: Path, entry: ArchiveEntry) -> Path:
        """Create the destination file for `entry` under `root`.

        Parent directories are created as needed and the file gets the
        archive-recorded permission bits. An existing file or symlink at the
        destination is unlinked first, so a link is never followed and a
        read-only file is replaced. When running elevated, a file that did
        not exist before is chowned to the recorded owner.

        Returns:
            Path: The destination path.

        Raises:
            ExtractionIoFailure: If the directory or file cannot be created.
        """
        self.close()
        target = safe_destination(root, entry.path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            existed = os.path.lexists(target)
            if existed:
                os.unlink(target)
            fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_EXCL | os.O_NOFOLLOW, entry.permissions)
        except OSError as e:
            raise ExtractionIoFailure(f"failed to create {target}") from e

        self.sink = Sink(SinkKind.FILE, fd=fd, path=target)
        try:
            # umask may have masked the bits at creation
            os.fchmod(fd, entry.permissions)
            if self.elevated and not existed:
                os.fchown(fd, entry.uid, entry.gid)
        except OSError as e:
            self.close()
            raise ExtractionIoFailure(f"failed to set owner or mode of {target}") from e
        return target

    def fallback_to_passthrough(self) -> None:
        """Replace an open pager with plain pass-through output."""
        if self.kind is SinkKind.PAGER:
            self.close()
            self.sink = Sink(SinkKind.PASS_THROUGH)

    def write(self, data: bytes) -> None:
        sink = self.sink
        if sink is None:
            return
        if sink.kind is SinkKind.PASS_THROUGH:
            self.stdout.write(data)
        elif sink.kind is SinkKind.PAGER:
            sink.process.stdin.write(data)
        elif sink.kind is SinkKind.FILE:
            try:
                view = memoryview(data)
                while view:
                    written = os.write(sink.fd, view)
                    view = view[written:]
            except OSError as e:
                raise ExtractionIoFailure(f"failed to write {sink.path}") from e

    def close(self) -> None:
        """Close the open sink, if any.

        Raises:
            PagerFailure: If the pager exits with a non-zero status.
            ExtractionIoFailure: If a destination file fails to close.
        """
        sink, self.sink = self.sink, None
        if sink is None:
            return
        if sink.kind is SinkKind.PASS_THROUGH:
            self.stdout.flush()
        elif sink.kind is SinkKind.PAGER:
            sink.process.stdin.close()
            code = sink.process.wait()
            if code != 0:
                raise PagerFailure(f"pager exited with status {code}")
        elif sink.kind is SinkKind.FILE:
            try:
                os.close(sink.fd)
            except OSError as e:
                raise ExtractionIoFailure(f"failed to close {sink.path}") from e
