"""The per-archive entry state machine.

An archive arrives as a flat sequence of entry-start, data-chunk and
entry-end events. `EntryStreamProcessor` walks that sequence with an
explicit `EntryState`: entries that do not match stay in ``SKIP``, a
matched entry waits in ``FIRST_CHUNK`` until its first data decides
whether it is binary, and ``READING`` forwards the rest verbatim.
"""

import enum
import logging
from pathlib import Path
from typing import Optional

from .Config import Behavior, Options
from .Matcher import Matcher
from .Output import OutputRouter, SinkKind
from .Protocols import (
    ArchiveDecoderProtocol,
    ArchiveEntry,
    ArchiveEvent,
    DataChunk,
    EntryEnd,
    EntryStart,
)

logger = logging.getLogger(__name__)

BINARY_PROBE = 512


class EntryState(enum.Enum):
    SKIP = "skip"
    FIRST_CHUNK = "first-chunk"
    READING = "reading"


def is_binary(data: bytes) -> bool:
    """A chunk is binary if its first 512 bytes contain a NUL."""
    return b"\x00" in data[:BINARY_PROBE]


class EntryStreamProcessor:
    """Drive archive events through matching and output.

    Attributes:
        matcher (Matcher): Pattern matcher whose ledger spans the run.
        router (OutputRouter): Owner of the active output sink.
        decoder (ArchiveDecoderProtocol): Produces events for an archive path.
        options (Options): Behavior flags of the run.
        destination (Path): Root below which extract/install writes files.
        state (EntryState): Current state of the machine.
    """

    def __init__(self, matcher: Matcher, router: OutputRouter, decoder: ArchiveDecoderProtocol,
                 options: Options, destination: Optional[Path] = None) -> None:
        self.matcher = matcher
        self.router = router
        self.decoder = decoder
        self.options = options
        self.destination = destination or Path.cwd()
        self.state = EntryState.SKIP
        self.current: Optional[ArchiveEntry] = None

    def scan(self, path: Path) -> None:
        """Process every entry of the archive at `path`.

        Raises:
            DecodeError: If the archive is corrupt; output already written
                for earlier entries stays written.
        """
        logger.debug("scanning %s", path)
        self.state = EntryState.SKIP
        try:
            for event in self.decoder.events(path):
                self.state = self.transition(self.state, event)
        finally:
            self.state = EntryState.SKIP
            self.current = None
            self.router.close()

    def transition(self, state: EntryState, event: ArchiveEvent) -> EntryState:
        if isinstance(event, EntryStart):
            return self._start(event.entry)
        if isinstance(event, DataChunk):
            if state is EntryState.FIRST_CHUNK:
                return self._first_chunk(event.data)
            if state is EntryState.READING:
                self.router.write(event.data)
            return state
        if isinstance(event, EntryEnd):
            self.router.close()
            self.current = None
            return EntryState.SKIP
        raise TypeError(f"unexpected archive event {event!r}")

    def _start(self, entry: ArchiveEntry) -> EntryState:
        self.router.close()
        if not entry.is_regular:
            return EntryState.SKIP
        if self.options.executable and not entry.is_executable:
            return EntryState.SKIP
        if not self.matcher.is_match(entry.path, consume=not self.options.all):
            return EntryState.SKIP

        self.current = entry
        behavior = self.options.behavior
        if behavior is not Behavior.PRINT:
            self.router.print_path(entry.path)
        if behavior is Behavior.LIST:
            return EntryState.SKIP
        if behavior in (Behavior.EXTRACT, Behavior.INSTALL):
            self.router.open_destination(self.destination, entry)
        self.router.open_stream(entry.path)
        return EntryState.FIRST_CHUNK

    def _first_chunk(self, data: bytes) -> EntryState:
        if is_binary(data):
            if self.router.kind is SinkKind.PAGER and not self.options.binary_requested:
                self.router.fallback_to_passthrough()
            if self.router.kind is not SinkKind.FILE and not self.options.binary_allowed:
                logger.warning("%s is a binary file -- use --binary to print", self.current.path)
                self.router.close()
                return EntryState.SKIP
        self.router.write(data)
        return EntryState.READING
