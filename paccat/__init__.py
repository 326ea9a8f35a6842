"""paccat package initializer.

This module provides the package-level public surface for `paccat`, a
tool that prints, lists, extracts or installs files straight out of
pacman packages. It exports a few convenience symbols:

- __version__: Package version string.
- Matcher: The file pattern matcher with its match ledger.
- TargetResolver: Turns targets into verified local package archives.
- EntryStreamProcessor: The archive entry state machine.
- OutputRouter: Owner of the active output sink.
- cli: The CLI entrypoint function (click command).

Importing the package does no I/O; databases are read and packages
downloaded only when a command runs.

Example:
    from paccat import Matcher
    matcher = Matcher(["pacman.conf"])
    matcher.is_match("etc/pacman.conf")

"""

# Public version string
__version__ = "1.3.1"

from .EntryStream import EntryStreamProcessor
from .Matcher import Matcher
from .Output import OutputRouter
from .Targets import TargetResolver

# Expose the CLI command object so callers can reuse or register it in other tools.
from .CLI import paccat as cli  # click CLI command

__all__ = [
    "__version__",
    "Matcher",
    "TargetResolver",
    "EntryStreamProcessor",
    "OutputRouter",
    "cli",
]
