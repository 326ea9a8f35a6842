"""Exception types raised by paccat.

Every failure that should end a run derives from `PaccatError`. Lower
level exceptions (OSError, httpx errors, tarfile errors) are chained onto
them with ``raise ... from`` so the CLI can render the whole cause chain
on a single line.
"""


class PaccatError(Exception):
    """Base class for all fatal paccat errors."""


class ConfigError(PaccatError):
    """The pacman configuration could not be read."""


class PatternError(PaccatError):
    """The requested file patterns are unusable (bad regex, empty set)."""


class TargetUnresolvable(PaccatError):
    """A target is neither a known package, an existing file nor a URL."""

    def __init__(self, target: str) -> None:
        super().__init__(f"'{target}' is not a package, file or url")
        self.target = target


class DownloadFailure(PaccatError):
    """A package or database could not be downloaded."""


class VerificationFailure(PaccatError):
    """A signature was missing or invalid under the active trust policy."""


class DecodeError(PaccatError):
    """An archive could not be decoded."""


class ExtractionIoFailure(PaccatError):
    """A matched entry could not be written to disk."""


class PagerFailure(PaccatError):
    """The pager subprocess exited unsuccessfully."""


def render_error(exc: BaseException) -> str:
    """Render an exception and its causes as ``error: a: b: c``.

    Only explicit causes (``raise ... from``) are followed; implicit
    context is noise from the handler that wrapped the error.
    """
    parts = []
    seen = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        message = str(current) or type(current).__name__
        parts.append(message)
        current = current.__cause__
    return "error: " + ": ".join(parts)
