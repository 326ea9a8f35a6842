"""HTTP downloads of package archives and databases.

Provides `Downloader`, a batch fetcher built on one keep-alive
`httpx.Client`. Files already present in a cache directory are reused;
everything else is streamed to disk through a ``.part`` file so an
interrupted transfer never leaves a truncated archive behind.

Progress and completion are reported through callbacks supplied by the
caller when the downloader is created.
"""

import email.utils
import enum
import logging
import os
import time
from pathlib import Path
from typing import Callable, List, Optional
from urllib.parse import unquote, urlsplit

import httpx

from .Errors import DownloadFailure

logger = logging.getLogger(__name__)

CHUNK_SIZE = 128 * 1024  # 128 KiB
MAX_ATTEMPTS = 5


class DownloadResult(enum.Enum):
    SUCCESS = "success"
    UP_TO_DATE = "up-to-date"
    FAILED = "failed"


EventCallback = Callable[[str, DownloadResult], None]
ProgressCallback = Callable[[str, int, Optional[int]], None]


def url_filename(url: str) -> str:
    """Return the last path component of `url`."""
    name = unquote(urlsplit(url).path.rsplit("/", 1)[-1])
    if not name:
        raise DownloadFailure(f"url '{url}' contains no file name")
    return name


class _NotFound(Exception):
    pass


class Downloader:
    """Fetch files over HTTP into a cache directory.

    Attributes:
        cache_dirs (list[Path]): Directories searched for existing files;
            downloads are written to the first one.
        on_event (EventCallback | None): Called once per file with its
            completion result. Not called for signature files.
        on_progress (ProgressCallback | None): Called with
            ``(filename, bytes_written, total_or_None)`` while streaming.
        client (httpx.Client): HTTP client used for all requests.
    """

    def __init__(self, cache_dirs: List[Path], on_event: Optional[EventCallback] = None,
                 on_progress: Optional[ProgressCallback] = None,
                 transport: Optional[httpx.BaseTransport] = None,
                 retry_wait: float = 2.0) -> None:
        if not cache_dirs:
            raise ValueError("at least one cache directory is required")
        self.cache_dirs = [Path(d) for d in cache_dirs]
        self.on_event = on_event
        self.on_progress = on_progress
        self.retry_wait = retry_wait
        headers = {"User-Agent": "paccat", "Accept": "*/*"}
        self.client = httpx.Client(
            headers=headers,
            follow_redirects=True,
            timeout=httpx.Timeout(10.0, read=300.0),
            transport=transport,
        )

    def __enter__(self) -> "Downloader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self.client.close()

    def _emit(self, filename: str, result: DownloadResult) -> None:
        if self.on_event and not filename.endswith(".sig"):
            self.on_event(filename, result)

    def cached(self, filename: str) -> Optional[Path]:
        """Return the cached copy of `filename`, if any cache has one."""
        for directory in self.cache_dirs:
            candidate = directory / filename
            if candidate.is_file():
                return candidate
        return None

    def fetch(self, urls: List[str], signatures: bool = True) -> List[Path]:
        """Download a batch of files.

        Args:
            urls: File URLs. The result keeps their order.
            signatures: Also fetch ``<url>.sig`` next to each file; a
                missing signature on the server is not an error.

        Returns:
            list[Path]: Local paths, one per URL.

        Raises:
            DownloadFailure: Naming the first file that could not be fetched.
        """
        paths = []
        for url in urls:
            filename = url_filename(url)
            existing = self.cached(filename)
            if existing is not None:
                self._emit(filename, DownloadResult.UP_TO_DATE)
                paths.append(existing)
                continue

            dest = self.cache_dirs[0] / filename
            try:
                self._download(url, dest)
            except (_NotFound, httpx.HTTPError, OSError) as e:
                self._emit(filename, DownloadResult.FAILED)
                raise DownloadFailure(f"failed retrieving file '{filename}'") from e
            self._emit(filename, DownloadResult.SUCCESS)

            if signatures:
                try:
                    self._download(url + ".sig", dest.with_name(filename + ".sig"))
                except _NotFound:
                    logger.debug("no signature published for %s", filename)
                except (httpx.HTTPError, OSError) as e:
                    raise DownloadFailure(f"failed retrieving file '{filename}.sig'") from e
            paths.append(dest)
        return paths

    def refresh(self, url: str, dest: Path, force: bool = False) -> bool:
        """Download `url` to `dest` unless the server says it is unchanged.

        Args:
            url: Database URL.
            dest: Local database path.
            force: Skip the ``If-Modified-Since`` check.

        Returns:
            bool: True if a new copy was written.

        Raises:
            DownloadFailure: If the file could not be fetched.
        """
        filename = url_filename(url)
        headers = {}
        if not force and dest.exists():
            headers["If-Modified-Since"] = email.utils.formatdate(dest.stat().st_mtime, usegmt=True)
        try:
            changed = self._download(url, dest, headers=headers)
        except (_NotFound, httpx.HTTPError, OSError) as e:
            self._emit(filename, DownloadResult.FAILED)
            raise DownloadFailure(f"failed retrieving file '{filename}'") from e
        self._emit(filename, DownloadResult.SUCCESS if changed else DownloadResult.UP_TO_DATE)
        return changed

    def _download(self, url: str, dest: Path, headers: Optional[dict] = None) -> bool:
        """Stream `url` into `dest`, retrying transient failures.

        Returns:
            bool: False if the server answered 304 Not Modified.

        Raises:
            _NotFound: On a 404 response.
            httpx.HTTPError: If every attempt failed.
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        part = dest.with_name(dest.name + ".part")
        filename = dest.name

        for attempt in range(MAX_ATTEMPTS):
            try:
                with self.client.stream("GET", url, headers=headers) as response:
                    if response.status_code == 304:
                        return False
                    if response.status_code == 404:
                        raise _NotFound(url)
                    if response.status_code == 429:
                        # Server asks us to retry later; follow Retry-After if present.
                        wait_time = max(int(response.headers.get("Retry-After", 3)), 0)
                        logger.info("received 429 Too Many Requests, retrying after %s seconds", wait_time)
                        time.sleep(wait_time)
                        continue
                    response.raise_for_status()

                    total = response.headers.get("Content-Length")
                    total = int(total) if total else None
                    with open(part, "wb") as target_file:
                        for chunk in response.iter_bytes(CHUNK_SIZE):
                            target_file.write(chunk)
                            if self.on_progress:
                                self.on_progress(filename, len(chunk), total)
                os.replace(part, dest)
                return True
            except httpx.TransportError as e:
                if attempt == MAX_ATTEMPTS - 1:
                    raise
                wait_time = (attempt + 1) * self.retry_wait
                logger.info("HTTP error on attempt %d: %s, retrying after %s seconds", attempt + 1, e, wait_time)
                time.sleep(wait_time)
            finally:
                if part.exists():
                    part.unlink()

        raise httpx.HTTPError(f"too many retries for {url}")
