"""
Archive fetcher implementation.

Retrieves a remote archive into a local file. http(s) URLs go through
requests; file:// URLs are copied from the local filesystem, which is what
mirrors on shared drives and the test-suite use.
"""

import logging
import pathlib
import time
from typing import Optional
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

import requests

from librarian.librarian_exceptions import CacheError, NetworkError
from librarian.librarian_logger import LibrarianLogger


class ArchiveFetcher:
    """
    Downloads archives to local files with bounded timeouts.
    """

    def __init__(
        self,
        logger: LibrarianLogger,
        timeout: float = 60.0,
        max_duration: Optional[float] = 1800.0,
        session: Optional[requests.Session] = None,
        chunk_size: int = 1 << 20,
    ):
        """
        Initialize the archive fetcher.

        Args:
            logger: Logger for progress and error messages
            timeout: Seconds allowed for connecting and for each read
            max_duration: Upper bound in seconds for a whole download, None for no bound
            session: Optional requests session to reuse connections
            chunk_size: Bytes per streamed chunk
        """
        self.logger = logger
        self.timeout = timeout
        self.max_duration = max_duration
        self.session = session
        self.chunk_size = chunk_size

    def fetch(self, url: str, destination: pathlib.Path) -> pathlib.Path:
        """
        Fetch ``url`` into ``destination``, replacing any existing file.

        Returns:
            The destination path

        Raises:
            NetworkError: if the resource cannot be retrieved
            CacheError: if the destination cannot be written
        """
        scheme = urlparse(url).scheme.lower()
        self.logger.log(f"Fetching {url}", logging.INFO)
        if scheme in ("http", "https"):
            self._fetch_http(url, destination)
        elif scheme == "file":
            self._fetch_file(url, destination)
        else:
            raise NetworkError(
                f"Unsupported URL scheme '{scheme}'",
                resource=url,
                hint="Use an http, https or file URL.",
            )
        self.logger.log(
            f"Fetched {url} ({destination.stat().st_size} bytes)",
            logging.INFO,
        )
        return destination

    def _fetch_http(self, url: str, destination: pathlib.Path) -> None:
        get = self.session.get if self.session is not None else requests.get
        started = time.monotonic()
        try:
            with get(url, stream=True, timeout=(self.timeout, self.timeout)) as response:
                response.raise_for_status()
                with self._open_destination(destination, url) as f:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if self.max_duration is not None and time.monotonic() - started > self.max_duration:
                            raise NetworkError(
                                f"Download exceeded {self.max_duration}s",
                                resource=url,
                                hint="Check the mirror's throughput or raise the fetch duration limit.",
                            )
                        if chunk:
                            self._write(f, chunk, destination)
        except requests.Timeout as e:
            raise NetworkError(
                f"Timed out after {self.timeout}s",
                resource=url,
            ) from e
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else "unknown"
            raise NetworkError(
                f"Server returned status {status}",
                resource=url,
                context={"status": str(status)},
            ) from e
        except requests.RequestException as e:
            raise NetworkError(f"Request failed: {e}", resource=url) from e

    def _fetch_file(self, url: str, destination: pathlib.Path) -> None:
        parsed = urlparse(url)
        source = pathlib.Path(url2pathname(parsed.path))
        if parsed.netloc and parsed.netloc != "localhost":
            source = pathlib.Path(f"//{parsed.netloc}{url2pathname(parsed.path)}")
        if not source.is_file():
            raise NetworkError("File not found", resource=url, context={"path": str(source)})
        try:
            src = open(source, "rb")
        except OSError as e:
            raise NetworkError(f"Cannot read {source}: {e}", resource=url) from e
        with src, self._open_destination(destination, url) as dst:
            while True:
                try:
                    chunk = src.read(self.chunk_size)
                except OSError as e:
                    raise NetworkError(f"Cannot read {source}: {e}", resource=url) from e
                if not chunk:
                    break
                self._write(dst, chunk, destination)

    def _open_destination(self, destination: pathlib.Path, url: str):
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            return open(destination, "wb")
        except OSError as e:
            raise CacheError(
                f"Cannot write download target: {e}",
                resource=str(destination),
                context={"url": url},
            ) from e

    @staticmethod
    def _write(f, chunk: bytes, destination: pathlib.Path) -> None:
        try:
            f.write(chunk)
        except OSError as e:
            raise CacheError(f"Cannot write download target: {e}", resource=str(destination)) from e


def url_file_name(url: str) -> Optional[str]:
    """Returns the last path segment of ``url``, or None if it is empty."""
    return unquote(urlparse(url).path.split("/")[-1]) or None
