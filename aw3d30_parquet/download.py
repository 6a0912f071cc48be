"""Fetch raw tiles over HTTP into the raw tile directory

A tile is written to ``<name>.part`` and renamed onto its final path only
after the whole body arrived and passed validation, so the final path holds
either a complete file or nothing.
"""

from __future__ import annotations

import logging
import os
import threading
import typing
from pathlib import Path

import httpx

from .catalog import Tile
from .config import PipelineConfig, RetryPolicy
from .errors import (
    Cancelled,
    NotFound,
    RemoteRejected,
    StorageExhausted,
    TransientDownloadError,
    WriteError,
    is_storage_exhausted,
)
from .validate import is_valid_raw

logger = logging.getLogger(__name__)

T = typing.TypeVar("T")


def create_client(config: PipelineConfig) -> httpx.Client:
    """Get HTTP client for making requests."""
    return httpx.Client(timeout=config.timeout, follow_redirects=True)


def part_path(path: Path) -> Path:
    return path.with_name(path.name + ".part")


def check_response(response: httpx.Response, url: str) -> None:
    """Raise the matching DownloadError for an unsuccessful response"""
    status = response.status_code
    if response.is_success:
        return
    if status == 429 or 500 <= status < 600:
        raise TransientDownloadError(
            f"HTTP {status} from {url}",
            status_code=status,
            retry_after=response.headers.get("Retry-After"),
        )
    if status in (404, 410):
        raise NotFound(f"Tile not found ({status}): {url}", status_code=status)
    raise RemoteRejected(f"HTTP {status} from {url}", status_code=status)


def with_retries(
    operation: typing.Callable[[], T],
    policy: RetryPolicy,
    cancel: threading.Event,
    description: str,
) -> T:
    """Run operation, retrying TransientDownloadError with exponential backoff

    Non-transient errors propagate immediately. Backoff waits end early when
    cancel is set.
    """
    last_exception: TransientDownloadError | None = None

    for attempt in range(policy.max_retries + 1):
        if cancel.is_set():
            raise Cancelled(f"Cancelled before {description}")
        try:
            return operation()
        except TransientDownloadError as e:
            last_exception = e
            if attempt >= policy.max_retries:
                break
            delay = policy.delay(attempt, e.retry_after)
            logger.warning(
                "%s failed (attempt %s of %s), retrying in %.1fs: %s",
                description,
                attempt + 1,
                policy.max_retries + 1,
                delay,
                e,
            )
            if cancel.wait(delay):
                raise Cancelled(f"Cancelled while retrying {description}") from e

    raise TransientDownloadError(
        f"{description} failed after {policy.max_retries + 1} attempts: {last_exception}",
        status_code=last_exception.status_code if last_exception else None,
    ) from last_exception


class Downloader:
    """Ensures raw tile files exist locally

    Safe to share between threads; httpx.Client is thread-safe.
    """

    def __init__(
        self,
        config: PipelineConfig,
        client: httpx.Client | None = None,
        cancel: threading.Event | None = None,
    ):
        self.config = config
        self.client = client if client is not None else create_client(config)
        self._owns_client = client is None
        self.cancel = cancel if cancel is not None else threading.Event()

    def __enter__(self) -> "Downloader":
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        if self._owns_client:
            self.client.close()

    def has_valid_raw(self, tile: Tile) -> bool:
        return is_valid_raw(
            tile.raw_path(self.config.raw_dir), tile, self.config.raw_validation
        )

    def ensure_downloaded(self, tile: Tile) -> Path:
        """Return the local raw path for tile, downloading it if needed

        Raises:
            NotFound, RemoteRejected: Remote refused the tile, not retried
            TransientDownloadError: Retries exhausted
            Cancelled: The run is shutting down
            WriteError: The raw file could not be stored
        """
        path = tile.raw_path(self.config.raw_dir)
        if self.has_valid_raw(tile):
            logger.debug("%s already downloaded at %s", tile.id, path)
            return path
        return self.fetch(tile)

    def fetch(self, tile: Tile) -> Path:
        """Download tile unconditionally, replacing any previous raw file"""
        self.config.raw_dir.mkdir(parents=True, exist_ok=True)
        final = tile.raw_path(self.config.raw_dir)
        return with_retries(
            lambda: self._transfer(tile, final),
            self.config.retry,
            self.cancel,
            f"Download of {tile.id}",
        )

    def _transfer(self, tile: Tile, final: Path) -> Path:
        """Stream one attempt into a temporary file and commit it by rename"""
        temporary = part_path(final)
        # An earlier interrupted attempt is never resumed
        temporary.unlink(missing_ok=True)

        try:
            with self.client.stream("GET", tile.url) as response:
                check_response(response, tile.url)
                written = self._stream_to_file(response, temporary)
                expected = response.headers.get("Content-Length")
                received = response.num_bytes_downloaded

            if expected is not None and expected.isdigit() and received != int(expected):
                raise TransientDownloadError(
                    f"Incomplete body for {tile.id}: {received} of {expected} bytes"
                )
            if tile.expected_size is not None and written != tile.expected_size:
                raise TransientDownloadError(
                    f"Size mismatch for {tile.id}: {written} bytes, expected {tile.expected_size}"
                )
            if not is_valid_raw(temporary, tile, self.config.raw_validation):
                raise TransientDownloadError(
                    f"Downloaded {tile.id} failed {self.config.raw_validation} validation"
                )

            os.replace(temporary, final)
        except httpx.TransportError as e:
            raise TransientDownloadError(f"Error fetching {tile.url}: {e!r}") from e
        except OSError as e:
            if is_storage_exhausted(e):
                raise StorageExhausted(f"Cannot store {tile.id}: {e}") from e
            raise WriteError(f"Cannot store {tile.id}: {e}") from e
        finally:
            temporary.unlink(missing_ok=True)

        logger.info("Downloaded %s (%s bytes)", tile.id, written)
        return final

    def _stream_to_file(self, response: httpx.Response, temporary: Path) -> int:
        written = 0
        with open(temporary, "wb") as handle:
            for chunk in response.iter_bytes(chunk_size=self.config.chunk_size):
                if self.cancel.is_set():
                    raise Cancelled(f"Cancelled while downloading {response.url}")
                handle.write(chunk)
                written += len(chunk)
            handle.flush()
            os.fsync(handle.fileno())
        return written
