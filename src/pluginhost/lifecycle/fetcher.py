# Copyright (c) Plugin Host Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Archive Fetcher

Streams a plugin package from its source into an operation's scratch
directory, enforcing a size limit and a total deadline, retrying
transient network failures with exponential backoff.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Iterable, Optional
from urllib.parse import urlparse
from urllib.request import url2pathname

import httpx
from pydantic import BaseModel, Field

from pluginhost.exceptions import (
    FetchCancelledError,
    FetchError,
    FetchLimitExceededError,
    SourceRejectedError,
)

logger = logging.getLogger(__name__)

RAW_FILENAME = "package.bin"


class FetchLimits(BaseModel):
    """Resource limits applied to a single fetch."""

    max_bytes: int = Field(default=50 * 1024 * 1024, ge=1, description="Maximum archive size")
    timeout_seconds: float = Field(default=120.0, gt=0, description="Total deadline")
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    chunk_size: int = Field(default=64 * 1024, ge=1, description="Streaming chunk size")


class RetryPolicy(BaseModel):
    """Retry behaviour for transient network failures."""

    max_retries: int = Field(default=3, ge=0)
    backoff_seconds: float = Field(default=0.5, ge=0)
    backoff_max_seconds: float = Field(default=8.0, ge=0)

    def delay(self, attempt: int) -> float:
        """Backoff before retry number *attempt* (0-based)."""
        return min(self.backoff_seconds * (2**attempt), self.backoff_max_seconds)


class _TransientFetchError(FetchError):
    """Connection reset, timeout before the deadline, or HTTP 5xx."""


class ArchiveFetcher:
    """Download plugin archives over HTTP(S) or copy them from ``file://`` URLs.

    Args:
        limits: Default limits, overridable per call.
        retry: Retry policy for transient failures.
        client: Optional ``httpx.Client``; one is created (and owned) if omitted.
        sleep: Function used for backoff waits.

    Example:
        >>> fetcher = ArchiveFetcher(FetchLimits(max_bytes=10_000_000))
        >>> raw = fetcher.fetch("https://example.com/demo.zip", Path("/tmp/op-1"))
    """

    def __init__(
        self,
        limits: Optional[FetchLimits] = None,
        retry: Optional[RetryPolicy] = None,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.limits = limits or FetchLimits()
        self.retry = retry or RetryPolicy()
        self._owns_client = client is None
        self._client = client or httpx.Client(follow_redirects=True)
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> ArchiveFetcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch(
        self,
        source: str,
        scratch_dir: Path,
        *,
        limits: Optional[FetchLimits] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Path:
        """Fetch *source* into ``scratch_dir / RAW_FILENAME``.

        Args:
            source: ``http``, ``https`` or ``file`` URL.
            scratch_dir: Directory private to the calling operation.
            limits: Overrides the fetcher's default limits.
            cancel: Event that aborts the transfer when set.

        Returns:
            Path of the downloaded file.

        Raises:
            FetchLimitExceededError: Size limit or deadline exceeded.
            SourceRejectedError: 4xx response, missing file, or bad URL.
            FetchCancelledError: *cancel* was set.
            FetchError: Retries exhausted or local I/O failure.
        """
        limits = limits or self.limits
        deadline = time.monotonic() + limits.timeout_seconds
        parsed = urlparse(source)
        scheme = parsed.scheme.lower()
        dest = scratch_dir / RAW_FILENAME
        try:
            scratch_dir.mkdir(parents=True, exist_ok=True)
            if scheme == "file":
                self._copy_local(source, dest, limits, deadline, cancel)
            elif scheme in ("http", "https"):
                self._fetch_http(source, dest, limits, deadline, cancel)
            else:
                raise SourceRejectedError(f"Unsupported source scheme {scheme!r}: {source}")
        except FetchError:
            dest.unlink(missing_ok=True)
            raise
        except OSError as exc:
            dest.unlink(missing_ok=True)
            raise FetchError(f"Failed to stage download of {source}: {exc}") from exc
        logger.debug("Fetched %s (%d bytes) into %s", source, dest.stat().st_size, dest)
        return dest

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _fetch_http(
        self,
        source: str,
        dest: Path,
        limits: FetchLimits,
        deadline: float,
        cancel: Optional[threading.Event],
    ) -> None:
        attempt = 0
        while True:
            _check_cancel(cancel, source)
            try:
                self._download(source, dest, limits, deadline, cancel)
                return
            except _TransientFetchError as exc:
                if attempt >= self.retry.max_retries:
                    raise FetchError(
                        f"Giving up on {source} after {attempt + 1} attempts: {exc}"
                    ) from exc
                delay = self.retry.delay(attempt)
                if time.monotonic() + delay >= deadline:
                    raise FetchLimitExceededError(
                        f"Download deadline of {limits.timeout_seconds}s exceeded for {source}"
                    ) from exc
                logger.warning(
                    "Fetch of %s failed (attempt %d/%d): %s; retrying in %.2fs",
                    source,
                    attempt + 1,
                    self.retry.max_retries + 1,
                    exc,
                    delay,
                )
                self._sleep(delay)
                attempt += 1

    def _download(
        self,
        source: str,
        dest: Path,
        limits: FetchLimits,
        deadline: float,
        cancel: Optional[threading.Event],
    ) -> None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise FetchLimitExceededError(
                f"Download deadline of {limits.timeout_seconds}s exceeded for {source}"
            )
        timeout = httpx.Timeout(remaining, connect=min(limits.connect_timeout_seconds, remaining))
        try:
            with self._client.stream("GET", source, timeout=timeout) as response:
                status = response.status_code
                if 400 <= status < 500:
                    raise SourceRejectedError(
                        f"Source rejected request with HTTP {status}: {source}"
                    )
                if status >= 500:
                    raise _TransientFetchError(f"HTTP {status} from {source}")
                if not 200 <= status < 300:
                    raise SourceRejectedError(f"Unexpected HTTP {status} from {source}")
                declared = response.headers.get("Content-Length", "")
                if declared.isdigit() and int(declared) > limits.max_bytes:
                    raise FetchLimitExceededError(
                        f"Archive of {declared} bytes exceeds limit of {limits.max_bytes}: {source}"
                    )
                _write_chunks(
                    response.iter_bytes(chunk_size=limits.chunk_size),
                    dest,
                    source,
                    limits,
                    deadline,
                    cancel,
                )
        except (httpx.UnsupportedProtocol, httpx.InvalidURL) as exc:
            raise SourceRejectedError(f"Invalid source URL {source}: {exc}") from exc
        except httpx.TimeoutException as exc:
            if time.monotonic() >= deadline:
                raise FetchLimitExceededError(
                    f"Download deadline of {limits.timeout_seconds}s exceeded for {source}"
                ) from exc
            raise _TransientFetchError(f"Timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise _TransientFetchError(f"{type(exc).__name__}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Failed to download {source}: {exc}") from exc

    # ------------------------------------------------------------------
    # Local files
    # ------------------------------------------------------------------

    def _copy_local(
        self,
        source: str,
        dest: Path,
        limits: FetchLimits,
        deadline: float,
        cancel: Optional[threading.Event],
    ) -> None:
        parsed = urlparse(source)
        if parsed.netloc not in ("", "localhost"):
            raise SourceRejectedError(f"Remote file URLs are not supported: {source}")
        path = Path(url2pathname(parsed.path))
        if not path.is_file():
            raise SourceRejectedError(f"Local source not found: {path}")
        size = path.stat().st_size
        if size > limits.max_bytes:
            raise FetchLimitExceededError(
                f"Archive of {size} bytes exceeds limit of {limits.max_bytes}: {source}"
            )
        with open(path, "rb") as src:
            chunks = iter(lambda: src.read(limits.chunk_size), b"")
            _write_chunks(chunks, dest, source, limits, deadline, cancel)


def _write_chunks(
    chunks: Iterable[bytes],
    dest: Path,
    source: str,
    limits: FetchLimits,
    deadline: float,
    cancel: Optional[threading.Event],
) -> int:
    """Write *chunks* to *dest*, enforcing limits between chunks."""
    written = 0
    with open(dest, "wb") as out:
        for chunk in chunks:
            _check_cancel(cancel, source)
            written += len(chunk)
            if written > limits.max_bytes:
                raise FetchLimitExceededError(
                    f"Archive exceeds limit of {limits.max_bytes} bytes: {source}"
                )
            if time.monotonic() > deadline:
                raise FetchLimitExceededError(
                    f"Download deadline of {limits.timeout_seconds}s exceeded for {source}"
                )
            out.write(chunk)
    return written


def _check_cancel(cancel: Optional[threading.Event], source: str) -> None:
    if cancel is not None and cancel.is_set():
        raise FetchCancelledError(f"Fetch of {source} was cancelled")
