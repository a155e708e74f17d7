"""Verified archive transfer into a staging directory.

Archives are streamed chunk by chunk into a temporary file while their digest
is computed incrementally, so memory stays bounded by the chunk size.  The
staged file is only handed back when its digest matches the description's
archive hash; on a mismatch, a transfer error or a cancellation it is
deleted before the error propagates.
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, Optional
from urllib.parse import urlparse
from urllib.request import url2pathname

import httpx

from .cancellation import CancellationToken
from .checksums import CHUNK_SIZE, new_hasher
from .errors import DownloadFailure, HashMismatchError
from .fs import TMP_SUFFIX
from .retry import RETRYABLE_STATUS
from .runtime import RuntimeDescription

LOGGER = logging.getLogger("RuntimeDepot.RuntimeFetch.download")

ProgressCallback = Callable[[int, int, float], None]

__all__ = ["ProgressReporter", "download_archive", "stage_local_file", "staging_path"]


class ProgressReporter:
    """Throttle progress callbacks to one per ``interval`` seconds plus a final one.

    The callback receives ``(received, expected, rate)`` where ``rate`` is the
    byte rate since the previous report.
    """

    def __init__(
        self,
        callback: Optional[ProgressCallback],
        expected: int,
        *,
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._callback = callback
        self._expected = expected
        self._interval = interval
        self._clock = clock
        self._last_time = clock()
        self._last_received = 0

    def update(self, received: int) -> None:
        now = self._clock()
        if now - self._last_time >= self._interval:
            self._emit(received, now)

    def finish(self, received: int) -> None:
        self._emit(received, self._clock())

    def _emit(self, received: int, now: float) -> None:
        elapsed = now - self._last_time
        rate = (received - self._last_received) / elapsed if elapsed > 0 else 0.0
        self._last_time = now
        self._last_received = received
        if self._callback is not None:
            self._callback(received, self._expected, rate)


def staging_path(staging_dir: Path, description: RuntimeDescription) -> Path:
    return staging_dir / f"{description.id}.{uuid.uuid4().hex[:8]}{TMP_SUFFIX}"


def _stage_chunks(
    chunks: Iterable[bytes],
    staged: Path,
    description: RuntimeDescription,
    token: Optional[CancellationToken],
    reporter: ProgressReporter,
) -> None:
    hasher = new_hasher(description.archive_hash.algorithm)
    received = 0
    with staged.open("wb") as handle:
        for chunk in chunks:
            if token is not None:
                token.raise_if_cancelled(f"transfer of {description.id}")
            if not chunk:
                continue
            handle.write(chunk)
            hasher.update(chunk)
            received += len(chunk)
            reporter.update(received)
        handle.flush()
        os.fsync(handle.fileno())
    reporter.finish(received)

    digest = hasher.hexdigest()
    if digest != description.archive_hash.value:
        LOGGER.error(
            "archive hash mismatch",
            extra={
                "stage": "download",
                "runtime_id": description.id,
                "expected": description.archive_hash.value,
                "received": digest,
            },
        )
        raise HashMismatchError(
            f"archive of {description.id} hashed to {description.archive_hash.algorithm}:{digest}",
            expected=description.archive_hash.value,
            received=digest,
        )


def _read_chunks(stream: BinaryIO, chunk_size: int) -> Iterable[bytes]:
    return iter(lambda: stream.read(chunk_size), b"")


def stage_local_file(
    source: Path,
    description: RuntimeDescription,
    staging_dir: Path,
    *,
    token: Optional[CancellationToken] = None,
    chunk_size: int = CHUNK_SIZE,
    progress: Optional[ProgressCallback] = None,
) -> Path:
    """Copy ``source`` into ``staging_dir`` and verify it against ``description``."""

    staged = staging_path(staging_dir, description)
    reporter = ProgressReporter(progress, description.archive_size)
    try:
        with Path(source).open("rb") as stream:
            _stage_chunks(_read_chunks(stream, chunk_size), staged, description, token, reporter)
    except BaseException:
        staged.unlink(missing_ok=True)
        raise
    return staged


def download_archive(
    client: httpx.Client,
    description: RuntimeDescription,
    staging_dir: Path,
    *,
    token: Optional[CancellationToken] = None,
    chunk_size: int = CHUNK_SIZE,
    progress: Optional[ProgressCallback] = None,
) -> Path:
    """Stream ``description.archive_uri`` into ``staging_dir`` and verify it.

    Returns the staged file on success.

    Raises:
        DownloadFailure: On HTTP errors or error status codes.
        HashMismatchError: If the streamed bytes do not match the archive hash.
        OperationCancelledError: If ``token`` is cancelled mid-transfer.
    """

    url = description.archive_uri
    if url.startswith("file://"):
        return stage_local_file(
            Path(url2pathname(urlparse(url).path)),
            description,
            staging_dir,
            token=token,
            chunk_size=chunk_size,
            progress=progress,
        )

    staged = staging_path(staging_dir, description)
    LOGGER.info(
        "downloading runtime archive",
        extra={"stage": "download", "runtime_id": description.id, "url": url},
    )
    try:
        with client.stream("GET", url) as response:
            if response.status_code >= 400:
                raise DownloadFailure(
                    f"download of {url} returned HTTP {response.status_code}",
                    status_code=response.status_code,
                    retryable=response.status_code in RETRYABLE_STATUS,
                )
            length = response.headers.get("Content-Length")
            expected = int(length) if length and length.isdigit() else description.archive_size
            reporter = ProgressReporter(progress, expected)
            _stage_chunks(response.iter_bytes(chunk_size), staged, description, token, reporter)
    except httpx.HTTPError as exc:
        staged.unlink(missing_ok=True)
        raise DownloadFailure(f"download of {url} failed: {exc}") from exc
    except BaseException:
        staged.unlink(missing_ok=True)
        raise
    return staged

