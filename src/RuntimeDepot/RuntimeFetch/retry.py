"""Tenacity retry policy for repository index fetches.

Transient failures are retried with full-jitter exponential backoff:

- connection, read and protocol errors raised by HTTPX
- ``429`` and ``5xx`` responses, which the fetch code raises as retryable
  :class:`DownloadFailure` instances carrying any ``Retry-After`` guidance

The backoff sleep is sliced so that a cancellation request is noticed within
a fraction of a second instead of after the full delay.

Example:
    >>> policy = create_http_retry_policy(max_attempts=3, backoff_factor=0.0)
    >>> for attempt in policy:
    ...     with attempt:
    ...         pass
"""

from __future__ import annotations

import email.utils
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)
from tenacity.wait import wait_base

from .errors import DownloadFailure, OperationCancelledError

LOGGER = logging.getLogger("RuntimeDepot.RuntimeFetch.retry")

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})

_TRANSIENT_ERRORS = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.ReadError,
    httpx.RemoteProtocolError,
)

__all__ = ["RETRYABLE_STATUS", "parse_retry_after", "create_http_retry_policy"]


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Convert a ``Retry-After`` header (seconds or HTTP date) into a delay."""

    if not value:
        return None
    try:
        delay = float(int(value))
    except ValueError:
        try:
            parsed = email.utils.parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        delay = (parsed - datetime.now(timezone.utc)).total_seconds()
    return max(0.0, delay)


class _RetryAfterOrBackoff(wait_base):
    """Honour server guidance before falling back to jittered backoff."""

    def __init__(self, fallback_wait: wait_base, max_delay_seconds: float) -> None:
        self._fallback_wait = fallback_wait
        self._max_delay_seconds = max_delay_seconds

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        delay = getattr(exc, "retry_after", None)
        if delay is not None:
            return min(float(delay), self._max_delay_seconds)
        return float(self._fallback_wait(retry_state))


def _is_retryable_failure(exc: BaseException) -> bool:
    return isinstance(exc, DownloadFailure) and exc.retryable


def _cancellable_sleep(should_cancel: Optional[Callable[[], bool]]) -> Callable[[float], None]:
    def sleep(seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while True:
            if should_cancel is not None and should_cancel():
                raise OperationCancelledError("retry wait was cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            time.sleep(min(remaining, 0.1))

    return sleep


def create_http_retry_policy(
    max_attempts: int = 4,
    *,
    backoff_factor: float = 0.5,
    max_delay_seconds: float = 30.0,
    should_cancel: Optional[Callable[[], bool]] = None,
) -> Retrying:
    """Build a ``Retrying`` for use as ``for attempt in policy: with attempt: ...``.

    The last failure is re-raised unchanged once ``max_attempts`` is reached.
    """

    return Retrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=_RetryAfterOrBackoff(
            fallback_wait=wait_random_exponential(multiplier=backoff_factor, max=max_delay_seconds),
            max_delay_seconds=max_delay_seconds,
        ),
        retry=retry_if_exception_type(_TRANSIENT_ERRORS) | retry_if_exception(_is_retryable_failure),
        sleep=_cancellable_sleep(should_cancel),
        before_sleep=before_sleep_log(LOGGER, logging.WARNING),
        reraise=True,
    )
