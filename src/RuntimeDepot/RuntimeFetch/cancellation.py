"""Cooperative cancellation for repository updates, downloads, and unpacking.

Work running on the client's worker pool is never interrupted.  It polls a
:class:`CancellationToken` at explicit checkpoints (between update attempts,
at chunk boundaries while streaming or extracting) and unwinds through its
normal cleanup paths, so temporary files and partial directories are removed
before the operation fails with :class:`OperationCancelledError`.
"""

from __future__ import annotations

import threading
from typing import Optional

from .errors import OperationCancelledError


class CancellationToken:
    """Thread-safe flag checked by long-running work at its checkpoints.

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel()
        >>> token.is_cancelled()
        True
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    __call__ = is_cancelled

    def raise_if_cancelled(self, operation: Optional[str] = None) -> None:
        """Raise :class:`OperationCancelledError` once cancellation was requested."""

        if self._event.is_set():
            raise OperationCancelledError(f"{operation or 'operation'} was cancelled")


class CancellationTokenGroup:
    """Tokens for every outstanding operation of one client.

    Closing a client cancels the whole group; tokens leave the group once
    their operation finishes so the group only tracks live work.
    """

    def __init__(self) -> None:
        self._tokens: set[CancellationToken] = set()
        self._lock = threading.Lock()
        self._cancelled = False

    def create_token(self) -> CancellationToken:
        token = CancellationToken()
        with self._lock:
            self._tokens.add(token)
            if self._cancelled:
                token.cancel()
        return token

    def remove_token(self, token: CancellationToken) -> None:
        with self._lock:
            self._tokens.discard(token)

    def cancel_all(self) -> None:
        with self._lock:
            self._cancelled = True
            tokens = list(self._tokens)
        for token in tokens:
            token.cancel()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)
