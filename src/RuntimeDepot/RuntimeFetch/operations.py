# === NAVMAP v1 ===
# {
#   "module": "RuntimeDepot.RuntimeFetch.operations",
#   "purpose": "Pending-result handles, per-identity ordering, and the worker-pool runner",
#   "sections": [
#     {"id": "operation", "name": "Operation handle", "anchor": "OPR", "kind": "api"},
#     {"id": "keyed", "name": "Per-identity queues", "anchor": "KEY", "kind": "api"},
#     {"id": "runner", "name": "OperationRunner", "anchor": "RUN", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Pending-result handles, per-identity ordering, and the worker-pool runner.

Every public catalog, inventory, and client call returns an
:class:`Operation` immediately; the work runs on a bounded pool owned by an
:class:`OperationRunner`.  Operations that mutate one runtime identity wait in
that identity's queue in :class:`KeyedLocks` and reach the pool one at a
time, in submission order, while operations on other identities run in
parallel.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from concurrent import futures
from contextlib import contextmanager
from typing import Callable, Deque, Dict, Generic, Iterator, Optional, TypeVar

from RuntimeDepot.concurrency import create_executor

from .cancellation import CancellationToken, CancellationTokenGroup
from .errors import OperationTimeoutError

LOGGER = logging.getLogger("RuntimeDepot.RuntimeFetch.operations")

T = TypeVar("T")

__all__ = ["Operation", "KeyedLocks", "OperationRunner"]


# ============================================================================
# Operation handle (OPR)
# ============================================================================


class Operation(Generic[T]):
    """Handle on one asynchronous result or failure.

    ``timeout`` given at submission becomes a deadline; :meth:`result`
    without an explicit timeout waits at most until that deadline.  Timing
    out raises :class:`OperationTimeoutError` but does not stop the work; use
    :meth:`cancel` to request that.
    """

    def __init__(
        self,
        command_id: int,
        name: str,
        future: "futures.Future[T]",
        token: CancellationToken,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        self.command_id = command_id
        self.name = name
        self._future = future
        self._token = token
        self._deadline = None if timeout is None else time.monotonic() + timeout

    def __repr__(self) -> str:
        state = "done" if self._future.done() else "pending"
        return f"<Operation #{self.command_id} {self.name} {state}>"

    @property
    def token(self) -> CancellationToken:
        return self._token

    def _wait_budget(self, timeout: Optional[float]) -> Optional[float]:
        if timeout is not None:
            return timeout
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def result(self, timeout: Optional[float] = None) -> T:
        try:
            return self._future.result(self._wait_budget(timeout))
        except futures.TimeoutError:
            if self._future.done():
                raise
            raise OperationTimeoutError(
                f"operation #{self.command_id} ({self.name}) did not finish in time",
                details={"command_id": self.command_id, "operation": self.name},
            ) from None

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        try:
            return self._future.exception(self._wait_budget(timeout))
        except futures.TimeoutError:
            if self._future.done():
                raise
            raise OperationTimeoutError(
                f"operation #{self.command_id} ({self.name}) did not finish in time",
                details={"command_id": self.command_id, "operation": self.name},
            ) from None

    def done(self) -> bool:
        return self._future.done()

    def cancelled(self) -> bool:
        return self._future.cancelled()

    def cancel(self) -> bool:
        """Drop a queued operation, or ask a running one to stop at its next checkpoint.

        Returns ``True`` when the operation was dropped before it started.
        """

        self._token.cancel()
        return self._future.cancel()

    def add_done_callback(self, callback: Callable[["Operation[T]"], None]) -> None:
        self._future.add_done_callback(lambda _future: callback(self))


# ============================================================================
# Per-identity queues (KEY)
# ============================================================================

Starter = Callable[[], bool]


class KeyedLocks:
    """Per-key FIFO of pending work; idle keys are dropped from the map.

    A key is held from the moment its head entry starts until :meth:`release`.
    Waiting entries are plain callables parked in the key's queue, so nothing
    occupies a worker thread while it waits for its turn.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queues: Dict[str, Deque[Starter]] = {}

    def acquire(self, key: str, start: Starter) -> None:
        """Run ``start`` once ``key`` is free, in call order.

        ``start`` returns ``True`` when it took the key, or ``False`` when its
        work was abandoned, in which case the key passes to the next entry.
        It may run on the calling thread or on the thread releasing the key.
        """

        with self._lock:
            pending = self._queues.get(key)
            if pending is not None:
                pending.append(start)
                return
            self._queues[key] = deque()
        if not start():
            self.release(key)

    def release(self, key: str) -> None:
        """Hand ``key`` to the next entry that still wants it."""

        while True:
            with self._lock:
                pending = self._queues[key]
                if not pending:
                    del self._queues[key]
                    return
                start = pending.popleft()
            if start():
                return

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Block the calling thread until it holds ``key``."""

        ready = threading.Event()

        def start() -> bool:
            ready.set()
            return True

        self.acquire(key, start)
        ready.wait()
        try:
            yield
        finally:
            self.release(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._queues)


# ============================================================================
# OperationRunner (RUN)
# ============================================================================


class OperationRunner:
    """Dispatches work onto a bounded pool and hands back :class:`Operation` objects.

    The runner numbers operations with an increasing command id, gives each
    one a cancellation token, and, when a ``key`` is supplied, parks it behind
    earlier operations on the same identity.  Only the head of each identity's
    queue is ever handed to the pool.
    """

    def __init__(
        self,
        executor: Optional[futures.Executor] = None,
        *,
        workers: Optional[int] = None,
    ) -> None:
        self._owns_executor = executor is None
        self._executor = executor if executor is not None else create_executor(workers)
        self._command_ids = itertools.count(1)
        self._ids_lock = threading.Lock()
        self._tokens = CancellationTokenGroup()
        self.keyed_locks = KeyedLocks()
        self._closed = False

    def _next_command_id(self) -> int:
        with self._ids_lock:
            return next(self._command_ids)

    def submit(
        self,
        name: str,
        work: Callable[[CancellationToken], T],
        *,
        key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Operation[T]:
        """Queue ``work(token)`` and return its handle without blocking.

        Raises:
            RuntimeError: If the runner was closed.
        """

        if self._closed:
            raise RuntimeError("operation runner is closed")
        command_id = self._next_command_id()
        token = self._tokens.create_token()

        def call() -> T:
            LOGGER.debug(
                "operation started",
                extra={"stage": "operation", "command_id": command_id, "operation": name, "runtime_id": key},
            )
            return work(token)

        if key is None:
            try:
                future = self._executor.submit(call)
            except RuntimeError:
                self._tokens.remove_token(token)
                raise
        else:
            future = self._submit_keyed(key, call)
        future.add_done_callback(lambda _done: self._tokens.remove_token(token))
        return Operation(command_id, name, future, token, timeout=timeout)

    def _submit_keyed(self, key: str, call: Callable[[], T]) -> "futures.Future[T]":
        future: "futures.Future[T]" = futures.Future()

        def run() -> None:
            try:
                if not future.set_running_or_notify_cancel():
                    return
                try:
                    result = call()
                except BaseException as exc:
                    future.set_exception(exc)
                else:
                    future.set_result(result)
            finally:
                self.keyed_locks.release(key)

        def dropped_by_pool(dispatched: "futures.Future[None]") -> None:
            if dispatched.cancelled():
                future.cancel()
                self.keyed_locks.release(key)

        def start() -> bool:
            if future.cancelled():
                return False
            if self._closed:
                future.cancel()
                return False
            try:
                dispatched = self._executor.submit(run)
            except RuntimeError:
                future.cancel()
                return False
            dispatched.add_done_callback(dropped_by_pool)
            return True

        self.keyed_locks.acquire(key, start)
        return future

    def completed(self, name: str, value: T) -> Operation[T]:
        """Return an already finished operation carrying ``value``."""

        future: "futures.Future[T]" = futures.Future()
        future.set_result(value)
        return Operation(self._next_command_id(), name, future, CancellationToken())

    def close(self, *, wait: bool = True, cancel: bool = True) -> None:
        """Stop accepting work; operations still parked behind a key are cancelled."""

        if self._closed:
            return
        self._closed = True
        if cancel:
            self._tokens.cancel_all()
        if self._owns_executor:
            self._executor.shutdown(wait=wait, cancel_futures=cancel)
