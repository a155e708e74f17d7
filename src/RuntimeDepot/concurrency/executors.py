"""Executor factory used by the runtime client's operation runner."""

from __future__ import annotations

import os
from concurrent import futures
from typing import Optional

Executor = futures.Executor

_MAX_DEFAULT_WORKERS = 8


def default_worker_count() -> int:
    """Return a pool size suited to network- and disk-bound work."""

    return max(2, min(_MAX_DEFAULT_WORKERS, (os.cpu_count() or 1) + 2))


def create_executor(workers: Optional[int] = None, *, name: str = "runtimedepot") -> Executor:
    """
    Return a bounded thread pool for IO-bound operations.

    Args:
        workers: Desired concurrency level; ``None`` picks
            :func:`default_worker_count`. Values below one are rejected because
            public calls must never run their work on the calling thread.
        name: Thread name prefix, visible in logs and debuggers.

    Returns:
        A ``ThreadPoolExecutor``. The caller owns it and must shut it down.
    """
    count = default_worker_count() if workers is None else int(workers)
    if count < 1:
        raise ValueError(f"worker count must be at least 1, got {workers}")
    return futures.ThreadPoolExecutor(max_workers=count, thread_name_prefix=name)
