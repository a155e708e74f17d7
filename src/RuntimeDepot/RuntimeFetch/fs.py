"""Filesystem helpers for crash-safe writes.

Records, state files and archives are never written in place: content goes
to a temporary sibling, is fsynced, and is renamed over the destination,
after which the directory itself is fsynced so the rename is durable.
"""

from __future__ import annotations

import os
import shutil
import uuid
from pathlib import Path

__all__ = ["TMP_SUFFIX", "fsync_directory", "atomic_write_bytes", "atomic_replace", "remove_tree"]

TMP_SUFFIX = ".tmp"


def fsync_directory(directory: Path) -> None:
    if os.name == "nt":  # pragma: no cover - directories cannot be opened on Windows
        return
    fd = os.open(str(directory), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write_bytes(destination: Path, data: bytes) -> None:
    """Write ``data`` to ``destination`` via a fsynced temporary sibling."""

    tmp = destination.with_name(f"{destination.name}.{uuid.uuid4().hex[:8]}{TMP_SUFFIX}")
    try:
        with open(tmp, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, destination)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    fsync_directory(destination.parent)


def atomic_replace(source: Path, destination: Path) -> None:
    """Rename ``source`` over ``destination``; both must share a filesystem."""

    os.replace(source, destination)
    fsync_directory(destination.parent)


def remove_tree(path: Path) -> bool:
    """Remove ``path`` (file or directory) if present; return whether anything was removed."""

    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
        return True
    if path.is_dir():
        shutil.rmtree(path)
        return True
    return False
