"""Checksum algorithm normalisation and streaming digest helpers.

Repository indexes name their digest algorithms in a variety of spellings
(``SHA-256``, ``sha256``, ``SHA256``).  This module maps those onto one
canonical upper-case form for records and onto :mod:`hashlib` names for
computation, and exposes streaming helpers that hash archives in fixed-size
chunks so memory stays bounded regardless of archive size.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Callable, Optional

__all__ = [
    "CHUNK_SIZE",
    "normalize_algorithm",
    "hashlib_name",
    "new_hasher",
    "compute_file_hash",
]

CHUNK_SIZE = 1 << 16

_CANONICAL_ALGORITHMS = {
    "md5": "MD5",
    "sha1": "SHA-1",
    "sha224": "SHA-224",
    "sha256": "SHA-256",
    "sha384": "SHA-384",
    "sha512": "SHA-512",
}


def _algorithm_key(algorithm: str) -> str:
    return algorithm.strip().lower().replace("-", "").replace("_", "")


def normalize_algorithm(algorithm: Optional[str]) -> str:
    """Return the canonical upper-case spelling for ``algorithm``."""

    key = _algorithm_key(algorithm or "")
    try:
        return _CANONICAL_ALGORITHMS[key]
    except KeyError:
        raise ValueError(f"unsupported checksum algorithm {algorithm!r}") from None


def hashlib_name(algorithm: str) -> str:
    return _algorithm_key(normalize_algorithm(algorithm))


def new_hasher(algorithm: str) -> "hashlib._Hash":
    return hashlib.new(hashlib_name(algorithm))


def compute_file_hash(
    path: Path,
    algorithm: str,
    *,
    chunk_size: int = CHUNK_SIZE,
    checkpoint: Optional[Callable[[], None]] = None,
) -> str:
    """Compute the hex digest of ``path`` in ``chunk_size`` reads.

    ``checkpoint`` is invoked between chunks; a cancellation checkpoint
    aborts hashing by raising.
    """

    hasher = new_hasher(algorithm)
    with path.open("rb") as stream:
        for chunk in iter(lambda: stream.read(chunk_size), b""):
            if checkpoint is not None:
                checkpoint()
            hasher.update(chunk)
    return hasher.hexdigest()
