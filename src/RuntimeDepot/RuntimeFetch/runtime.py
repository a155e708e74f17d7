# === NAVMAP v1 ===
# {
#   "module": "RuntimeDepot.RuntimeFetch.runtime",
#   "purpose": "Immutable value types describing acquirable runtime builds",
#   "sections": [
#     {"id": "hash", "name": "RuntimeHash", "anchor": "HSH", "kind": "api"},
#     {"id": "version", "name": "Versions & ranges", "anchor": "VER", "kind": "api"},
#     {"id": "description", "name": "RuntimeDescription", "anchor": "DSC", "kind": "api"},
#     {"id": "records", "name": "Catalog & inventory views", "anchor": "REC", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Immutable value types describing acquirable runtime builds.

A :class:`RuntimeDescription` is produced by a repository from upstream
metadata and never mutated afterwards.  Its archive hash doubles as the
identity used by the catalog to deduplicate across repositories and by the
inventory as its storage key.
"""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import FrozenSet, Iterable, Mapping, Optional, Tuple

from .checksums import normalize_algorithm

__all__ = [
    "RuntimeHash",
    "RuntimeConfiguration",
    "RuntimeVersion",
    "RuntimeVersionRange",
    "RuntimeBuild",
    "RuntimeDescription",
    "RuntimeRepositoryDescription",
    "CatalogEntry",
    "InventoryRecord",
    "VerificationResult",
    "is_runtime_identity",
]

_HASH_VALUE_RE = re.compile(r"^[a-f0-9]{1,256}$")
_VERSION_RE = re.compile(r"^(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:\+(\d+))?$")
_RANGE_RE = re.compile(r"^([\[(])\s*([^,\s]+)\s*,\s*([^,\s]+)\s*([\])])$")


def is_runtime_identity(value: object) -> bool:
    """Whether ``value`` has the shape of a runtime identity (a lowercase hex digest)."""

    return isinstance(value, str) and _HASH_VALUE_RE.fullmatch(value) is not None


# --- RuntimeHash ---------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class RuntimeHash:
    """Archive digest; ``value`` is the runtime's identity."""

    algorithm: str
    value: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "algorithm", normalize_algorithm(self.algorithm))
        value = self.value.strip().lower()
        if not _HASH_VALUE_RE.match(value):
            raise ValueError(f"hash value must be 1-256 lowercase hex characters, got {self.value!r}")
        object.__setattr__(self, "value", value)

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.value}"


class RuntimeConfiguration(str, Enum):
    """Packaging flavour of a runtime build."""

    JRE = "jre"
    JDK = "jdk"

    @classmethod
    def parse(cls, value: str) -> "RuntimeConfiguration":
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = ", ".join(member.value for member in cls)
            raise ValueError(f"unknown runtime configuration {value!r} (expected one of {valid})") from None

    def __str__(self) -> str:
        return self.value


# --- Versions & ranges ----------------------------------------------------------


@functools.total_ordering
@dataclass(slots=True, frozen=True)
class RuntimeVersion:
    """Structured ``major.minor.patch[+build]`` runtime version.

    Equality is structural, so ``11.0.2`` and ``11.0.2+0`` differ, while
    ordering treats a missing build number as ``0``.
    """

    major: int
    minor: int = 0
    patch: int = 0
    build: Optional[int] = None

    def __post_init__(self) -> None:
        for name in ("major", "minor", "patch"):
            if getattr(self, name) < 0:
                raise ValueError(f"version component {name} must be non-negative")
        if self.build is not None and self.build < 0:
            raise ValueError("version build must be non-negative")

    @classmethod
    def parse(cls, text: str) -> "RuntimeVersion":
        """Parse ``M``, ``M.m``, ``M.m.p`` or ``M.m.p+b``."""

        match = _VERSION_RE.match(text.strip())
        if match is None:
            raise ValueError(f"unparseable runtime version: {text!r}")
        major, minor, patch, build = match.groups()
        return cls(
            major=int(major),
            minor=int(minor or 0),
            patch=int(patch or 0),
            build=int(build) if build is not None else None,
        )

    def _sort_key(self) -> Tuple[int, int, int, int]:
        return (self.major, self.minor, self.patch, self.build or 0)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, RuntimeVersion):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    def to_external_string(self) -> str:
        base = f"{self.major}.{self.minor}.{self.patch}"
        if self.build is not None:
            return f"{base}+{self.build}"
        return base

    def __str__(self) -> str:
        return self.to_external_string()


@dataclass(slots=True, frozen=True)
class RuntimeVersionRange:
    """Interval of runtime versions with independently exclusive bounds."""

    lower: RuntimeVersion
    upper: RuntimeVersion
    lower_exclusive: bool = False
    upper_exclusive: bool = False

    def __post_init__(self) -> None:
        if self.upper < self.lower:
            raise ValueError(f"range lower bound {self.lower} exceeds upper bound {self.upper}")

    @classmethod
    def exactly(cls, version: RuntimeVersion) -> "RuntimeVersionRange":
        return cls(lower=version, upper=version)

    @classmethod
    def parse(cls, text: str) -> "RuntimeVersionRange":
        """Parse interval notation such as ``[11,12)``, or a bare version."""

        stripped = text.strip()
        match = _RANGE_RE.match(stripped)
        if match is None:
            return cls.exactly(RuntimeVersion.parse(stripped))
        opening, lower, upper, closing = match.groups()
        return cls(
            lower=RuntimeVersion.parse(lower),
            upper=RuntimeVersion.parse(upper),
            lower_exclusive=opening == "(",
            upper_exclusive=closing == ")",
        )

    def includes(self, version: RuntimeVersion) -> bool:
        if self.lower_exclusive:
            if not self.lower < version:
                return False
        elif version < self.lower:
            return False
        if self.upper_exclusive:
            return version < self.upper
        return not self.upper < version

    def __str__(self) -> str:
        opening = "(" if self.lower_exclusive else "["
        closing = ")" if self.upper_exclusive else "]"
        return f"{opening}{self.lower},{self.upper}{closing}"


# --- RuntimeDescription ---------------------------------------------------------


@dataclass(slots=True, frozen=True)
class RuntimeBuild:
    number: str
    time: datetime


@dataclass(slots=True, frozen=True)
class RuntimeDescription:
    """Immutable metadata identifying one acquirable runtime build."""

    repository: str
    version: RuntimeVersion
    platform: str
    architecture: str
    vm: str
    configuration: RuntimeConfiguration
    archive_uri: str
    archive_size: int
    archive_hash: RuntimeHash
    tags: FrozenSet[str] = field(default_factory=frozenset)
    build: Optional[RuntimeBuild] = None

    def __post_init__(self) -> None:
        if self.archive_size < 0:
            raise ValueError(f"archive size must be non-negative, got {self.archive_size}")
        if not isinstance(self.configuration, RuntimeConfiguration):
            object.__setattr__(self, "configuration", RuntimeConfiguration.parse(str(self.configuration)))
        if not isinstance(self.tags, frozenset):
            object.__setattr__(self, "tags", frozenset(self.tags))

    @property
    def id(self) -> str:
        return self.archive_hash.value


@dataclass(slots=True, frozen=True)
class RuntimeRepositoryDescription:
    """A whole repository index document: its URI, freshness and runtimes."""

    id: str
    updated: Optional[datetime]
    runtimes: Mapping[str, RuntimeDescription] = field(default_factory=dict)

    @classmethod
    def of(
        cls,
        id: str,
        runtimes: Iterable[RuntimeDescription],
        *,
        updated: Optional[datetime] = None,
    ) -> "RuntimeRepositoryDescription":
        return cls(id=id, updated=updated, runtimes={item.id: item for item in runtimes})


# --- Catalog & inventory views ---------------------------------------------------


@dataclass(slots=True, frozen=True)
class CatalogEntry:
    """Deduplicated catalog result annotated with every repository offering it."""

    description: RuntimeDescription
    repositories: Tuple[str, ...]

    @property
    def id(self) -> str:
        return self.description.id


@dataclass(slots=True, frozen=True)
class InventoryRecord:
    """A locally held runtime together with its on-disk state."""

    description: RuntimeDescription
    archive_present: bool
    verified: bool = False
    unpacked_paths: Tuple[Path, ...] = ()

    @property
    def id(self) -> str:
        return self.description.id


@dataclass(slots=True, frozen=True)
class VerificationResult:
    id: str
    expected: RuntimeHash
    received: RuntimeHash
