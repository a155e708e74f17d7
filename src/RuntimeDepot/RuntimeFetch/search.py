"""Search criteria shared by catalog and inventory queries."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from .runtime import RuntimeConfiguration, RuntimeDescription, RuntimeHash, RuntimeVersionRange

__all__ = ["RuntimeSearchCriteria"]


def _contains(needle: Optional[str], haystack: str) -> bool:
    return needle is None or needle.lower() in haystack.lower()


def _equals(expected: Optional[object], actual: object) -> bool:
    return expected is None or expected == actual


@dataclass(slots=True, frozen=True)
class RuntimeSearchCriteria:
    """Optional, AND-combined filters over runtime descriptions.

    Every field left as ``None`` (and an empty ``required_tags``) matches
    anything, so ``RuntimeSearchCriteria()`` matches every description.
    """

    repository: Optional[str] = None
    version_range: Optional[RuntimeVersionRange] = None
    platform: Optional[str] = None
    architecture: Optional[str] = None
    vm: Optional[str] = None
    configuration: Optional[RuntimeConfiguration] = None
    archive_uri: Optional[str] = None
    archive_size: Optional[int] = None
    archive_hash: Optional[RuntimeHash] = None
    id: Optional[str] = None
    required_tags: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if self.configuration is not None and not isinstance(self.configuration, RuntimeConfiguration):
            object.__setattr__(self, "configuration", RuntimeConfiguration.parse(str(self.configuration)))
        if not isinstance(self.required_tags, frozenset):
            object.__setattr__(self, "required_tags", frozenset(self.required_tags))

    def _matches_common(self, description: RuntimeDescription) -> bool:
        if self.version_range is not None and not self.version_range.includes(description.version):
            return False
        return (
            _equals(self.configuration, description.configuration)
            and _equals(self.archive_uri, description.archive_uri)
            and _equals(self.archive_size, description.archive_size)
            and _equals(self.archive_hash, description.archive_hash)
            and self.required_tags <= description.tags
        )

    def matches(self, description: RuntimeDescription) -> bool:
        """Inexact match: textual fields match on case-insensitive containment."""

        return (
            self._matches_common(description)
            and _contains(self.repository, description.repository)
            and _contains(self.id, description.id)
            and _contains(self.platform, description.platform)
            and _contains(self.architecture, description.architecture)
            and _contains(self.vm, description.vm)
        )

    def matches_exact(self, description: RuntimeDescription) -> bool:
        return (
            self._matches_common(description)
            and _equals(self.repository, description.repository)
            and _equals(self.id, description.id)
            and _equals(self.platform, description.platform)
            and _equals(self.architecture, description.architecture)
            and _equals(self.vm, description.vm)
        )
