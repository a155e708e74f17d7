# === NAVMAP v1 ===
# {
#   "module": "RuntimeDepot.RuntimeFetch.repository",
#   "purpose": "Repository provider contract, open context, and an optional helper base",
#   "sections": [
#     {"id": "contract", "name": "Provider & repository protocols", "anchor": "SPI", "kind": "api"},
#     {"id": "context", "name": "RepositoryContext", "anchor": "CTX", "kind": "api"},
#     {"id": "base", "name": "AbstractRepository", "anchor": "BAS", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Repository provider contract.

A provider stands for one upstream source of runtime descriptions.  The
catalog asks it for a live :class:`Repository` once per client, calls
``update`` to refresh the repository's held descriptions, and forwards the
repository's events.  Nothing else about an upstream is visible to the core.

:class:`AbstractRepository` is optional: it supplies the event stream and
the started/completed/failed bookkeeping so a concrete repository only
implements :meth:`AbstractRepository._fetch`.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Optional, Protocol, runtime_checkable

import httpx

from .errors import OperationCancelledError, RepositoryUpdateError
from .events import (
    EventStream,
    RepositoryUpdateCompleted,
    RepositoryUpdateFailed,
    RepositoryUpdateProgress,
    RepositoryUpdateStarted,
)
from .runtime import RuntimeDescription
from .settings import HttpConfiguration

LOGGER = logging.getLogger("RuntimeDepot.RuntimeFetch.repository")

ShouldCancel = Callable[[], bool]

__all__ = [
    "ShouldCancel",
    "Repository",
    "RepositoryProvider",
    "RepositoryContext",
    "AbstractRepository",
    "cache_directory_name",
]


# ============================================================================
# Provider & repository protocols (SPI)
# ============================================================================


@runtime_checkable
class Repository(Protocol):
    """Live handle on one upstream source, bound to its provider."""

    @property
    def provider(self) -> "RepositoryProvider":  # pragma: no cover - protocol
        ...

    def runtimes(self) -> Mapping[str, RuntimeDescription]:  # pragma: no cover - protocol
        """Currently known descriptions keyed by identity; empty before the first update."""

    def update(self, should_cancel: ShouldCancel) -> None:  # pragma: no cover - protocol
        """Refresh the held descriptions from upstream.

        Implementations poll ``should_cancel`` at their checkpoints and stop
        early when it returns ``True``.  Unrecoverable network or format
        failures raise :class:`RepositoryUpdateError` and leave the previous
        descriptions in place.
        """

    def events(self) -> EventStream:  # pragma: no cover - protocol
        ...


@runtime_checkable
class RepositoryProvider(Protocol):
    """One upstream source type, identified by a stable ``uri``."""

    @property
    def uri(self) -> str:  # pragma: no cover - protocol
        ...

    @property
    def name(self) -> str:  # pragma: no cover - protocol
        ...

    def open_repository(self, context: "RepositoryContext") -> Repository:  # pragma: no cover
        """Return a live repository; raise :class:`RepositoryOpenError` if local state is unusable."""


# ============================================================================
# RepositoryContext (CTX)
# ============================================================================

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def cache_directory_name(uri: str) -> str:
    """Filesystem-safe directory name for a provider URI."""

    cleaned = _UNSAFE_NAME_RE.sub("_", uri).strip("._")
    return cleaned[:200] or "repository"


@dataclass(frozen=True)
class RepositoryContext:
    """What a provider may use while opening its repository."""

    cache_directory: Path
    http_client_factory: Callable[[], httpx.Client]
    http: HttpConfiguration = field(default_factory=HttpConfiguration)

    def http_client(self) -> httpx.Client:
        return self.http_client_factory()


# ============================================================================
# AbstractRepository (BAS)
# ============================================================================


class AbstractRepository:
    """Helper base owning the held descriptions and the lifecycle events."""

    def __init__(self, provider: RepositoryProvider, runtimes: Iterable[RuntimeDescription] = ()) -> None:
        self._provider = provider
        self._events = EventStream(f"repository:{provider.uri}")
        self._lock = threading.Lock()
        self._runtimes: Mapping[str, RuntimeDescription] = MappingProxyType(
            {item.id: item for item in runtimes}
        )

    @property
    def provider(self) -> RepositoryProvider:
        return self._provider

    def runtimes(self) -> Mapping[str, RuntimeDescription]:
        return self._runtimes

    def events(self) -> EventStream:
        return self._events

    def _replace_runtimes(self, runtimes: Iterable[RuntimeDescription]) -> int:
        snapshot = MappingProxyType({item.id: item for item in runtimes})
        with self._lock:
            self._runtimes = snapshot
        return len(snapshot)

    def _progress(self, completed: int, expected: Optional[int] = None) -> None:
        self._events.publish(
            RepositoryUpdateProgress(repository=self._provider.uri, completed=completed, expected=expected)
        )

    def _fetch(self, should_cancel: ShouldCancel) -> Iterable[RuntimeDescription]:
        raise NotImplementedError

    def update(self, should_cancel: ShouldCancel) -> None:
        """Run :meth:`_fetch` and swap in its result.

        A cancelled update returns normally and keeps the previous
        descriptions; the cancellation is still reported as a failed update
        event.
        """

        uri = self._provider.uri
        self._events.publish(RepositoryUpdateStarted(repository=uri))
        try:
            fetched = list(self._fetch(should_cancel))
            if should_cancel():
                raise OperationCancelledError(f"update of {uri} was cancelled")
        except OperationCancelledError as exc:
            LOGGER.info("repository update cancelled", extra={"stage": "update", "repository": uri})
            self._events.publish(RepositoryUpdateFailed(repository=uri, cause=exc))
            return
        except RepositoryUpdateError as exc:
            self._events.publish(RepositoryUpdateFailed(repository=uri, cause=exc))
            raise
        except Exception as exc:
            error = RepositoryUpdateError(f"update of {uri} failed: {exc}", repository=uri)
            self._events.publish(RepositoryUpdateFailed(repository=uri, cause=error))
            raise error from exc
        count = self._replace_runtimes(fetched)
        LOGGER.info(
            "repository updated",
            extra={"stage": "update", "repository": uri, "runtimes": count},
        )
        self._events.publish(RepositoryUpdateCompleted(repository=uri, count=count))
