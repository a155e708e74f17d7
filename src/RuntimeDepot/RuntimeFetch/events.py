# === NAVMAP v1 ===
# {
#   "module": "RuntimeDepot.RuntimeFetch.events",
#   "purpose": "Event types and observer-list streams with fan-in merging",
#   "sections": [
#     {"id": "types", "name": "Event Types", "anchor": "TYP", "kind": "api"},
#     {"id": "streams", "name": "Event Streams", "anchor": "STR", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Event types and observer-list streams for registry, repositories, catalog, and inventory.

Every component owns one :class:`EventStream`.  Publishing delivers to each
subscriber on the publishing thread while holding the stream's delivery lock,
so a subscriber sees a component's events in emission order.  A
:class:`MergedEventStream` fans several sources into one stream; events of
different sources interleave as they arrive.

Failures are reported through the operation handles; events only describe
what happened and never carry control flow.  A subscriber that raises is
logged and skipped.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

LOGGER = logging.getLogger("RuntimeDepot.RuntimeFetch.events")

Subscriber = Callable[["RuntimeEvent"], None]

__all__ = [
    "RuntimeEvent",
    "ProviderRegistered",
    "ProviderUnregistered",
    "RepositoryAdded",
    "RepositoryRemoved",
    "RepositoryOpenFailed",
    "RepositoryUpdateStarted",
    "RepositoryUpdateProgress",
    "RepositoryUpdateCompleted",
    "RepositoryUpdateFailed",
    "CatalogUpdated",
    "RuntimeDownloading",
    "DownloadCompleted",
    "DownloadFailed",
    "RuntimeAdded",
    "RuntimeDeleted",
    "RuntimeVerified",
    "RuntimeUnpacked",
    "InventoryFailed",
    "Subscription",
    "EventStream",
    "MergedEventStream",
]


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Event Types (TYP)
# ============================================================================


@dataclass(frozen=True)
class RuntimeEvent:
    """Base class for every event; ``timestamp`` is set at construction."""

    timestamp: datetime = field(default_factory=_now, kw_only=True, compare=False)


# --- provider registry ---


@dataclass(frozen=True)
class ProviderRegistered(RuntimeEvent):
    provider: str


@dataclass(frozen=True)
class ProviderUnregistered(RuntimeEvent):
    provider: str


# --- repositories (forwarded by the catalog) ---


@dataclass(frozen=True)
class RepositoryAdded(RuntimeEvent):
    repository: str


@dataclass(frozen=True)
class RepositoryRemoved(RuntimeEvent):
    repository: str


@dataclass(frozen=True)
class RepositoryOpenFailed(RuntimeEvent):
    repository: str
    cause: BaseException


@dataclass(frozen=True)
class RepositoryUpdateStarted(RuntimeEvent):
    repository: str


@dataclass(frozen=True)
class RepositoryUpdateProgress(RuntimeEvent):
    """Progress of an update; ``expected`` is ``None`` when unknown."""

    repository: str
    completed: int
    expected: Optional[int] = None


@dataclass(frozen=True)
class RepositoryUpdateCompleted(RuntimeEvent):
    repository: str
    count: int


@dataclass(frozen=True)
class RepositoryUpdateFailed(RuntimeEvent):
    repository: str
    cause: BaseException


# --- catalog ---


@dataclass(frozen=True)
class CatalogUpdated(RuntimeEvent):
    """Overall completion of a catalog update across one or more repositories."""

    updated: Tuple[str, ...]
    failed: Tuple[str, ...]


@dataclass(frozen=True)
class RuntimeDownloading(RuntimeEvent):
    """Transfer progress; ``rate`` is bytes per second since the previous report."""

    id: str
    rate: float
    expected: int
    received: int


@dataclass(frozen=True)
class DownloadCompleted(RuntimeEvent):
    id: str


@dataclass(frozen=True)
class DownloadFailed(RuntimeEvent):
    id: str
    cause: BaseException


# --- inventory ---


@dataclass(frozen=True)
class RuntimeAdded(RuntimeEvent):
    id: str


@dataclass(frozen=True)
class RuntimeDeleted(RuntimeEvent):
    id: str


@dataclass(frozen=True)
class RuntimeVerified(RuntimeEvent):
    id: str


@dataclass(frozen=True)
class RuntimeUnpacked(RuntimeEvent):
    id: str
    path: Path


@dataclass(frozen=True)
class InventoryFailed(RuntimeEvent):
    """An inventory operation ``op`` on ``id`` failed with ``cause``."""

    op: str
    id: str
    cause: BaseException


# ============================================================================
# Event Streams (STR)
# ============================================================================


class Subscription:
    """Handle returned by :meth:`EventStream.subscribe`; closing it detaches the subscriber."""

    def __init__(self, stream: "EventStream", subscriber: Subscriber) -> None:
        self._stream = stream
        self._subscriber = subscriber
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._stream._detach(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventStream:
    """Observer list owned by one component.

    Examples:
        >>> stream = EventStream("inventory")
        >>> seen = []
        >>> _ = stream.subscribe(seen.append)
        >>> stream.publish(RuntimeDeleted(id="abc"))
        >>> [type(event).__name__ for event in seen]
        ['RuntimeDeleted']
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscriptions: List[Subscription] = []
        self._subscriptions_lock = threading.Lock()
        self._delivery_lock = threading.RLock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, subscriber: Subscriber) -> Subscription:
        subscription = Subscription(self, subscriber)
        with self._subscriptions_lock:
            if not self._closed:
                self._subscriptions.append(subscription)
            else:
                subscription._closed = True
        return subscription

    def subscribe_queue(self, maxsize: int = 0) -> Tuple[Subscription, "queue.Queue[RuntimeEvent]"]:
        """Subscribe a queue, for consumers that prefer to pull events."""

        events: "queue.Queue[RuntimeEvent]" = queue.Queue(maxsize)
        return self.subscribe(events.put), events

    def _detach(self, subscription: Subscription) -> None:
        with self._subscriptions_lock:
            try:
                self._subscriptions.remove(subscription)
            except ValueError:
                pass

    def publish(self, event: RuntimeEvent) -> None:
        with self._delivery_lock:
            with self._subscriptions_lock:
                if self._closed:
                    return
                targets = list(self._subscriptions)
            for subscription in targets:
                if subscription.closed:
                    continue
                try:
                    subscription._subscriber(event)
                except Exception:
                    LOGGER.exception(
                        "event subscriber failed",
                        extra={"stage": "events", "stream": self.name, "event": type(event).__name__},
                    )

    def close(self) -> None:
        """Stop delivering; later publishes are dropped."""

        with self._subscriptions_lock:
            self._closed = True
            subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription._closed = True


class MergedEventStream(EventStream):
    """Fan-in of several source streams into one.

    Each source keeps its own emission order inside the merged stream.
    Closing the merged stream detaches it from every source.
    """

    def __init__(self, name: str, sources: Iterable[EventStream] = ()) -> None:
        super().__init__(name)
        self._sources: Dict[int, Tuple[EventStream, Subscription]] = {}
        self._sources_lock = threading.Lock()
        for source in sources:
            self.add_source(source)

    def add_source(self, source: EventStream) -> None:
        with self._sources_lock:
            if id(source) in self._sources:
                return
            self._sources[id(source)] = (source, source.subscribe(self.publish))

    def remove_source(self, source: EventStream) -> None:
        with self._sources_lock:
            entry = self._sources.pop(id(source), None)
        if entry is not None:
            entry[1].close()

    def close(self) -> None:
        with self._sources_lock:
            entries, self._sources = list(self._sources.values()), {}
        for _, subscription in entries:
            subscription.close()
        super().close()
