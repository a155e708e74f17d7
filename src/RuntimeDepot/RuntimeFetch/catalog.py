# === NAVMAP v1 ===
# {
#   "module": "RuntimeDepot.RuntimeFetch.catalog",
#   "purpose": "Merged, deduplicated view over every open repository and verified downloads",
#   "sections": [
#     {"id": "results", "name": "Update results", "anchor": "RES", "kind": "api"},
#     {"id": "catalog", "name": "Catalog", "anchor": "CAT", "kind": "api"},
#     {"id": "registry", "name": "Registry tracking", "anchor": "REG", "kind": "helpers"},
#     {"id": "download", "name": "Downloads", "anchor": "DWN", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Merged view over every open repository, and verified downloads.

The catalog opens one repository per provider in the registry and keeps
following the registry's events.  Searches recompute the merged view from
each repository's current snapshot; when two repositories list the same
identity the one earlier in registry order supplies the description and the
entry records every repository offering it.

Downloads stream into the destination inventory's staging area and are
handed to the inventory only once the archive hash matched.  Concurrent
requests for an identity that is already being fetched for the same
inventory receive the in-flight operation instead of a second transfer.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Mapping, Optional, Tuple

import httpx

from .cancellation import CancellationToken
from .download import download_archive
from .errors import UnknownIdentityError, UnknownRepositoryError
from .events import (
    CatalogUpdated,
    DownloadCompleted,
    DownloadFailed,
    EventStream,
    ProviderRegistered,
    ProviderUnregistered,
    RepositoryAdded,
    RepositoryOpenFailed,
    RepositoryRemoved,
    RuntimeDownloading,
    RuntimeEvent,
    Subscription,
)
from .net import get_http_client
from .operations import Operation, OperationRunner
from .plugins import RepositoryProviderRegistry
from .repository import Repository, RepositoryContext, RepositoryProvider, cache_directory_name
from .runtime import CatalogEntry, InventoryRecord, RuntimeDescription
from .search import RuntimeSearchCriteria
from .settings import HttpConfiguration

if TYPE_CHECKING:  # pragma: no cover
    from .inventory import Inventory

LOGGER = logging.getLogger("RuntimeDepot.RuntimeFetch.catalog")

__all__ = ["Catalog", "CatalogUpdateResult"]


# ============================================================================
# Update results (RES)
# ============================================================================


@dataclass(frozen=True)
class CatalogUpdateResult:
    """Outcome of one catalog update: repositories refreshed and failures by URI."""

    updated: Tuple[str, ...]
    failed: Mapping[str, BaseException] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


# ============================================================================
# Catalog (CAT)
# ============================================================================


class Catalog:
    """Aggregates the repositories of one registry."""

    def __init__(
        self,
        registry: RepositoryProviderRegistry,
        runner: OperationRunner,
        cache_root: Path,
        *,
        http: Optional[HttpConfiguration] = None,
        http_client_factory: Optional[Callable[[], httpx.Client]] = None,
        events: Optional[EventStream] = None,
    ) -> None:
        self._registry = registry
        self._runner = runner
        self._cache_root = Path(cache_root)
        self._http = http or HttpConfiguration()
        self._http_client_factory = http_client_factory or (lambda: get_http_client(self._http))
        self._events = events or EventStream("catalog")
        self._lock = threading.RLock()
        self._repositories: "OrderedDict[str, Repository]" = OrderedDict()
        self._forwarders: Dict[str, Subscription] = {}
        self._downloads: Dict[Tuple[str, str], Operation[InventoryRecord]] = {}
        self._downloads_lock = threading.RLock()
        self._closed = False

        self._cache_root.mkdir(parents=True, exist_ok=True)
        self._registry_subscription = registry.events().subscribe(self._on_registry_event)
        for provider in registry.list_providers():
            self._open(provider)

    def events(self) -> EventStream:
        return self._events

    def repositories(self) -> Mapping[str, Repository]:
        """Open repositories in registry order."""

        return OrderedDict(self._ordered())

    def _ordered(self) -> List[Tuple[str, Repository]]:
        with self._lock:
            opened = dict(self._repositories)
        ordered = [
            (provider.uri, opened.pop(provider.uri))
            for provider in self._registry.list_providers()
            if provider.uri in opened
        ]
        # Repositories whose provider left the registry mid-call keep their open order.
        ordered.extend(opened.items())
        return ordered

    # --- Registry tracking (REG) ----------------------------------------------

    def _on_registry_event(self, event: RuntimeEvent) -> None:
        if isinstance(event, ProviderRegistered):
            provider = self._registry.get(event.provider)
            if provider is not None:
                self._open(provider)
        elif isinstance(event, ProviderUnregistered):
            self._drop(event.provider)

    def _open(self, provider: RepositoryProvider) -> None:
        uri = provider.uri
        with self._lock:
            if self._closed or uri in self._repositories:
                return
            context = RepositoryContext(
                cache_directory=self._cache_root / cache_directory_name(uri),
                http_client_factory=self._http_client_factory,
                http=self._http,
            )
            try:
                repository = provider.open_repository(context)
            except Exception as exc:
                LOGGER.error(
                    "repository could not be opened",
                    extra={"stage": "open", "repository": uri, "error": str(exc)},
                )
                self._events.publish(RepositoryOpenFailed(repository=uri, cause=exc))
                return
            self._repositories[uri] = repository
            self._forwarders[uri] = repository.events().subscribe(self._events.publish)
        LOGGER.info("repository opened", extra={"stage": "open", "repository": uri})
        self._events.publish(RepositoryAdded(repository=uri))

    def _drop(self, uri: str) -> None:
        with self._lock:
            repository = self._repositories.pop(uri, None)
            forwarder = self._forwarders.pop(uri, None)
        if forwarder is not None:
            forwarder.close()
        if repository is not None:
            LOGGER.info("repository removed", extra={"stage": "open", "repository": uri})
            self._events.publish(RepositoryRemoved(repository=uri))

    # --- updates and searches -----------------------------------------------------

    def update(self, uri: Optional[str] = None, *, timeout: Optional[float] = None) -> Operation[CatalogUpdateResult]:
        """Refresh one repository or all of them.

        Updating all repositories tolerates individual failures and reports
        them in the result; updating a named repository fails with its error.
        """

        def work(token: CancellationToken) -> CatalogUpdateResult:
            if uri is not None:
                with self._lock:
                    repository = self._repositories.get(uri)
                if repository is None:
                    raise UnknownRepositoryError(f"no open repository {uri!r}", details={"repository": uri})
                targets = [(uri, repository)]
            else:
                targets = self._ordered()

            updated: List[str] = []
            failed: Dict[str, BaseException] = {}
            for target_uri, repository in targets:
                token.raise_if_cancelled("catalog update")
                try:
                    repository.update(token)
                except Exception as exc:
                    if uri is not None:
                        self._events.publish(CatalogUpdated(updated=(), failed=(uri,)))
                        raise
                    LOGGER.warning(
                        "repository update failed",
                        extra={"stage": "update", "repository": target_uri, "error": str(exc)},
                    )
                    failed[target_uri] = exc
                    continue
                token.raise_if_cancelled("catalog update")
                updated.append(target_uri)

            result = CatalogUpdateResult(tuple(updated), failed)
            self._events.publish(CatalogUpdated(updated=result.updated, failed=tuple(failed)))
            return result

        return self._runner.submit("catalog.update", work, timeout=timeout)

    def _merged(self) -> "OrderedDict[str, Tuple[RuntimeDescription, List[str]]]":
        merged: "OrderedDict[str, Tuple[RuntimeDescription, List[str]]]" = OrderedDict()
        for uri, repository in self._ordered():
            for description in repository.runtimes().values():
                entry = merged.get(description.id)
                if entry is None:
                    merged[description.id] = (description, [uri])
                elif uri not in entry[1]:
                    entry[1].append(uri)
        return merged

    def _select(self, predicate: Callable[[RuntimeDescription], bool]) -> List[CatalogEntry]:
        return [
            CatalogEntry(description, tuple(uris))
            for description, uris in self._merged().values()
            if predicate(description)
        ]

    def lookup(self, runtime_id: str) -> Optional[CatalogEntry]:
        entry = self._merged().get(runtime_id)
        if entry is None:
            return None
        return CatalogEntry(entry[0], tuple(entry[1]))

    def search(
        self,
        criteria: Optional[RuntimeSearchCriteria] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Operation[List[CatalogEntry]]:
        criteria = criteria or RuntimeSearchCriteria()
        return self._runner.submit("catalog.search", lambda token: self._select(criteria.matches), timeout=timeout)

    def search_exact(
        self,
        criteria: Optional[RuntimeSearchCriteria] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Operation[List[CatalogEntry]]:
        criteria = criteria or RuntimeSearchCriteria()
        return self._runner.submit(
            "catalog.search_exact", lambda token: self._select(criteria.matches_exact), timeout=timeout
        )

    # --- Downloads (DWN) ------------------------------------------------------------

    def download(
        self,
        runtime_id: str,
        inventory: "Inventory",
        *,
        timeout: Optional[float] = None,
    ) -> Operation[InventoryRecord]:
        """Fetch, verify and store ``runtime_id`` in ``inventory``.

        A request for an identity already in flight into the same inventory
        directory returns the in-flight operation.
        """

        key = (runtime_id, str(inventory.root.resolve()))
        with self._downloads_lock:
            existing = self._downloads.get(key)
            if existing is not None and not existing.done():
                LOGGER.debug(
                    "joining in-flight download",
                    extra={"stage": "download", "runtime_id": runtime_id, "command_id": existing.command_id},
                )
                return existing
            # Sharing the runner lets the download hold the identity's queue slot for its whole run.
            shared_runner = inventory.runner is self._runner
            operation = self._runner.submit(
                "catalog.download",
                lambda token: self._download(runtime_id, inventory, token, lock_held=shared_runner),
                key=runtime_id if shared_runner else None,
                timeout=timeout,
            )
            self._downloads[key] = operation
        operation.add_done_callback(lambda done: self._forget(key, done))
        return operation

    def download_if_necessary(
        self,
        runtime_id: str,
        inventory: "Inventory",
        *,
        timeout: Optional[float] = None,
    ) -> Operation[InventoryRecord]:
        record = inventory.record(runtime_id)
        if record is not None and record.archive_present:
            return self._runner.completed("catalog.download_if_necessary", record)
        return self.download(runtime_id, inventory, timeout=timeout)

    def _forget(self, key: Tuple[str, str], operation: Operation[InventoryRecord]) -> None:
        with self._downloads_lock:
            if self._downloads.get(key) is operation:
                del self._downloads[key]

    def _download(
        self,
        runtime_id: str,
        inventory: "Inventory",
        token: CancellationToken,
        *,
        lock_held: bool,
    ) -> InventoryRecord:
        def progress(received: int, expected: int, rate: float) -> None:
            self._events.publish(
                RuntimeDownloading(id=runtime_id, rate=rate, expected=expected, received=received)
            )

        try:
            entry = self.lookup(runtime_id)
            if entry is None:
                raise UnknownIdentityError(
                    f"runtime {runtime_id} is not offered by any repository",
                    details={"runtime_id": runtime_id},
                )
            staged = download_archive(
                self._http_client_factory(),
                entry.description,
                inventory.staging_directory,
                token=token,
                chunk_size=self._http.chunk_size,
                progress=progress,
            )
            record = inventory.commit_download(entry.description, staged, lock_held=lock_held)
        except Exception as exc:
            LOGGER.error(
                "runtime download failed",
                extra={"stage": "download", "runtime_id": runtime_id, "error": str(exc)},
            )
            self._events.publish(DownloadFailed(id=runtime_id, cause=exc))
            raise
        LOGGER.info("runtime downloaded", extra={"stage": "download", "runtime_id": runtime_id})
        self._events.publish(DownloadCompleted(id=runtime_id))
        return record

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            forwarders = list(self._forwarders.values())
            self._forwarders.clear()
            self._repositories.clear()
        self._registry_subscription.close()
        for forwarder in forwarders:
            forwarder.close()
        self._events.close()
