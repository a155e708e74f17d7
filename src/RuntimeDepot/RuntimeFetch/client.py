# === NAVMAP v1 ===
# {
#   "module": "RuntimeDepot.RuntimeFetch.client",
#   "purpose": "Facade binding one catalog and one inventory behind asynchronous operations",
#   "sections": [
#     {"id": "summary", "name": "RepositorySummary", "anchor": "SUM", "kind": "api"},
#     {"id": "client", "name": "RuntimeClient", "anchor": "CLI", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Client facade binding one catalog and one inventory.

Every public method returns an :class:`Operation` immediately.  Catalog and
inventory work share one worker pool, so a download and later inventory
operations on the same identity are ordered by submission.  :meth:`events`
merges the catalog's and inventory's streams into one stream for the
client's lifetime.

Example:
    >>> with RuntimeClient.open(Path("/tmp/rtd")) as client:  # doctest: +SKIP
    ...     client.repository_update().result()
    ...     entries = client.catalog_search().result()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .archives import UnpackOptions
from .catalog import Catalog, CatalogUpdateResult
from .events import MergedEventStream
from .index_repository import IndexRepositoryProvider
from .inventory import Inventory
from .operations import Operation, OperationRunner
from .plugins import RepositoryProviderRegistry
from .runtime import CatalogEntry, InventoryRecord, VerificationResult
from .search import RuntimeSearchCriteria
from .settings import RuntimeDepotSettings, get_default_settings

LOGGER = logging.getLogger("RuntimeDepot.RuntimeFetch.client")

REPOSITORIES_DIR = "repositories"

__all__ = ["RuntimeClient", "RepositorySummary", "REPOSITORIES_DIR"]


@dataclass(frozen=True)
class RepositorySummary:
    uri: str
    name: str
    runtime_count: int


class RuntimeClient:
    """One catalog and one inventory rooted at a base directory."""

    def __init__(
        self,
        base_directory: Path,
        settings: RuntimeDepotSettings,
        registry: RepositoryProviderRegistry,
        runner: OperationRunner,
        catalog: Catalog,
        inventory: Inventory,
    ) -> None:
        self.base_directory = base_directory
        self.settings = settings
        self.registry = registry
        self.catalog = catalog
        self.inventory = inventory
        self._runner = runner
        self._events = MergedEventStream("client", [catalog.events(), inventory.events()])
        self._closed = False

    @classmethod
    def open(
        cls,
        base_directory: Optional[Path] = None,
        *,
        registry: Optional[RepositoryProviderRegistry] = None,
        settings: Optional[RuntimeDepotSettings] = None,
        workers: Optional[int] = None,
    ) -> "RuntimeClient":
        """Open the inventory under ``base_directory`` and a catalog over ``registry``.

        Without a registry, a fresh one is populated from entry points (when
        ``settings.load_plugins`` is set).  Index repositories declared in the
        settings are registered unless their URI is already taken.
        """

        settings = settings or get_default_settings()
        base = Path(base_directory).expanduser() if base_directory is not None else settings.base_directory
        if registry is None:
            registry = RepositoryProviderRegistry()
            if settings.load_plugins:
                registry.load_entry_points()
        for declared in settings.repositories:
            if declared.uri not in registry:
                registry.register(IndexRepositoryProvider(declared.uri, declared.url, declared.name))

        runner = OperationRunner(workers=workers or settings.workers)
        inventory: Optional[Inventory] = None
        try:
            inventory = Inventory.open(base, runner=runner)
            catalog = Catalog(registry, runner, base / REPOSITORIES_DIR, http=settings.http)
        except BaseException:
            if inventory is not None:
                inventory.close()
            runner.close()
            raise
        LOGGER.info(
            "runtime client opened",
            extra={"stage": "init", "base_directory": str(base), "providers": len(registry)},
        )
        return cls(base, settings, registry, runner, catalog, inventory)

    def events(self) -> MergedEventStream:
        return self._events

    # --- inventory ------------------------------------------------------------

    def inventory_search(
        self, criteria: Optional[RuntimeSearchCriteria] = None, *, timeout: Optional[float] = None
    ) -> Operation[List[InventoryRecord]]:
        return self.inventory.search(criteria, timeout=timeout)

    def inventory_search_exact(
        self, criteria: Optional[RuntimeSearchCriteria] = None, *, timeout: Optional[float] = None
    ) -> Operation[List[InventoryRecord]]:
        return self.inventory.search_exact(criteria, timeout=timeout)

    def inventory_delete(self, runtime_id: str, *, timeout: Optional[float] = None) -> Operation[bool]:
        return self.inventory.delete(runtime_id, timeout=timeout)

    def inventory_verify(
        self, runtime_id: str, *, timeout: Optional[float] = None
    ) -> Operation[VerificationResult]:
        return self.inventory.verify(runtime_id, timeout=timeout)

    def inventory_unpack(
        self,
        runtime_id: str,
        target: Optional[Path] = None,
        *,
        options: UnpackOptions = UnpackOptions(),
        timeout: Optional[float] = None,
    ) -> Operation[Path]:
        return self.inventory.unpack(runtime_id, target, options=options, timeout=timeout)

    def inventory_path_of(self, runtime_id: str, *, timeout: Optional[float] = None) -> Operation[Path]:
        return self._runner.submit(
            "inventory.path_of", lambda token: self.inventory.path_of(runtime_id), timeout=timeout
        )

    # --- catalog ----------------------------------------------------------------

    def catalog_search(
        self, criteria: Optional[RuntimeSearchCriteria] = None, *, timeout: Optional[float] = None
    ) -> Operation[List[CatalogEntry]]:
        return self.catalog.search(criteria, timeout=timeout)

    def catalog_search_exact(
        self, criteria: Optional[RuntimeSearchCriteria] = None, *, timeout: Optional[float] = None
    ) -> Operation[List[CatalogEntry]]:
        return self.catalog.search_exact(criteria, timeout=timeout)

    def catalog_download(self, runtime_id: str, *, timeout: Optional[float] = None) -> Operation[InventoryRecord]:
        return self.catalog.download(runtime_id, self.inventory, timeout=timeout)

    def catalog_download_if_necessary(
        self, runtime_id: str, *, timeout: Optional[float] = None
    ) -> Operation[InventoryRecord]:
        return self.catalog.download_if_necessary(runtime_id, self.inventory, timeout=timeout)

    # --- repositories ---------------------------------------------------------------

    def repository_update(
        self, uri: Optional[str] = None, *, timeout: Optional[float] = None
    ) -> Operation[CatalogUpdateResult]:
        return self.catalog.update(uri, timeout=timeout)

    def repository_list(self, *, timeout: Optional[float] = None) -> Operation[List[RepositorySummary]]:
        def work(token) -> List[RepositorySummary]:
            return [
                RepositorySummary(uri=uri, name=repository.provider.name, runtime_count=len(repository.runtimes()))
                for uri, repository in self.catalog.repositories().items()
            ]

        return self._runner.submit("repository.list", work, timeout=timeout)

    # --- lifecycle ----------------------------------------------------------------------

    def close(self) -> None:
        """Cancel outstanding work, wait for the pool and detach every stream."""

        if self._closed:
            return
        self._closed = True
        self._runner.close(wait=True, cancel=True)
        self._events.close()
        self.catalog.close()
        self.inventory.close()
        LOGGER.debug("runtime client closed", extra={"stage": "shutdown"})

    def __enter__(self) -> "RuntimeClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
