"""Repository provider registry and entry-point discovery.

The registry is an external collaborator of the catalog: the catalog reads
:meth:`RepositoryProviderRegistry.list_providers` once and then follows the
registry's event stream to open or drop repositories as providers come and
go.  Third-party providers are advertised in the ``runtimedepot.repositories``
entry-point group.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from importlib import metadata
from typing import Dict, List, MutableMapping, Optional

from .errors import PluginError
from .events import EventStream, ProviderRegistered, ProviderUnregistered
from .repository import RepositoryProvider

__all__ = [
    "PROVIDER_ENTRY_POINT_GROUP",
    "RepositoryProviderRegistry",
]

PROVIDER_ENTRY_POINT_GROUP = "runtimedepot.repositories"

LOGGER = logging.getLogger("RuntimeDepot.RuntimeFetch.plugins")


def _describe_plugin(obj: object) -> str:
    module = getattr(obj, "__module__", obj.__class__.__module__)
    name = getattr(obj, "__qualname__", obj.__class__.__qualname__)
    return f"{module}.{name}"


def _detect_entry_version(entry) -> str:
    dist = getattr(entry, "dist", None)
    if dist is not None:
        version = getattr(dist, "version", None)
        if version:
            return version
    module_name = getattr(entry, "module", "")
    root = module_name.split(".")[0] if module_name else module_name
    if root:
        try:
            return metadata.version(root)
        except metadata.PackageNotFoundError:  # pragma: no cover - optional plugin
            return "unknown"
    return "unknown"


class RepositoryProviderRegistry:
    """Ordered, thread-safe set of providers keyed by URI."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._providers: MutableMapping[str, RepositoryProvider] = OrderedDict()
        self._meta: Dict[str, Dict[str, str]] = {}
        self._events = EventStream("provider-registry")

    def events(self) -> EventStream:
        return self._events

    def register(
        self,
        provider: RepositoryProvider,
        *,
        overwrite: bool = False,
        version: str = "local",
    ) -> None:
        if not isinstance(provider, RepositoryProvider):
            raise PluginError(f"{provider!r} does not implement the repository provider interface")
        uri = provider.uri
        with self._lock:
            previous = self._providers.get(uri)
            if previous is not None and not overwrite:
                raise PluginError(f"a provider for {uri!r} is already registered")
            if previous is not None:
                self._unregister_locked(uri)
            self._providers[uri] = provider
            self._meta[uri] = {
                "name": provider.name,
                "qualified": _describe_plugin(provider),
                "version": version,
            }
            self._events.publish(ProviderRegistered(provider=uri))
        LOGGER.info(
            "repository provider registered",
            extra={"stage": "init", "provider": uri, "provider_name": provider.name},
        )

    def _unregister_locked(self, uri: str) -> RepositoryProvider:
        provider = self._providers.pop(uri)
        self._meta.pop(uri, None)
        self._events.publish(ProviderUnregistered(provider=uri))
        return provider

    def unregister(self, uri: str) -> RepositoryProvider:
        """Remove the provider for ``uri``; raises ``KeyError`` when absent."""

        with self._lock:
            provider = self._unregister_locked(uri)
        LOGGER.info("repository provider unregistered", extra={"stage": "init", "provider": uri})
        return provider

    def get(self, uri: str) -> Optional[RepositoryProvider]:
        with self._lock:
            return self._providers.get(uri)

    def list_providers(self) -> List[RepositoryProvider]:
        """Providers in registration order."""

        with self._lock:
            return list(self._providers.values())

    def metadata(self) -> Dict[str, Dict[str, str]]:
        with self._lock:
            return {uri: dict(meta) for uri, meta in self._meta.items()}

    def __contains__(self, uri: object) -> bool:
        with self._lock:
            return uri in self._providers

    def __len__(self) -> int:
        with self._lock:
            return len(self._providers)

    def load_entry_points(self, group: str = PROVIDER_ENTRY_POINT_GROUP) -> List[str]:
        """Register every provider advertised under ``group``; return their URIs.

        A plugin that fails to load or does not satisfy the provider
        interface is logged and skipped.
        """

        loaded: List[str] = []
        for entry in metadata.entry_points().select(group=group):
            try:
                candidate = entry.load()
                provider = candidate() if isinstance(candidate, type) else candidate
                if provider.uri in self:
                    continue
                self.register(provider, version=_detect_entry_version(entry))
            except Exception as exc:  # pragma: no cover - plugin failures are unpredictable
                LOGGER.warning(
                    "repository provider plugin failed",
                    extra={"stage": "init", "plugin": entry.name, "error": str(exc)},
                )
                continue
            loaded.append(provider.uri)
        return loaded

