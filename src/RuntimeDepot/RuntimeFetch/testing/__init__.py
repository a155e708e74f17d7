# === NAVMAP v1 ===
# {
#   "module": "RuntimeDepot.RuntimeFetch.testing",
#   "purpose": "Test utilities: mock HTTP clients, in-memory providers, and description builders",
#   "sections": [
#     {"id": "mock-http", "name": "HTTP Client Helpers", "anchor": "HTTP", "kind": "helpers"},
#     {"id": "providers", "name": "In-memory providers", "anchor": "PRV", "kind": "helpers"},
#     {"id": "builders", "name": "Description builders", "anchor": "BLD", "kind": "helpers"}
#   ]
# }
# === /NAVMAP ===

"""Test utilities for code built on the runtime client.

These helpers are used by the package's own test-suite and are importable by
downstream projects that plug in providers or codecs of their own.
"""

from __future__ import annotations

import contextlib
import hashlib
import threading
from typing import Iterable, Iterator, List, Optional

from ..plugins import RepositoryProviderRegistry
from ..repository import AbstractRepository, RepositoryContext, ShouldCancel
from ..runtime import (
    RuntimeConfiguration,
    RuntimeDescription,
    RuntimeHash,
    RuntimeVersion,
)

__all__ = [
    "use_mock_http_client",
    "StaticRepository",
    "StaticRepositoryProvider",
    "temporary_provider",
    "describe_archive",
]


# --- HTTP Client Helpers --------------------------------------------------------


@contextlib.contextmanager
def use_mock_http_client(transport: "httpx.BaseTransport", **client_kwargs):
    """Temporarily install an HTTPX client backed by ``transport``."""

    import httpx

    from ..net import configure_http_client, reset_http_client

    default_config = client_kwargs.pop("default_config", None)
    client = httpx.Client(transport=transport, **client_kwargs)
    configure_http_client(client=client, default_config=default_config)
    try:
        yield client
    finally:
        reset_http_client()
        client.close()


# --- In-memory providers ----------------------------------------------------------


class StaticRepository(AbstractRepository):
    """Repository whose upstream is the provider's in-memory list."""

    def __init__(self, provider: "StaticRepositoryProvider", context: RepositoryContext) -> None:
        super().__init__(provider)
        self.context = context
        self._static = provider

    def _fetch(self, should_cancel: ShouldCancel) -> List[RuntimeDescription]:
        return self._static._next_fetch(should_cancel)


class StaticRepositoryProvider:
    """Provider serving a fixed list of descriptions on every update.

    ``fail_with`` makes the next update raise; ``gate`` blocks updates until
    set, which lets tests observe in-flight behaviour.
    """

    def __init__(
        self,
        uri: str,
        runtimes: Iterable[RuntimeDescription] = (),
        *,
        name: Optional[str] = None,
        open_error: Optional[BaseException] = None,
    ) -> None:
        self._uri = uri
        self._name = name or uri
        self.runtimes = list(runtimes)
        self.open_error = open_error
        self.fail_with: Optional[BaseException] = None
        self.gate: Optional[threading.Event] = None
        self.update_calls = 0
        self.repositories: List[StaticRepository] = []

    @property
    def uri(self) -> str:
        return self._uri

    @property
    def name(self) -> str:
        return self._name

    def open_repository(self, context: RepositoryContext) -> StaticRepository:
        if self.open_error is not None:
            raise self.open_error
        repository = StaticRepository(self, context)
        self.repositories.append(repository)
        return repository

    def _next_fetch(self, should_cancel: ShouldCancel) -> List[RuntimeDescription]:
        self.update_calls += 1
        if self.gate is not None:
            while not self.gate.wait(0.01):
                if should_cancel():
                    return []
        if self.fail_with is not None:
            error, self.fail_with = self.fail_with, None
            raise error
        return list(self.runtimes)


@contextlib.contextmanager
def temporary_provider(registry: RepositoryProviderRegistry, provider) -> Iterator[object]:
    """Register ``provider`` for the duration of the block, restoring any previous one."""

    previous = registry.get(provider.uri)
    registry.register(provider, overwrite=True)
    try:
        yield provider
    finally:
        if registry.get(provider.uri) is provider:
            registry.unregister(provider.uri)
        if previous is not None:
            registry.register(previous)


# --- Description builders ------------------------------------------------------------


def describe_archive(
    payload: bytes,
    *,
    repository: str = "urn:test:repository",
    version: str = "21.0.2",
    platform: str = "linux",
    architecture: str = "x64",
    vm: str = "hotspot",
    configuration: RuntimeConfiguration = RuntimeConfiguration.JDK,
    archive_uri: Optional[str] = None,
    tags: Iterable[str] = (),
) -> RuntimeDescription:
    """Build a description whose SHA-256 identity matches ``payload``."""

    digest = hashlib.sha256(payload).hexdigest()
    return RuntimeDescription(
        repository=repository,
        version=RuntimeVersion.parse(version),
        platform=platform,
        architecture=architecture,
        vm=vm,
        configuration=configuration,
        archive_uri=archive_uri or f"https://downloads.example.org/{digest[:12]}.tar.gz",
        archive_size=len(payload),
        archive_hash=RuntimeHash("SHA-256", digest),
        tags=frozenset(tags),
    )
