# === NAVMAP v1 ===
# {
#   "module": "RuntimeDepot.RuntimeFetch.index_repository",
#   "purpose": "Generic provider backed by a published XML index document",
#   "sections": [
#     {"id": "provider", "name": "IndexRepositoryProvider", "anchor": "PRV", "kind": "api"},
#     {"id": "repository", "name": "IndexRepository", "anchor": "REP", "kind": "api"},
#     {"id": "transport", "name": "Index transport", "anchor": "TRN", "kind": "helpers"}
#   ]
# }
# === /NAVMAP ===

"""Provider backed by a published repository index document.

The index is fetched with the shared HTTPX client (or read from a
``file://`` URL), decoded with whichever registered repository codec matches
the response ``Content-Type`` and cached in the provider's cache directory.
The cached copy is the baseline the repository starts from when it is
opened, so a catalog stays searchable while the upstream is unreachable.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple
from urllib.parse import urlparse
from urllib.request import url2pathname

from .errors import DownloadFailure, FormatError, OperationCancelledError, RepositoryOpenError
from .formats import RepositoryCodec, get_codec, negotiate_codec
from .formats.xml import XML_CONTENT_TYPE
from .fs import atomic_write_bytes
from .repository import AbstractRepository, RepositoryContext, ShouldCancel
from .retry import RETRYABLE_STATUS, create_http_retry_policy, parse_retry_after
from .runtime import RuntimeDescription, RuntimeRepositoryDescription

LOGGER = logging.getLogger("RuntimeDepot.RuntimeFetch.index_repository")

INDEX_FILE = "index.xml"
_ACCEPT = f"{XML_CONTENT_TYPE}, application/xml;q=0.9, text/xml;q=0.8"

__all__ = ["IndexRepositoryProvider", "IndexRepository", "INDEX_FILE"]


# ============================================================================
# IndexRepositoryProvider (PRV)
# ============================================================================


class IndexRepositoryProvider:
    """Provider for one index URL.

    Examples:
        >>> provider = IndexRepositoryProvider("urn:example:runtimes", "https://example.org/index.xml")
        >>> provider.name
        'urn:example:runtimes'
    """

    def __init__(self, uri: str, url: str, name: Optional[str] = None) -> None:
        self._uri = uri
        self._url = url
        self._name = name or uri

    def __repr__(self) -> str:
        return f"IndexRepositoryProvider(uri={self._uri!r}, url={self._url!r})"

    @property
    def uri(self) -> str:
        return self._uri

    @property
    def name(self) -> str:
        return self._name

    @property
    def url(self) -> str:
        return self._url

    def open_repository(self, context: RepositoryContext) -> "IndexRepository":
        return IndexRepository.open(self, context)


# ============================================================================
# IndexRepository (REP)
# ============================================================================


def _xml_codec() -> RepositoryCodec:
    codec = get_codec(XML_CONTENT_TYPE)
    assert isinstance(codec, RepositoryCodec)
    return codec


class IndexRepository(AbstractRepository):
    """Runtimes listed by one index document."""

    def __init__(
        self,
        provider: IndexRepositoryProvider,
        context: RepositoryContext,
        runtimes: List[RuntimeDescription],
    ) -> None:
        super().__init__(provider, runtimes)
        self._index_provider = provider
        self._context = context

    @property
    def cache_file(self) -> Path:
        return self._context.cache_directory / INDEX_FILE

    @classmethod
    def open(cls, provider: IndexRepositoryProvider, context: RepositoryContext) -> "IndexRepository":
        """Prepare the cache directory and load the cached index as the baseline.

        Raises:
            RepositoryOpenError: If the cache directory cannot be created or read.
        """

        cache_directory = context.cache_directory
        try:
            cache_directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RepositoryOpenError(
                f"cannot prepare cache directory {cache_directory} for {provider.uri}: {exc}",
                details={"repository": provider.uri},
            ) from exc
        if not cache_directory.is_dir():
            raise RepositoryOpenError(
                f"cache path {cache_directory} for {provider.uri} is not a directory",
                details={"repository": provider.uri},
            )

        runtimes: List[RuntimeDescription] = []
        cache_file = cache_directory / INDEX_FILE
        if cache_file.exists():
            try:
                data = cache_file.read_bytes()
            except OSError as exc:
                raise RepositoryOpenError(
                    f"cannot read cached index {cache_file}: {exc}",
                    details={"repository": provider.uri},
                ) from exc
            try:
                runtimes = list(_xml_codec().parse_repository(data).runtimes.values())
            except FormatError as exc:
                LOGGER.warning(
                    "ignoring unreadable cached index",
                    extra={"stage": "open", "repository": provider.uri, "error": str(exc)},
                )
        LOGGER.debug(
            "index repository opened",
            extra={"stage": "open", "repository": provider.uri, "runtimes": len(runtimes)},
        )
        return cls(provider, context, runtimes)

    def _fetch(self, should_cancel: ShouldCancel) -> List[RuntimeDescription]:
        url = self._index_provider.url
        if url.startswith("file://"):
            data, content_type = Path(url2pathname(urlparse(url).path)).read_bytes(), XML_CONTENT_TYPE
            self._progress(len(data), len(data))
        else:
            data, content_type = self._download_index(url, should_cancel)
        if should_cancel():
            raise OperationCancelledError(f"update of {self.provider.uri} was cancelled")

        offered = [part for part in content_type.split(",") if part.strip()] + [XML_CONTENT_TYPE]
        codec = negotiate_codec(offered, require_repository=True)
        document = codec.parse_repository(data)  # type: ignore[attr-defined]
        runtimes = list(document.runtimes.values())

        snapshot = RuntimeRepositoryDescription.of(
            self.provider.uri, runtimes, updated=document.updated or datetime.now(timezone.utc)
        )
        atomic_write_bytes(self.cache_file, _xml_codec().serialize_repository(snapshot))
        return runtimes

    # --- Index transport (TRN) ---------------------------------------------------

    def _download_index(self, url: str, should_cancel: ShouldCancel) -> Tuple[bytes, str]:
        http = self._context.http
        client = self._context.http_client()
        policy = create_http_retry_policy(
            http.max_retries + 1,
            backoff_factor=http.backoff_factor,
            should_cancel=should_cancel,
        )
        for attempt in policy:
            if should_cancel():
                raise OperationCancelledError(f"update of {self.provider.uri} was cancelled")
            with attempt:
                return self._request_index(client, url, should_cancel)
        raise AssertionError("retry policy finished without an outcome")  # pragma: no cover

    def _request_index(self, client, url: str, should_cancel: ShouldCancel) -> Tuple[bytes, str]:
        chunk_size = self._context.http.chunk_size
        with client.stream("GET", url, headers={"Accept": _ACCEPT}) as response:
            if response.status_code >= 400:
                raise DownloadFailure(
                    f"index request to {url} returned HTTP {response.status_code}",
                    status_code=response.status_code,
                    retryable=response.status_code in RETRYABLE_STATUS,
                    retry_after=parse_retry_after(response.headers.get("Retry-After")),
                )
            length = response.headers.get("Content-Length")
            expected = int(length) if length and length.isdigit() else None
            buffer = bytearray()
            for chunk in response.iter_bytes(chunk_size):
                if should_cancel():
                    raise OperationCancelledError(f"update of {self.provider.uri} was cancelled")
                buffer.extend(chunk)
                self._progress(len(buffer), expected)
            return bytes(buffer), response.headers.get("Content-Type", XML_CONTENT_TYPE)
