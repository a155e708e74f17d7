# === NAVMAP v1 ===
# {
#   "module": "RuntimeDepot.RuntimeFetch.net",
#   "purpose": "Provide the shared HTTPX client used for index fetches and archive downloads",
#   "sections": [
#     {"id": "constants", "name": "Constants & globals", "anchor": "CONST", "kind": "constants"},
#     {"id": "helpers", "name": "Client construction helpers", "anchor": "HELP", "kind": "helpers"},
#     {"id": "api", "name": "Public API", "anchor": "API", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Shared HTTPX client used for repository index fetches and archive downloads."""

from __future__ import annotations

import contextlib
import logging
import ssl
import threading
import time
from typing import Callable, MutableMapping, Optional

import certifi
import httpx

from .settings import HttpConfiguration

LOGGER = logging.getLogger("RuntimeDepot.RuntimeFetch.net")

# --- Constants & globals -------------------------------------------------------

_CLIENT_LOCK = threading.RLock()
_HTTP_CLIENT: Optional[httpx.Client] = None
_CLIENT_FACTORY: Optional[Callable[[], httpx.Client]] = None
_DEFAULT_CONFIG = HttpConfiguration()

# --- Client construction helpers ----------------------------------------------


def _build_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.load_verify_locations(certifi.where())
    return context


def _request_hook(request: httpx.Request) -> None:
    meta: MutableMapping[str, object] = request.extensions.setdefault("runtimedepot_meta", {})  # type: ignore[assignment]
    meta["start_time"] = time.perf_counter()


def _response_hook(response: httpx.Response) -> None:
    meta = response.request.extensions.get("runtimedepot_meta") or {}
    start = meta.get("start_time") if isinstance(meta, MutableMapping) else None
    LOGGER.debug(
        "http response",
        extra={
            "stage": "http",
            "url": str(response.request.url),
            "status": response.status_code,
            "elapsed_sec": (time.perf_counter() - start) if isinstance(start, float) else None,
        },
    )


def _timeout_for(config: HttpConfiguration) -> httpx.Timeout:
    return httpx.Timeout(
        connect=config.connect_timeout_sec,
        read=config.timeout_sec,
        write=config.timeout_sec,
        pool=config.connect_timeout_sec,
    )


def _limits_for(config: HttpConfiguration) -> httpx.Limits:
    return httpx.Limits(
        max_connections=config.max_connections,
        max_keepalive_connections=config.max_keepalive_connections,
    )


def _build_http_client(config: HttpConfiguration) -> httpx.Client:
    return httpx.Client(
        timeout=_timeout_for(config),
        limits=_limits_for(config),
        verify=_build_ssl_context(),
        trust_env=True,
        follow_redirects=True,
        headers={"User-Agent": config.user_agent},
        event_hooks={"request": [_request_hook], "response": [_response_hook]},
    )


def _close_client_unlocked() -> None:
    global _HTTP_CLIENT
    if _HTTP_CLIENT is not None:
        with contextlib.suppress(Exception):
            _HTTP_CLIENT.close()
    _HTTP_CLIENT = None


# --- Public API ----------------------------------------------------------------


def configure_http_client(
    client: Optional[httpx.Client] = None,
    *,
    factory: Optional[Callable[[], httpx.Client]] = None,
    default_config: Optional[HttpConfiguration] = None,
) -> None:
    """Override the shared HTTPX client or register a factory for tests."""

    if client is not None and factory is not None:
        raise ValueError("provide either a client or factory, not both")

    with _CLIENT_LOCK:
        global _HTTP_CLIENT, _CLIENT_FACTORY, _DEFAULT_CONFIG

        if default_config is not None:
            _DEFAULT_CONFIG = default_config

        if client is None:
            _close_client_unlocked()
        elif _HTTP_CLIENT is not client:
            _close_client_unlocked()
            _HTTP_CLIENT = client

        _CLIENT_FACTORY = factory


def reset_http_client() -> None:
    """Drop any installed client or factory (test helper)."""

    with _CLIENT_LOCK:
        global _CLIENT_FACTORY
        _CLIENT_FACTORY = None
        _close_client_unlocked()


def get_http_client(config: Optional[HttpConfiguration] = None) -> httpx.Client:
    """Return the shared HTTPX client, creating it if necessary."""

    global _HTTP_CLIENT
    with _CLIENT_LOCK:
        if _HTTP_CLIENT is not None:
            return _HTTP_CLIENT

        if _CLIENT_FACTORY is not None:
            candidate = _CLIENT_FACTORY()
            if not isinstance(candidate, httpx.Client):
                raise TypeError("http client factory must return an httpx.Client")
            LOGGER.info(
                "using custom httpx client",
                extra={"stage": "init", "factory": getattr(_CLIENT_FACTORY, "__qualname__", repr(_CLIENT_FACTORY))},
            )
            _HTTP_CLIENT = candidate
            return candidate

        _HTTP_CLIENT = _build_http_client(config or _DEFAULT_CONFIG)
        return _HTTP_CLIENT


__all__ = ["configure_http_client", "reset_http_client", "get_http_client"]
