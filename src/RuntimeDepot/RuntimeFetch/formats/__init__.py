"""Description codec registry keyed by content type.

The description database and repository implementations never parse a wire
format themselves; they ask this registry for a codec by content type.  The
properties and XML codecs are built in, and third-party codecs are picked up
from the ``runtimedepot.formats`` entry-point group.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from importlib import metadata
from typing import Dict, Iterable, List, MutableMapping, Optional, Protocol, Union, runtime_checkable

from ..errors import FormatError, PluginError
from ..runtime import RuntimeDescription, RuntimeRepositoryDescription

__all__ = [
    "DescriptionCodec",
    "RepositoryCodec",
    "FORMAT_ENTRY_POINT_GROUP",
    "register_codec",
    "unregister_codec",
    "get_codec",
    "negotiate_codec",
    "list_codecs",
    "get_codec_meta",
    "load_codec_plugins",
]

FORMAT_ENTRY_POINT_GROUP = "runtimedepot.formats"

LOGGER = logging.getLogger("RuntimeDepot.RuntimeFetch.formats")


@runtime_checkable
class DescriptionCodec(Protocol):
    """Parses and serialises single runtime descriptions."""

    content_type: str

    def parse(self, data: bytes) -> RuntimeDescription:  # pragma: no cover - protocol
        ...

    def serialize(self, description: RuntimeDescription) -> bytes:  # pragma: no cover - protocol
        ...


@runtime_checkable
class RepositoryCodec(DescriptionCodec, Protocol):
    """Codec that additionally handles whole repository index documents."""

    def parse_repository(self, data: bytes) -> RuntimeRepositoryDescription:  # pragma: no cover
        ...

    def serialize_repository(self, repository: RuntimeRepositoryDescription) -> bytes:  # pragma: no cover
        ...


_CODECS_LOCK = threading.Lock()
_CODECS: MutableMapping[str, DescriptionCodec] = OrderedDict()
_CODEC_META: Dict[str, Dict[str, str]] = {}
_BUILTINS_LOADED = False


def _normalize_content_type(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


def _describe_codec(codec: object) -> str:
    return f"{type(codec).__module__}.{type(codec).__qualname__}"


def _ensure_builtins_locked() -> None:
    global _BUILTINS_LOADED
    if _BUILTINS_LOADED:
        return
    from .properties import PropertiesCodec
    from .xml import XMLCodec

    for codec in (PropertiesCodec(), XMLCodec()):
        key = _normalize_content_type(codec.content_type)
        _CODECS.setdefault(key, codec)
        _CODEC_META.setdefault(key, {"qualified": _describe_codec(codec), "version": "builtin"})
    _BUILTINS_LOADED = True


def register_codec(codec: DescriptionCodec, *, overwrite: bool = False) -> None:
    """Register ``codec`` under its ``content_type``."""

    if not isinstance(codec, DescriptionCodec):
        raise PluginError(f"{codec!r} does not implement the description codec interface")
    key = _normalize_content_type(codec.content_type)
    with _CODECS_LOCK:
        _ensure_builtins_locked()
        if key in _CODECS and not overwrite:
            raise PluginError(f"a codec for {key!r} is already registered")
        _CODECS[key] = codec
        _CODEC_META[key] = {"qualified": _describe_codec(codec), "version": "local"}
    LOGGER.debug("codec registered", extra={"stage": "init", "content_type": key})


def unregister_codec(content_type: str) -> DescriptionCodec:
    key = _normalize_content_type(content_type)
    with _CODECS_LOCK:
        _ensure_builtins_locked()
        _CODEC_META.pop(key, None)
        return _CODECS.pop(key)


def get_codec(content_type: str) -> DescriptionCodec:
    """Return the codec registered for ``content_type``.

    Raises:
        FormatError: If no codec handles the content type.
    """

    key = _normalize_content_type(content_type)
    with _CODECS_LOCK:
        _ensure_builtins_locked()
        codec = _CODECS.get(key)
    if codec is None:
        raise FormatError(f"no codec registered for content type {key!r}")
    return codec


def negotiate_codec(
    offered: Union[str, Iterable[str]],
    *,
    require_repository: bool = False,
) -> DescriptionCodec:
    """Pick the first registered codec among ``offered`` content types.

    ``offered`` is either an HTTP ``Content-Type``/``Accept``-style string
    (comma separated, parameters ignored) or an iterable of content types.
    """

    if isinstance(offered, str):
        candidates = [part for part in offered.split(",") if part.strip()]
    else:
        candidates = list(offered)
    with _CODECS_LOCK:
        _ensure_builtins_locked()
        for candidate in candidates:
            codec = _CODECS.get(_normalize_content_type(candidate))
            if codec is None:
                continue
            if require_repository and not isinstance(codec, RepositoryCodec):
                continue
            return codec
    raise FormatError(f"no registered codec accepts any of {candidates!r}")


def list_codecs() -> List[str]:
    with _CODECS_LOCK:
        _ensure_builtins_locked()
        return list(_CODECS)


def get_codec_meta() -> Dict[str, Dict[str, str]]:
    with _CODECS_LOCK:
        _ensure_builtins_locked()
        return {key: dict(value) for key, value in _CODEC_META.items()}


def load_codec_plugins(*, logger: Optional[logging.Logger] = None) -> List[str]:
    """Register codecs advertised in the ``runtimedepot.formats`` entry-point group."""

    log = logger or LOGGER
    loaded: List[str] = []
    for entry in metadata.entry_points().select(group=FORMAT_ENTRY_POINT_GROUP):
        try:
            candidate = entry.load()
            codec = candidate() if isinstance(candidate, type) else candidate
            register_codec(codec, overwrite=True)
        except Exception as exc:  # pragma: no cover - plugin failures are unpredictable
            log.warning(
                "codec plugin failed",
                extra={"stage": "init", "codec": entry.name, "error": str(exc)},
            )
            continue
        key = _normalize_content_type(codec.content_type)
        with _CODECS_LOCK:
            _CODEC_META[key]["version"] = getattr(getattr(entry, "dist", None), "version", None) or "unknown"
        loaded.append(key)
        log.info("codec plugin registered", extra={"stage": "init", "content_type": key})
    return loaded
