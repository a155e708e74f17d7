"""Shared fixtures for the runtime_fetch test suite."""

from __future__ import annotations

import io
import logging
import tarfile
import zipfile
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional

import pytest

from RuntimeDepot.RuntimeFetch.formats.xml import XMLCodec
from RuntimeDepot.RuntimeFetch.logging_config import LOGGER_NAME
from RuntimeDepot.RuntimeFetch.net import reset_http_client
from RuntimeDepot.RuntimeFetch.operations import OperationRunner
from RuntimeDepot.RuntimeFetch.runtime import RuntimeDescription, RuntimeRepositoryDescription
from RuntimeDepot.RuntimeFetch.settings import invalidate_default_settings_cache

ArchiveBuilder = Callable[..., bytes]


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Point the default base directory at a temporary home and reset process-wide state."""

    for name in ("RUNTIMEDEPOT_WORKERS", "RUNTIMEDEPOT_LOG_LEVEL", "RUNTIMEDEPOT_TIMEOUT_SEC",
                 "RUNTIMEDEPOT_MAX_RETRIES", "RUNTIMEDEPOT_CONFIG"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("RUNTIMEDEPOT_HOME", str(tmp_path / "home"))
    invalidate_default_settings_cache()
    reset_http_client()
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, "_runtimedepot_managed", False):
            logger.removeHandler(handler)
            handler.close()
    invalidate_default_settings_cache()
    reset_http_client()


@pytest.fixture
def runner():
    """Worker pool shared by the components under test."""

    pool = OperationRunner(workers=4)
    yield pool
    pool.close()


@pytest.fixture
def make_archive() -> ArchiveBuilder:
    """Return a builder producing tar.gz or zip bytes from a name->content mapping.

    ``symlinks`` maps member names to link targets; ``directories`` lists
    explicit directory entries.
    """

    def build(
        files: Mapping[str, bytes],
        *,
        kind: str = "tar",
        symlinks: Optional[Mapping[str, str]] = None,
        directories: Iterable[str] = (),
        mode: int = 0o644,
    ) -> bytes:
        buffer = io.BytesIO()
        if kind == "tar":
            with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
                for name in directories:
                    info = tarfile.TarInfo(name)
                    info.type = tarfile.DIRTYPE
                    info.mode = 0o755
                    archive.addfile(info)
                for name, data in files.items():
                    info = tarfile.TarInfo(name)
                    info.size = len(data)
                    info.mode = mode
                    archive.addfile(info, io.BytesIO(data))
                for name, target in (symlinks or {}).items():
                    info = tarfile.TarInfo(name)
                    info.type = tarfile.SYMTYPE
                    info.linkname = target
                    archive.addfile(info)
        elif kind == "zip":
            with zipfile.ZipFile(buffer, "w") as archive:
                for name in directories:
                    archive.writestr(name.rstrip("/") + "/", b"")
                for name, data in files.items():
                    info = zipfile.ZipInfo(name)
                    info.external_attr = (0o100000 | mode) << 16
                    archive.writestr(info, data)
                for name, target in (symlinks or {}).items():
                    info = zipfile.ZipInfo(name)
                    info.external_attr = (0o120777) << 16
                    archive.writestr(info, target)
        else:  # pragma: no cover - test misuse
            raise ValueError(kind)
        return buffer.getvalue()

    return build


@pytest.fixture
def jdk_archive(make_archive: ArchiveBuilder) -> bytes:
    """A small tar.gz shaped like a runtime distribution."""

    return make_archive(
        {
            "jdk-21.0.2/bin/java": b"#!/bin/sh\necho java\n",
            "jdk-21.0.2/release": b'JAVA_VERSION="21.0.2"\n',
        },
        directories=["jdk-21.0.2", "jdk-21.0.2/bin"],
    )


@pytest.fixture
def write_index(tmp_path: Path) -> Callable[..., Path]:
    """Write an XML repository index for ``descriptions`` and return its path."""

    def write(
        repository: str,
        descriptions: Iterable[RuntimeDescription],
        *,
        name: str = "index.xml",
    ) -> Path:
        path = tmp_path / "upstream" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        document = RuntimeRepositoryDescription.of(repository, descriptions)
        path.write_bytes(XMLCodec().serialize_repository(document))
        return path

    return write


@pytest.fixture
def publish_archive(tmp_path: Path) -> Callable[[bytes, str], str]:
    """Store archive bytes under a temporary upstream directory and return a ``file://`` URI."""

    def publish(payload: bytes, name: str = "runtime.tar.gz") -> str:
        path = tmp_path / "upstream" / "archives" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(payload)
        return path.as_uri()

    return publish


@pytest.fixture
def collect_events() -> Callable[..., list]:
    """Return a helper subscribing a fresh list to an event stream."""

    def collect(stream) -> list:
        seen: list = []
        stream.subscribe(seen.append)
        return seen

    return collect
