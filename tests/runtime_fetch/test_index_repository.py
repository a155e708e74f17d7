# === NAVMAP v1 ===
# {
#   "module": "tests.runtime_fetch.test_index_repository",
#   "purpose": "Index-backed repository updates, retries, caching and cancellation",
#   "sections": [
#     {"id": "tests", "name": "Test Cases", "anchor": "TST", "kind": "tests"}
#   ]
# }
# === /NAVMAP ===

"""Behaviour of :class:`IndexRepositoryProvider` against mocked upstreams.

HTTP traffic is served by ``httpx.MockTransport`` so the retry policy,
status handling and streaming are exercised without a network.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, List

import httpx
import pytest

from RuntimeDepot.RuntimeFetch.errors import (
    OperationCancelledError,
    RepositoryOpenError,
    RepositoryUpdateError,
)
from RuntimeDepot.RuntimeFetch.events import (
    RepositoryUpdateCompleted,
    RepositoryUpdateFailed,
    RepositoryUpdateProgress,
    RepositoryUpdateStarted,
)
from RuntimeDepot.RuntimeFetch.formats.xml import XML_CONTENT_TYPE, XMLCodec
from RuntimeDepot.RuntimeFetch.index_repository import INDEX_FILE, IndexRepositoryProvider
from RuntimeDepot.RuntimeFetch.repository import RepositoryContext
from RuntimeDepot.RuntimeFetch.retry import parse_retry_after
from RuntimeDepot.RuntimeFetch.runtime import RuntimeRepositoryDescription
from RuntimeDepot.RuntimeFetch.settings import HttpConfiguration
from RuntimeDepot.RuntimeFetch.testing import describe_archive

URI = "urn:test:index"
URL = "https://runtimes.example.org/index.xml"
RUNTIMES = [describe_archive(b"a", repository=URI), describe_archive(b"b", repository=URI, version="17.0.9")]


def _index_bytes(runtimes=RUNTIMES) -> bytes:
    return XMLCodec().serialize_repository(RuntimeRepositoryDescription.of(URI, runtimes))


def _open(
    tmp_path: Path,
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    url: str = URL,
    max_retries: int = 2,
):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    context = RepositoryContext(
        cache_directory=tmp_path / "cache",
        http_client_factory=lambda: client,
        http=HttpConfiguration(max_retries=max_retries, backoff_factor=0.0),
    )
    return IndexRepositoryProvider(URI, url).open_repository(context)


def _ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, content=_index_bytes(), headers={"Content-Type": XML_CONTENT_TYPE})


def test_update_replaces_runtimes_and_emits_lifecycle(tmp_path: Path, collect_events) -> None:
    """A successful update publishes started, progress and completed events."""

    repository = _open(tmp_path, _ok)
    seen = collect_events(repository.events())
    assert dict(repository.runtimes()) == {}

    repository.update(lambda: False)

    assert set(repository.runtimes()) == {item.id for item in RUNTIMES}
    assert isinstance(seen[0], RepositoryUpdateStarted)
    assert any(isinstance(event, RepositoryUpdateProgress) for event in seen)
    assert seen[-1] == RepositoryUpdateCompleted(repository=URI, count=2)
    assert (tmp_path / "cache" / INDEX_FILE).is_file()


def test_request_sends_accept_header(tmp_path: Path) -> None:
    """Index requests advertise the XML content type."""

    accepted: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        accepted.append(request.headers["Accept"])
        return _ok(request)

    _open(tmp_path, handler).update(lambda: False)
    assert accepted and accepted[0].startswith(XML_CONTENT_TYPE)


def test_transient_status_is_retried(tmp_path: Path) -> None:
    """A 503 followed by success completes after one retry."""

    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503, headers={"Retry-After": "0"})
        return _ok(request)

    repository = _open(tmp_path, handler)
    repository.update(lambda: False)
    assert len(calls) == 2
    assert len(repository.runtimes()) == 2


def test_connection_errors_are_retried(tmp_path: Path) -> None:
    """Transport failures are treated as transient."""

    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) < 3:
            raise httpx.ConnectError("refused", request=request)
        return _ok(request)

    _open(tmp_path, handler).update(lambda: False)
    assert len(calls) == 3


def test_persistent_failure_exhausts_retries_and_keeps_previous(tmp_path: Path, collect_events) -> None:
    """After the retry budget the update fails and the old snapshot stays."""

    responses = iter([_ok, *([lambda request: httpx.Response(502)] * 10)])
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return next(responses)(request)

    repository = _open(tmp_path, handler, max_retries=2)
    repository.update(lambda: False)
    seen = collect_events(repository.events())

    with pytest.raises(RepositoryUpdateError) as excinfo:
        repository.update(lambda: False)
    assert excinfo.value.repository == URI
    assert len(calls) == 1 + 3
    assert len(repository.runtimes()) == 2
    assert isinstance(seen[-1], RepositoryUpdateFailed)


def test_client_error_is_not_retried(tmp_path: Path) -> None:
    """A 404 fails immediately."""

    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(404)

    with pytest.raises(RepositoryUpdateError, match="404"):
        _open(tmp_path, handler).update(lambda: False)
    assert len(calls) == 1


def test_malformed_index_fails_update(tmp_path: Path) -> None:
    """An unparseable body is reported as a failed update."""

    repository = _open(
        tmp_path,
        lambda request: httpx.Response(200, content=b"<nope", headers={"Content-Type": XML_CONTENT_TYPE}),
    )
    with pytest.raises(RepositoryUpdateError):
        repository.update(lambda: False)
    assert dict(repository.runtimes()) == {}


def test_cancelled_update_returns_and_keeps_previous(tmp_path: Path, collect_events) -> None:
    """Cancellation stops the update without an exception and reports it as an event."""

    repository = _open(tmp_path, _ok)
    seen = collect_events(repository.events())
    repository.update(lambda: True)
    assert dict(repository.runtimes()) == {}
    failure = seen[-1]
    assert isinstance(failure, RepositoryUpdateFailed)
    assert isinstance(failure.cause, OperationCancelledError)
    assert not (tmp_path / "cache" / INDEX_FILE).exists()


def test_cached_index_is_the_baseline_after_reopen(tmp_path: Path) -> None:
    """A reopened repository starts from the last fetched index even when offline."""

    _open(tmp_path, _ok).update(lambda: False)

    def offline(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    reopened = _open(tmp_path, offline, max_retries=0)
    assert set(reopened.runtimes()) == {item.id for item in RUNTIMES}
    with pytest.raises(RepositoryUpdateError):
        reopened.update(lambda: False)
    assert len(reopened.runtimes()) == 2


def test_unreadable_cache_opens_empty(tmp_path: Path) -> None:
    """A damaged cached index is ignored rather than failing the open."""

    cache = tmp_path / "cache"
    cache.mkdir()
    (cache / INDEX_FILE).write_bytes(b"garbage")
    assert dict(_open(tmp_path, _ok).runtimes()) == {}


def test_cache_path_collision_fails_open(tmp_path: Path) -> None:
    """A file where the cache directory belongs makes opening fail."""

    (tmp_path / "cache").write_text("not a directory")
    with pytest.raises(RepositoryOpenError):
        _open(tmp_path, _ok)


def test_file_url_is_read_directly(tmp_path: Path, write_index) -> None:
    """``file://`` index locations bypass HTTP."""

    index = write_index(URI, RUNTIMES[:1])

    def unreachable(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not be called
        raise AssertionError("HTTP must not be used")

    repository = _open(tmp_path, unreachable, url=index.as_uri())
    repository.update(lambda: False)
    assert list(repository.runtimes()) == [RUNTIMES[0].id]


@pytest.mark.parametrize(("header", "expected"), [(None, None), ("5", 5.0), ("-3", 0.0), ("soon", None)])
def test_parse_retry_after(header, expected) -> None:
    """``Retry-After`` accepts seconds and clamps negatives."""

    assert parse_retry_after(header) == expected
