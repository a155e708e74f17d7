# === NAVMAP v1 ===
# {
#   "module": "tests.runtime_fetch.test_formats",
#   "purpose": "Properties and XML codecs plus the codec registry",
#   "sections": [
#     {"id": "tests", "name": "Test Cases", "anchor": "TST", "kind": "tests"}
#   ]
# }
# === /NAVMAP ===

"""Codec behaviour for description records and repository index documents."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from RuntimeDepot.RuntimeFetch.errors import FormatError, PluginError
from RuntimeDepot.RuntimeFetch.formats import (
    get_codec,
    list_codecs,
    negotiate_codec,
    register_codec,
    unregister_codec,
)
from RuntimeDepot.RuntimeFetch.formats.properties import (
    PROPERTIES_CONTENT_TYPE,
    PropertiesCodec,
    dump_properties,
    load_properties,
)
from RuntimeDepot.RuntimeFetch.formats.xml import XML_CONTENT_TYPE, XML_NAMESPACE, XMLCodec
from RuntimeDepot.RuntimeFetch.runtime import RuntimeBuild, RuntimeRepositoryDescription
from RuntimeDepot.RuntimeFetch.testing import describe_archive


def _described_with_build():
    base = describe_archive(b"with build", tags=["lts", "musl"])
    return type(base)(
        repository=base.repository,
        version=base.version,
        platform=base.platform,
        architecture=base.architecture,
        vm=base.vm,
        configuration=base.configuration,
        archive_uri=base.archive_uri,
        archive_size=base.archive_size,
        archive_hash=base.archive_hash,
        tags=base.tags,
        build=RuntimeBuild("13", datetime(2024, 1, 16, 12, 0, tzinfo=timezone.utc)),
    )


def test_properties_escape_special_characters() -> None:
    """Separators, comments and newlines inside values survive a write/read cycle."""

    values = {"key=with:colon": "line\nbreak # and = sign", " lead": "  spaced"}
    assert load_properties(dump_properties(values)) == values


def test_properties_skip_comments_and_blank_lines() -> None:
    """Comment and blank lines are ignored and ``:`` works as a separator."""

    data = b"# comment\n! other\n\nalpha: one\nbeta=two\n"
    assert load_properties(data) == {"alpha": "one", "beta": "two"}


def test_properties_codec_preserves_every_field() -> None:
    """A record written by the properties codec parses back to an equal description."""

    description = _described_with_build()
    codec = PropertiesCodec()
    assert codec.parse(codec.serialize(description)) == description


def test_properties_codec_reports_every_problem() -> None:
    """Parsing accumulates all missing and invalid fields into one error."""

    data = dump_properties(
        {
            "runtimedepot.formatVersion": "1",
            "runtimeVersion": "not a version",
            "runtimeArchiveSize": "-",
        }
    )
    with pytest.raises(FormatError) as excinfo:
        PropertiesCodec().parse(data)
    errors = excinfo.value.errors
    assert any("runtimeVersion" in error for error in errors)
    assert any("runtimeArchiveSize" in error for error in errors)
    assert any("runtimeRepository" in error for error in errors)
    assert len(errors) >= 5


def test_properties_codec_rejects_unknown_format_version() -> None:
    """Records from a future format version are refused."""

    codec = PropertiesCodec()
    data = codec.serialize(describe_archive(b"v")).replace(
        b"runtimedepot.formatVersion=1", b"runtimedepot.formatVersion=99"
    )
    with pytest.raises(FormatError, match="unsupported format version"):
        codec.parse(data)


def test_xml_codec_single_runtime() -> None:
    """The XML codec handles standalone runtime documents."""

    description = _described_with_build()
    codec = XMLCodec()
    assert codec.parse(codec.serialize(description)) == description


def test_xml_repository_document_inherits_repository_id() -> None:
    """Runtimes in an index default to the document's repository id."""

    first = describe_archive(b"one", repository="urn:r")
    second = describe_archive(b"two", repository="urn:elsewhere")
    document = RuntimeRepositoryDescription.of(
        "urn:r", [first, second], updated=datetime(2024, 2, 1, tzinfo=timezone.utc)
    )
    codec = XMLCodec()
    data = codec.serialize_repository(document)
    assert data.count(b'repository="urn:r"') == 0
    assert b'repository="urn:elsewhere"' in data

    parsed = codec.parse_repository(data)
    assert parsed.id == "urn:r"
    assert parsed.updated == document.updated
    assert dict(parsed.runtimes) == {first.id: first, second.id: second}


def test_xml_repository_document_reports_all_invalid_runtimes() -> None:
    """Every broken runtime element is reported, not only the first."""

    data = (
        f'<c:runtime-repository xmlns:c="{XML_NAMESPACE}" id="urn:r"><c:runtimes>'
        '<c:runtime archive="a" version="x"/>'
        '<c:runtime archive="b" version="21"/>'
        "</c:runtimes></c:runtime-repository>"
    ).encode("utf-8")
    with pytest.raises(FormatError) as excinfo:
        XMLCodec().parse_repository(data)
    assert any(error.startswith("a:") for error in excinfo.value.errors)
    assert any(error.startswith("b:") for error in excinfo.value.errors)


def test_xml_rejects_malformed_documents() -> None:
    """Unparseable XML becomes a ``FormatError``."""

    with pytest.raises(FormatError, match="malformed"):
        XMLCodec().parse_repository(b"<unterminated")


def test_registry_lookup_and_negotiation() -> None:
    """Built-in codecs are registered and negotiation skips unknown types."""

    assert set(list_codecs()) >= {PROPERTIES_CONTENT_TYPE, XML_CONTENT_TYPE}
    assert isinstance(get_codec(f"{XML_CONTENT_TYPE}; charset=utf-8"), XMLCodec)
    chosen = negotiate_codec(f"text/html, {PROPERTIES_CONTENT_TYPE}, {XML_CONTENT_TYPE}", require_repository=True)
    assert isinstance(chosen, XMLCodec)
    with pytest.raises(FormatError):
        negotiate_codec(["text/html"])
    with pytest.raises(FormatError):
        get_codec("application/json")


def test_register_codec_refuses_duplicates_and_non_codecs() -> None:
    """Registration validates the interface and content-type uniqueness."""

    class JsonCodec:
        content_type = "application/x-test-json"

        def parse(self, data):
            raise FormatError("unsupported")

        def serialize(self, description):
            return b"{}"

    register_codec(JsonCodec())
    try:
        with pytest.raises(PluginError):
            register_codec(JsonCodec())
        assert isinstance(get_codec("application/x-test-json"), JsonCodec)
    finally:
        unregister_codec("application/x-test-json")
    with pytest.raises(PluginError):
        register_codec(object())  # type: ignore[arg-type]
