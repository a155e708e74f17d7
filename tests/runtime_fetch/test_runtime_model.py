# === NAVMAP v1 ===
# {
#   "module": "tests.runtime_fetch.test_runtime_model",
#   "purpose": "Value types: hashes, versions, ranges and descriptions",
#   "sections": [
#     {"id": "tests", "name": "Test Cases", "anchor": "TST", "kind": "tests"}
#   ]
# }
# === /NAVMAP ===

"""Value-type behaviour for runtime hashes, versions, ranges and descriptions."""

from __future__ import annotations

import pytest

from RuntimeDepot.RuntimeFetch.checksums import hashlib_name, normalize_algorithm
from RuntimeDepot.RuntimeFetch.runtime import (
    RuntimeConfiguration,
    RuntimeHash,
    RuntimeVersion,
    RuntimeVersionRange,
)
from RuntimeDepot.RuntimeFetch.testing import describe_archive


@pytest.mark.parametrize(
    ("spelling", "canonical", "hashlib"),
    [("sha256", "SHA-256", "sha256"), ("SHA-512", "SHA-512", "sha512"), ("Sha_1", "SHA-1", "sha1")],
)
def test_algorithm_spellings_normalise(spelling: str, canonical: str, hashlib: str) -> None:
    """Algorithm names map onto one canonical and one hashlib spelling."""

    assert normalize_algorithm(spelling) == canonical
    assert hashlib_name(spelling) == hashlib


def test_hash_value_is_lowercased_and_validated() -> None:
    """Hash values are normalised to lowercase hex and rejected otherwise."""

    digest = RuntimeHash("sha256", "ABCDEF01")
    assert digest.value == "abcdef01"
    assert str(digest) == "SHA-256:abcdef01"
    with pytest.raises(ValueError):
        RuntimeHash("SHA-256", "not-hex")
    with pytest.raises(ValueError):
        RuntimeHash("whirlpool", "ab")


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("11", RuntimeVersion(11)),
        ("11.0", RuntimeVersion(11, 0)),
        ("21.0.2", RuntimeVersion(21, 0, 2)),
        ("17.0.9+9", RuntimeVersion(17, 0, 9, 9)),
    ],
)
def test_version_parse(text: str, expected: RuntimeVersion) -> None:
    """Versions accept one to three numeric components and an optional build."""

    assert RuntimeVersion.parse(text) == expected


@pytest.mark.parametrize("text", ["", "abc", "11.0.0.0", "-1", "11+"])
def test_version_parse_rejects_garbage(text: str) -> None:
    """Malformed version strings raise ``ValueError``."""

    with pytest.raises(ValueError):
        RuntimeVersion.parse(text)


def test_version_ordering_and_external_form() -> None:
    """Ordering is numeric and a missing build sorts like build zero."""

    versions = [RuntimeVersion.parse(v) for v in ("11.0.10", "11.0.2", "8", "17.0.1+12")]
    assert [str(v) for v in sorted(versions)] == ["8.0.0", "11.0.2", "11.0.10", "17.0.1+12"]
    assert RuntimeVersion.parse("11.0.2") != RuntimeVersion.parse("11.0.2+0")
    assert not RuntimeVersion.parse("11.0.2") < RuntimeVersion.parse("11.0.2+0")


@pytest.mark.parametrize(
    ("notation", "version", "included"),
    [
        ("[11,12)", "11.0.0", True),
        ("[11,12)", "11.0.22", True),
        ("[11,12)", "12", False),
        ("(11,12]", "11", False),
        ("(11,12]", "12", True),
        ("17.0.2", "17.0.2", True),
        ("17.0.2", "17.0.3", False),
    ],
)
def test_version_range_inclusion(notation: str, version: str, included: bool) -> None:
    """Interval notation honours independently exclusive bounds."""

    assert RuntimeVersionRange.parse(notation).includes(RuntimeVersion.parse(version)) is included


def test_version_range_rejects_inverted_bounds() -> None:
    """A range whose lower bound exceeds its upper bound is invalid."""

    with pytest.raises(ValueError):
        RuntimeVersionRange.parse("[12,11]")
    assert str(RuntimeVersionRange.parse("(8,11]")) == "(8.0.0,11.0.0]"


def test_description_identity_is_archive_hash() -> None:
    """A description's id is its archive hash value."""

    description = describe_archive(b"payload", tags=["lts"])
    assert description.id == description.archive_hash.value
    assert description.tags == frozenset({"lts"})
    assert description.configuration is RuntimeConfiguration.JDK


def test_configuration_parse() -> None:
    """Configurations parse case-insensitively and reject unknown values."""

    assert RuntimeConfiguration.parse("JRE") is RuntimeConfiguration.JRE
    with pytest.raises(ValueError):
        RuntimeConfiguration.parse("server")
