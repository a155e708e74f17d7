# === NAVMAP v1 ===
# {
#   "module": "tests.runtime_fetch.test_properties_hypothesis",
#   "purpose": "Property-based checks for the properties codec and version model",
#   "sections": [
#     {"id": "strategies", "name": "Strategies", "anchor": "STR", "kind": "helpers"},
#     {"id": "tests", "name": "Test Cases", "anchor": "TST", "kind": "tests"}
#   ]
# }
# === /NAVMAP ===

"""Hypothesis checks for text escaping and version ordering."""

from __future__ import annotations

from hypothesis import given
from hypothesis import strategies as st

from RuntimeDepot.RuntimeFetch.formats.properties import dump_properties, load_properties
from RuntimeDepot.RuntimeFetch.runtime import RuntimeVersion, RuntimeVersionRange

# --- Strategies ---------------------------------------------------------------

_VISIBLE = st.characters(exclude_categories=("Cs", "Cc", "Zs", "Zl", "Zp"))
_SPECIAL = st.sampled_from(["=", ":", "#", "!", "\\", "\t", "\n", "\r"])

keys = st.text(st.one_of(_VISIBLE, _SPECIAL), max_size=20)
values = st.text(st.one_of(_VISIBLE, _SPECIAL, st.just(" ")), max_size=40)

versions = st.builds(
    RuntimeVersion,
    major=st.integers(0, 40),
    minor=st.integers(0, 5),
    patch=st.integers(0, 5),
    build=st.none() | st.integers(0, 50),
)


# --- Test Cases -----------------------------------------------------------------


@given(st.dictionaries(keys, values, max_size=8))
def test_properties_documents_preserve_text(mapping) -> None:
    """Separators, comment markers and control characters survive escaping."""

    assert load_properties(dump_properties(mapping)) == mapping


@given(versions)
def test_version_external_form_parses_back(version: RuntimeVersion) -> None:
    assert RuntimeVersion.parse(version.to_external_string()) == version


@given(versions, versions)
def test_version_ordering_is_consistent(first: RuntimeVersion, second: RuntimeVersion) -> None:
    """Exactly one of less, greater or equal-rank holds for any pair."""

    outcomes = [first < second, second < first, first._sort_key() == second._sort_key()]
    assert outcomes.count(True) == 1


@given(versions, versions, st.booleans(), st.booleans(), versions)
def test_range_notation_parses_back(a, b, lower_exclusive, upper_exclusive, candidate) -> None:
    """Interval notation is stable and inclusion follows the bounds."""

    lower, upper = sorted([a, b])
    interval = RuntimeVersionRange(lower, upper, lower_exclusive, upper_exclusive)
    parsed = RuntimeVersionRange.parse(str(interval))
    assert parsed == interval
    assert parsed.includes(candidate) == interval.includes(candidate)
    if not lower_exclusive and (lower < upper or not upper_exclusive):
        assert interval.includes(lower)
    if upper_exclusive:
        assert not interval.includes(upper)
