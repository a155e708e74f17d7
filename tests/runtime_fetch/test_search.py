# === NAVMAP v1 ===
# {
#   "module": "tests.runtime_fetch.test_search",
#   "purpose": "Exact and inexact search criteria matching",
#   "sections": [
#     {"id": "tests", "name": "Test Cases", "anchor": "TST", "kind": "tests"}
#   ]
# }
# === /NAVMAP ===

"""Search criteria semantics shared by the catalog and the inventory."""

from __future__ import annotations

import pytest

from RuntimeDepot.RuntimeFetch.runtime import RuntimeConfiguration, RuntimeVersionRange
from RuntimeDepot.RuntimeFetch.search import RuntimeSearchCriteria
from RuntimeDepot.RuntimeFetch.testing import describe_archive

DESCRIPTION = describe_archive(
    b"temurin",
    repository="urn:vendor:temurin",
    platform="linux",
    architecture="aarch64",
    tags=["lts", "ga"],
)


def test_empty_criteria_match_everything() -> None:
    """Criteria with every field unset match any description."""

    criteria = RuntimeSearchCriteria()
    assert criteria.matches(DESCRIPTION)
    assert criteria.matches_exact(DESCRIPTION)


@pytest.mark.parametrize(
    "criteria",
    [
        RuntimeSearchCriteria(platform="LIN"),
        RuntimeSearchCriteria(repository="temurin"),
        RuntimeSearchCriteria(architecture="arch64"),
        RuntimeSearchCriteria(id=DESCRIPTION.id[:10]),
    ],
)
def test_inexact_matching_uses_case_insensitive_containment(criteria: RuntimeSearchCriteria) -> None:
    """Textual fields match on substrings in inexact mode but not in exact mode."""

    assert criteria.matches(DESCRIPTION)
    assert not criteria.matches_exact(DESCRIPTION)


def test_exact_matching_requires_equality() -> None:
    """Exact mode compares textual fields verbatim."""

    criteria = RuntimeSearchCriteria(platform="linux", architecture="aarch64", id=DESCRIPTION.id)
    assert criteria.matches_exact(DESCRIPTION)


def test_structured_fields_match_identically_in_both_modes() -> None:
    """Version ranges, configuration and tags behave the same in both modes."""

    matching = RuntimeSearchCriteria(
        version_range=RuntimeVersionRange.parse("[21,22)"),
        configuration="jdk",
        required_tags=["lts"],
    )
    assert matching.configuration is RuntimeConfiguration.JDK
    assert matching.matches(DESCRIPTION) and matching.matches_exact(DESCRIPTION)

    for criteria in (
        RuntimeSearchCriteria(version_range=RuntimeVersionRange.parse("[17,18)")),
        RuntimeSearchCriteria(configuration=RuntimeConfiguration.JRE),
        RuntimeSearchCriteria(required_tags=frozenset({"lts", "ea"})),
        RuntimeSearchCriteria(archive_size=DESCRIPTION.archive_size + 1),
    ):
        assert not criteria.matches(DESCRIPTION)
        assert not criteria.matches_exact(DESCRIPTION)
