# === NAVMAP v1 ===
# {
#   "module": "tests.runtime_fetch.test_database",
#   "purpose": "Directory-backed description database persistence and damage tolerance",
#   "sections": [
#     {"id": "tests", "name": "Test Cases", "anchor": "TST", "kind": "tests"}
#   ]
# }
# === /NAVMAP ===

"""Persistence behaviour of :class:`RuntimeDescriptionDatabase`.

Damaged records are isolated: a record that cannot be parsed is skipped and
left on disk while every readable record still loads.
"""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from RuntimeDepot.RuntimeFetch.database import RECORD_SUFFIX, RuntimeDescriptionDatabase
from RuntimeDepot.RuntimeFetch.errors import NotFoundError
from RuntimeDepot.RuntimeFetch.testing import describe_archive


def test_records_persist_across_reopen(tmp_path: Path) -> None:
    """Added records are visible after reopening the directory."""

    first = describe_archive(b"first")
    second = describe_archive(b"second", platform="windows")
    database = RuntimeDescriptionDatabase.open(tmp_path / "db")
    database.add(first)
    database.add(second)
    assert database.updated() is not None

    reopened = RuntimeDescriptionDatabase.open(tmp_path / "db")
    assert dict(reopened.descriptions()) == {first.id: first, second.id: second}
    assert reopened.record_path(first.id).name == f"{first.id}{RECORD_SUFFIX}"


def test_delete_reports_whether_a_record_existed(tmp_path: Path) -> None:
    """Deleting removes the file and reports prior existence."""

    description = describe_archive(b"gone")
    database = RuntimeDescriptionDatabase.open(tmp_path)
    database.add(description)
    assert database.delete(description.id) is True
    assert database.delete(description.id) is False
    assert description.id not in database
    assert not database.record_path(description.id).exists()


@pytest.mark.parametrize("runtime_id", ["", "..", "../outside", "ABC", "abc\n"])
def test_malformed_identities_never_become_paths(tmp_path: Path, runtime_id: str) -> None:
    """Identities that are not lowercase hex digests name no record file."""

    (tmp_path / "outside.properties").write_text("kept")
    database = RuntimeDescriptionDatabase.open(tmp_path / "db")
    database.add(describe_archive(b"kept"))
    with pytest.raises(NotFoundError):
        database.record_path(runtime_id)
    assert database.delete(runtime_id) is False
    assert len(database) == 1
    assert (tmp_path / "outside.properties").read_text() == "kept"


def test_snapshots_are_not_mutated_by_later_writes(tmp_path: Path) -> None:
    """A snapshot taken before a write keeps its contents."""

    database = RuntimeDescriptionDatabase.open(tmp_path)
    before = database.descriptions()
    database.add(describe_archive(b"later"))
    assert len(before) == 0
    assert len(database.descriptions()) == 1


def test_all_corrupt_records_yield_empty_database(tmp_path: Path) -> None:
    """A directory full of unparseable records opens as an empty database."""

    for index in range(3):
        (tmp_path / f"{index:064x}{RECORD_SUFFIX}").write_bytes(b"\x00\xffgarbage")
    database = RuntimeDescriptionDatabase.open(tmp_path)
    assert len(database) == 0


def test_corrupt_record_is_skipped_and_left_in_place(tmp_path: Path, caplog) -> None:
    """One damaged record does not hide the healthy ones and is not deleted."""

    healthy = describe_archive(b"healthy")
    damaged = describe_archive(b"damaged")
    database = RuntimeDescriptionDatabase.open(tmp_path)
    database.add(healthy)
    database.add(damaged)
    damaged_path = database.record_path(damaged.id)
    damaged_path.write_bytes(b"runtimeVersion=???\n")

    with caplog.at_level(logging.WARNING, logger="RuntimeDepot.RuntimeFetch.database"):
        reopened = RuntimeDescriptionDatabase.open(tmp_path)
    assert list(reopened.descriptions()) == [healthy.id]
    assert damaged_path.exists()
    assert any("skipping unreadable runtime record" in record.message for record in caplog.records)


def test_record_under_wrong_name_is_skipped(tmp_path: Path) -> None:
    """A record whose content disagrees with its file name is ignored."""

    description = describe_archive(b"misfiled")
    database = RuntimeDescriptionDatabase.open(tmp_path)
    database.add(description)
    database.record_path(description.id).rename(tmp_path / f"{'0' * 64}{RECORD_SUFFIX}")
    assert len(RuntimeDescriptionDatabase.open(tmp_path)) == 0


def test_interrupted_writes_are_cleaned_on_open(tmp_path: Path) -> None:
    """Temporary files left by an interrupted write are removed."""

    leftover = tmp_path / f"{'a' * 64}{RECORD_SUFFIX}.1234abcd.tmp"
    leftover.write_bytes(b"partial")
    RuntimeDescriptionDatabase.open(tmp_path)
    assert not leftover.exists()
