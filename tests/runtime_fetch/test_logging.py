# === NAVMAP v1 ===
# {
#   "module": "tests.runtime_fetch.test_logging",
#   "purpose": "Console and JSON-lines logging setup",
#   "sections": [
#     {"id": "tests", "name": "Test Cases", "anchor": "TST", "kind": "tests"}
#   ]
# }
# === /NAVMAP ===

"""Structured logging configured by :func:`setup_logging`."""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from pathlib import Path

from RuntimeDepot.RuntimeFetch.logging_config import LOGGER_NAME, JSONFormatter, setup_logging
from RuntimeDepot.RuntimeFetch.settings import LoggingConfiguration


def _flush(logger: logging.Logger) -> None:
    for handler in logger.handlers:
        handler.flush()


def test_json_file_receives_structured_fields(tmp_path: Path) -> None:
    """Records written through ``extra=`` keep their structured fields."""

    logger = setup_logging(LoggingConfiguration(level="DEBUG"), tmp_path / "logs")
    logging.getLogger(f"{LOGGER_NAME}.inventory").info(
        "runtime added", extra={"stage": "inventory", "runtime_id": "abc", "records": 3}
    )
    _flush(logger)

    (log_file,) = list((tmp_path / "logs").glob("*.jsonl"))
    entry = json.loads(log_file.read_text(encoding="utf-8").strip().splitlines()[-1])
    assert entry["message"] == "runtime added"
    assert entry["stage"] == "inventory"
    assert entry["runtime_id"] == "abc"
    assert entry["records"] == 3
    assert entry["level"] == "INFO"


def test_setup_replaces_previous_handlers(tmp_path: Path) -> None:
    """Calling setup twice does not stack handlers."""

    setup_logging(LoggingConfiguration(), tmp_path / "logs")
    logger = setup_logging(LoggingConfiguration(level="WARNING"), tmp_path / "logs")
    managed = [handler for handler in logger.handlers if getattr(handler, "_runtimedepot_managed", False)]
    assert len(managed) == 2
    assert logger.level == logging.WARNING


def test_old_logs_are_compressed_then_removed(tmp_path: Path) -> None:
    """Expired logs are gzipped and very old archives deleted."""

    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    stale = log_dir / "runtimedepot-20000101.jsonl"
    stale.write_text("{}\n")
    ancient = log_dir / "runtimedepot-19990101.jsonl.gz"
    ancient.write_bytes(b"")
    old = time.time() - 90 * 86400
    os.utime(stale, (old, old))
    os.utime(ancient, (old, old))

    setup_logging(LoggingConfiguration(retention_days=30), log_dir)

    assert not stale.exists()
    assert (log_dir / "runtimedepot-20000101.jsonl.gz").exists()
    assert not ancient.exists()


def test_formatter_includes_exception_text() -> None:
    """Exceptions are serialised into ``exc_info``."""

    try:
        raise ValueError("broken")
    except ValueError:
        record = logging.getLogger("x").makeRecord(
            "x", logging.ERROR, __file__, 1, "failed", None, exc_info=sys.exc_info()
        )
    payload = json.loads(JSONFormatter().format(record))
    assert "ValueError: broken" in payload["exc_info"]
