"""
Structured Logging Utilities

Logging setup for the runtime client: a console handler for humans, and a
size-rotated JSON-lines file whose records carry the ``stage`` and
``runtime_id`` fields that modules attach through ``extra=``.  Log files past
the retention window are gzipped, and archives older than twice the window
are removed.
"""

from __future__ import annotations

import gzip
import json
import logging
import shutil
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from .settings import LoggingConfiguration

LOGGER_NAME = "RuntimeDepot.RuntimeFetch"
LOG_FILE_PREFIX = "runtimedepot"

_MANAGED_FLAG = "_runtimedepot_managed"
_RESERVED_FIELDS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}
_SECONDS_PER_DAY = 86400


class JSONFormatter(logging.Formatter):
    """Render each record as a single JSON object.

    Fields passed through ``extra=`` are copied verbatim; values that are not
    JSON-native are stringified.

    Examples:
        >>> formatter = JSONFormatter()
        >>> isinstance(formatter.format(logging.makeLogRecord({'msg': 'test'})), str)
        True
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S") + f".{int(record.msecs):03d}",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "stage": getattr(record, "stage", None),
            "runtime_id": getattr(record, "runtime_id", None),
        }
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RESERVED_FIELDS and key not in payload
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


JSONFormatter.converter = time.gmtime


def _age_in_days(path: Path, now: float) -> float:
    return (now - path.stat().st_mtime) / _SECONDS_PER_DAY


def _gzip_in_place(path: Path) -> None:
    with path.open("rb") as source, gzip.open(f"{path}.gz", "wb") as target:
        shutil.copyfileobj(source, target)
    path.unlink(missing_ok=True)


def _cleanup_logs(log_dir: Path, retention_days: int) -> None:
    now = time.time()
    for archived in log_dir.glob("*.jsonl.gz"):
        if _age_in_days(archived, now) > 2 * retention_days:
            archived.unlink(missing_ok=True)
    for current in log_dir.glob("*.jsonl"):
        if _age_in_days(current, now) > retention_days:
            _gzip_in_place(current)


def _managed(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _MANAGED_FLAG, True)
    return handler


def _json_file_handler(log_dir: Path, config: LoggingConfiguration) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    _cleanup_logs(log_dir, config.retention_days)
    handler = RotatingFileHandler(
        log_dir / f"{LOG_FILE_PREFIX}-{time.strftime('%Y%m%d', time.gmtime())}.jsonl",
        maxBytes=config.max_log_size_mb * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setFormatter(JSONFormatter())
    return handler


def setup_logging(config: LoggingConfiguration, log_dir: Optional[Path] = None) -> logging.Logger:
    """Install console and JSON-lines handlers on the package logger.

    Handlers installed by an earlier call are closed and replaced, so the
    CLI can call this once per invocation without stacking output.  The JSON
    file is only written when ``log_dir`` or ``config.log_dir`` is set.

    Examples:
        >>> logger = setup_logging(LoggingConfiguration(level="INFO"))
        >>> logger.name
        'RuntimeDepot.RuntimeFetch'
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.getLevelName(config.level.upper()))

    for handler in [h for h in logger.handlers if getattr(h, _MANAGED_FLAG, False)]:
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(_managed(console))

    target_dir = log_dir or config.log_dir
    if target_dir is not None:
        logger.addHandler(_managed(_json_file_handler(Path(target_dir), config)))

    return logger


__all__ = ["setup_logging", "JSONFormatter", "LOGGER_NAME"]
