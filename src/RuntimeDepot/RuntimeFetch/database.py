# === NAVMAP v1 ===
# {
#   "module": "RuntimeDepot.RuntimeFetch.database",
#   "purpose": "Directory-backed store of runtime description records",
#   "sections": [
#     {"id": "database", "name": "RuntimeDescriptionDatabase", "anchor": "DB", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Directory-backed store of runtime description records.

Each record is one file named ``<id>.properties`` holding a single
description serialised through the properties codec.  Records are written to
a temporary sibling and renamed into place, so a crash never leaves a
half-written record behind.  Opening the database tolerates damage one file
at a time: a record that cannot be read or parsed is logged and treated as
absent while every other record still loads.

The in-memory snapshot is replaced wholesale on each mutation, so readers of
:meth:`RuntimeDescriptionDatabase.descriptions` never see a partially
updated mapping.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from .errors import FormatError, NotFoundError
from .formats import DescriptionCodec, get_codec
from .formats.properties import PROPERTIES_CONTENT_TYPE
from .fs import TMP_SUFFIX, atomic_write_bytes, fsync_directory
from .runtime import RuntimeDescription, is_runtime_identity

LOGGER = logging.getLogger("RuntimeDepot.RuntimeFetch.database")

RECORD_SUFFIX = ".properties"
UPDATED_FILE = "updated"

__all__ = ["RuntimeDescriptionDatabase", "RECORD_SUFFIX"]


class RuntimeDescriptionDatabase:
    """Persisted mapping of identity to :class:`RuntimeDescription`.

    Use :meth:`open`; the constructor does not touch the filesystem.
    """

    def __init__(
        self,
        directory: Path,
        codec: DescriptionCodec,
        descriptions: Mapping[str, RuntimeDescription],
    ) -> None:
        self._directory = directory
        self._codec = codec
        self._lock = threading.Lock()
        self._snapshot: Mapping[str, RuntimeDescription] = MappingProxyType(dict(descriptions))

    @classmethod
    def open(
        cls,
        directory: Path,
        *,
        codec: Optional[DescriptionCodec] = None,
    ) -> "RuntimeDescriptionDatabase":
        """Load every readable record under ``directory``, creating it if needed."""

        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        codec = codec or get_codec(PROPERTIES_CONTENT_TYPE)

        for leftover in directory.glob(f"*{TMP_SUFFIX}"):
            LOGGER.debug(
                "removing interrupted record write",
                extra={"stage": "database", "path": str(leftover)},
            )
            leftover.unlink(missing_ok=True)

        loaded: Dict[str, RuntimeDescription] = {}
        for path in sorted(directory.glob(f"*{RECORD_SUFFIX}")):
            try:
                description = codec.parse(path.read_bytes())
            except (OSError, FormatError) as exc:
                LOGGER.warning(
                    "skipping unreadable runtime record",
                    extra={"stage": "database", "path": str(path), "error": str(exc)},
                )
                continue
            if description.id != path.name[: -len(RECORD_SUFFIX)]:
                LOGGER.warning(
                    "skipping runtime record stored under the wrong identity",
                    extra={"stage": "database", "path": str(path), "runtime_id": description.id},
                )
                continue
            loaded[description.id] = description

        LOGGER.debug(
            "description database opened",
            extra={"stage": "database", "path": str(directory), "records": len(loaded)},
        )
        return cls(directory, codec, loaded)

    @property
    def directory(self) -> Path:
        return self._directory

    def descriptions(self) -> Mapping[str, RuntimeDescription]:
        """Read-only snapshot of all records."""

        return self._snapshot

    def get(self, runtime_id: str) -> Optional[RuntimeDescription]:
        return self._snapshot.get(runtime_id)

    def __contains__(self, runtime_id: object) -> bool:
        return runtime_id in self._snapshot

    def __len__(self) -> int:
        return len(self._snapshot)

    def record_path(self, runtime_id: str) -> Path:
        """Record file for ``runtime_id``.

        Raises:
            NotFoundError: If ``runtime_id`` is not a well-formed identity.
        """

        if not is_runtime_identity(runtime_id):
            raise NotFoundError(f"{runtime_id!r} is not a runtime identity", details={"runtime_id": runtime_id})
        return self._directory / f"{runtime_id}{RECORD_SUFFIX}"

    def updated(self) -> Optional[datetime]:
        """Time of the last successful write, if any."""

        try:
            return datetime.fromisoformat(
                (self._directory / UPDATED_FILE).read_text(encoding="utf-8").strip()
            )
        except (OSError, ValueError):
            return None

    def add(self, description: RuntimeDescription) -> None:
        """Write (or overwrite) the record for ``description`` atomically."""

        data = self._codec.serialize(description)
        with self._lock:
            atomic_write_bytes(self.record_path(description.id), data)
            self._touch_updated()
            snapshot = dict(self._snapshot)
            snapshot[description.id] = description
            self._snapshot = MappingProxyType(snapshot)
        LOGGER.debug(
            "runtime record written",
            extra={"stage": "database", "runtime_id": description.id},
        )

    def delete(self, runtime_id: str) -> bool:
        """Remove the record for ``runtime_id``; return whether one existed."""

        if not is_runtime_identity(runtime_id):
            return False
        with self._lock:
            path = self.record_path(runtime_id)
            existed = path.exists()
            path.unlink(missing_ok=True)
            if existed:
                fsync_directory(self._directory)
                self._touch_updated()
            if runtime_id in self._snapshot:
                snapshot = dict(self._snapshot)
                del snapshot[runtime_id]
                self._snapshot = MappingProxyType(snapshot)
                existed = True
        return existed

    def _touch_updated(self) -> None:
        atomic_write_bytes(
            self._directory / UPDATED_FILE,
            datetime.now(timezone.utc).isoformat().encode("utf-8"),
        )
