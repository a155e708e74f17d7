# === NAVMAP v1 ===
# {
#   "module": "RuntimeDepot.RuntimeFetch.inventory",
#   "purpose": "Local persisted store of verified runtime archives and their unpacked trees",
#   "sections": [
#     {"id": "layout", "name": "On-disk layout", "anchor": "LAY", "kind": "constants"},
#     {"id": "inventory", "name": "Inventory", "anchor": "INV", "kind": "api"},
#     {"id": "state", "name": "Per-runtime state files", "anchor": "STA", "kind": "helpers"}
#   ]
# }
# === /NAVMAP ===

"""Local persisted store of verified runtime archives.

The inventory keeps, under ``<root>/inventory``:

* ``descriptions/``: the :class:`RuntimeDescriptionDatabase`
* ``archives/<id>/archive``: the verified archive, with ``state.yaml`` beside it
  recording when it was last verified and where it was unpacked
* ``staging/``: in-flight transfers, emptied whenever the inventory opens
* ``unpacked/<id>/``: the default unpack target
* ``locks/<id>.lock``: cross-process locks taken by every mutation

An archive is moved into place before its record is written, so a record
never refers to an archive that was not fully verified.  Mutations of one
identity run in submission order; different identities proceed in parallel.
"""

from __future__ import annotations

import contextlib
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

import yaml
from filelock import FileLock, Timeout

from .archives import PARTIAL_SUFFIX, UnpackOptions, unpack_archive
from .cancellation import CancellationToken
from .checksums import compute_file_hash
from .database import RuntimeDescriptionDatabase
from .download import stage_local_file
from .errors import (
    InventoryLayoutError,
    NotFoundError,
    OperationTimeoutError,
    UnpackError,
    VerificationError,
)
from .events import (
    EventStream,
    InventoryFailed,
    RuntimeAdded,
    RuntimeDeleted,
    RuntimeUnpacked,
    RuntimeVerified,
)
from .fs import atomic_replace, atomic_write_bytes, remove_tree
from .operations import Operation, OperationRunner
from .runtime import (
    InventoryRecord,
    RuntimeDescription,
    RuntimeHash,
    VerificationResult,
    is_runtime_identity,
)
from .search import RuntimeSearchCriteria

LOGGER = logging.getLogger("RuntimeDepot.RuntimeFetch.inventory")

T = TypeVar("T")

# ============================================================================
# On-disk layout (LAY)
# ============================================================================

INVENTORY_DIR = "inventory"
DESCRIPTIONS_DIR = "descriptions"
ARCHIVES_DIR = "archives"
STAGING_DIR = "staging"
UNPACKED_DIR = "unpacked"
LOCKS_DIR = "locks"
ARCHIVE_FILE = "archive"
STATE_FILE = "state.yaml"

__all__ = ["Inventory", "INVENTORY_DIR"]


def _checked(runtime_id: str) -> str:
    """Return ``runtime_id`` if it may name a path component under the inventory."""

    if not is_runtime_identity(runtime_id):
        raise NotFoundError(f"{runtime_id!r} is not a runtime identity", details={"runtime_id": runtime_id})
    return runtime_id


# ============================================================================
# Inventory (INV)
# ============================================================================


class Inventory:
    """Verified runtime archives rooted at one directory.

    Use :meth:`open`.  Asynchronous methods return :class:`Operation` handles
    from the inventory's runner; :meth:`path_of`, :meth:`record` and
    :meth:`records` answer synchronously from the in-memory snapshot.
    """

    def __init__(
        self,
        root: Path,
        database: RuntimeDescriptionDatabase,
        events: EventStream,
        runner: OperationRunner,
        *,
        owns_runner: bool = False,
        lock_timeout: float = 60.0,
    ) -> None:
        self._root = root
        self._base = root / INVENTORY_DIR
        self._database = database
        self._events = events
        self.runner = runner
        self._owns_runner = owns_runner
        self._lock_timeout = lock_timeout

    @classmethod
    def open(
        cls,
        root: Path,
        *,
        events: Optional[EventStream] = None,
        runner: Optional[OperationRunner] = None,
        lock_timeout: float = 60.0,
    ) -> "Inventory":
        """Open (creating when needed) the inventory under ``root``.

        Raises:
            InventoryLayoutError: If ``root`` or one of the inventory's own
                directories already exists as something other than a directory.
        """

        root = Path(root)
        base = root / INVENTORY_DIR
        layout = [root, base] + [
            base / name for name in (DESCRIPTIONS_DIR, ARCHIVES_DIR, STAGING_DIR, UNPACKED_DIR, LOCKS_DIR)
        ]
        for path in layout:
            if path.exists() and not path.is_dir():
                raise InventoryLayoutError(
                    f"{path} exists and is not a directory",
                    details={"path": str(path)},
                )
        try:
            for path in layout:
                path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise InventoryLayoutError(f"cannot create inventory under {root}: {exc}") from exc

        for leftover in (base / STAGING_DIR).iterdir():
            LOGGER.debug("discarding staged transfer", extra={"stage": "inventory", "path": str(leftover)})
            remove_tree(leftover)
        for leftover in (base / UNPACKED_DIR).glob(f"*{PARTIAL_SUFFIX}"):
            remove_tree(leftover)

        database = RuntimeDescriptionDatabase.open(base / DESCRIPTIONS_DIR)
        owns_runner = runner is None
        inventory = cls(
            root,
            database,
            events or EventStream("inventory"),
            runner or OperationRunner(),
            owns_runner=owns_runner,
            lock_timeout=lock_timeout,
        )
        LOGGER.info(
            "inventory opened",
            extra={"stage": "inventory", "path": str(base), "records": len(database)},
        )
        return inventory

    # --- properties -----------------------------------------------------------

    @property
    def root(self) -> Path:
        return self._root

    @property
    def database(self) -> RuntimeDescriptionDatabase:
        return self._database

    @property
    def staging_directory(self) -> Path:
        return self._base / STAGING_DIR

    def events(self) -> EventStream:
        return self._events

    def archive_directory(self, runtime_id: str) -> Path:
        return self._base / ARCHIVES_DIR / _checked(runtime_id)

    def archive_path(self, runtime_id: str) -> Path:
        return self.archive_directory(runtime_id) / ARCHIVE_FILE

    def default_unpack_directory(self, runtime_id: str) -> Path:
        return self._base / UNPACKED_DIR / _checked(runtime_id)

    # --- synchronous queries ----------------------------------------------------

    def record(self, runtime_id: str) -> Optional[InventoryRecord]:
        description = self._database.get(runtime_id)
        if description is None:
            return None
        return self._build_record(description)

    def records(self) -> List[InventoryRecord]:
        return [self._build_record(item) for item in self._database.descriptions().values()]

    def path_of(self, runtime_id: str) -> Path:
        """Local archive path for ``runtime_id``.

        Raises:
            NotFoundError: If the identity is malformed, unknown, or its archive
                is gone.
        """

        path = self.archive_path(runtime_id)
        if runtime_id not in self._database or not path.is_file():
            raise NotFoundError(f"runtime {runtime_id} is not in the inventory", details={"runtime_id": runtime_id})
        return path

    # --- asynchronous operations --------------------------------------------------

    def search(
        self,
        criteria: Optional[RuntimeSearchCriteria] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Operation[List[InventoryRecord]]:
        criteria = criteria or RuntimeSearchCriteria()
        return self.runner.submit(
            "inventory.search",
            lambda token: [record for record in self.records() if criteria.matches(record.description)],
            timeout=timeout,
        )

    def search_exact(
        self,
        criteria: Optional[RuntimeSearchCriteria] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Operation[List[InventoryRecord]]:
        criteria = criteria or RuntimeSearchCriteria()
        return self.runner.submit(
            "inventory.search_exact",
            lambda token: [record for record in self.records() if criteria.matches_exact(record.description)],
            timeout=timeout,
        )

    def delete(self, runtime_id: str, *, timeout: Optional[float] = None) -> Operation[bool]:
        """Remove a runtime and its artifacts; unknown identities succeed with ``False``."""

        if not is_runtime_identity(runtime_id):
            return self.runner.completed("inventory.delete", False)
        return self._submit_mutation(
            "delete", runtime_id, lambda token: self._delete(runtime_id), timeout, discard_lock_file=True
        )

    def verify(self, runtime_id: str, *, timeout: Optional[float] = None) -> Operation[VerificationResult]:
        return self._submit_mutation(
            "verify", runtime_id, lambda token: self._verify(runtime_id, token), timeout
        )

    def unpack(
        self,
        runtime_id: str,
        target: Optional[Path] = None,
        *,
        options: UnpackOptions = UnpackOptions(),
        timeout: Optional[float] = None,
    ) -> Operation[Path]:
        return self._submit_mutation(
            "unpack", runtime_id, lambda token: self._unpack(runtime_id, target, options, token), timeout
        )

    def add(
        self,
        description: RuntimeDescription,
        archive_path: Path,
        *,
        timeout: Optional[float] = None,
    ) -> Operation[InventoryRecord]:
        """Copy and verify ``archive_path``, then store it under ``description``."""

        def work(token: CancellationToken) -> InventoryRecord:
            staged = stage_local_file(archive_path, description, self.staging_directory, token=token)
            return self._commit(description, staged)

        return self._submit_mutation("add", description.id, work, timeout)

    def commit_download(
        self,
        description: RuntimeDescription,
        staged: Path,
        *,
        lock_held: bool = False,
    ) -> InventoryRecord:
        """Store an already verified staged archive.

        ``lock_held`` tells the inventory that the caller already holds the
        identity's place in this inventory's runner ordering.
        """

        try:
            if lock_held:
                with self._record_lock(description.id):
                    return self._commit(description, staged)
            with self.runner.keyed_locks.hold(description.id), self._record_lock(description.id):
                return self._commit(description, staged)
        except Exception as exc:
            self._failed("add", description.id, exc)
            raise
        finally:
            staged.unlink(missing_ok=True)

    def close(self) -> None:
        if self._owns_runner:
            self.runner.close()

    # --- mutation plumbing ----------------------------------------------------------

    def _failed(self, op: str, runtime_id: str, exc: BaseException) -> None:
        LOGGER.warning(
            "inventory operation failed",
            extra={"stage": "inventory", "operation": op, "runtime_id": runtime_id, "error": str(exc)},
        )
        self._events.publish(InventoryFailed(op=op, id=runtime_id, cause=exc))

    def _submit_mutation(
        self,
        op: str,
        runtime_id: str,
        work: Callable[[CancellationToken], T],
        timeout: Optional[float],
        *,
        discard_lock_file: bool = False,
    ) -> Operation[T]:
        def run(token: CancellationToken) -> T:
            try:
                with self._record_lock(runtime_id):
                    result = work(token)
            except Exception as exc:
                self._failed(op, runtime_id, exc)
                raise
            if discard_lock_file:
                self._lock_path(runtime_id).unlink(missing_ok=True)
            return result

        return self.runner.submit(f"inventory.{op}", run, key=runtime_id, timeout=timeout)

    def _lock_path(self, runtime_id: str) -> Path:
        return self._base / LOCKS_DIR / f"{_checked(runtime_id)}.lock"

    @contextlib.contextmanager
    def _record_lock(self, runtime_id: str) -> Iterator[None]:
        file_lock = FileLock(str(self._lock_path(runtime_id)))
        try:
            file_lock.acquire(timeout=self._lock_timeout)
        except Timeout as exc:
            raise OperationTimeoutError(
                f"could not lock runtime {runtime_id} after {self._lock_timeout}s",
                details={"runtime_id": runtime_id},
            ) from exc
        try:
            yield
        finally:
            file_lock.release()

    def _commit(self, description: RuntimeDescription, staged: Path) -> InventoryRecord:
        runtime_id = description.id
        directory = self.archive_directory(runtime_id)
        directory.mkdir(parents=True, exist_ok=True)
        atomic_replace(staged, directory / ARCHIVE_FILE)
        state = _read_state(directory)
        state["verified_at"] = _now_iso()
        _write_state(directory, state)
        self._database.add(description)
        LOGGER.info("runtime added", extra={"stage": "inventory", "runtime_id": runtime_id})
        self._events.publish(RuntimeAdded(id=runtime_id))
        return self._build_record(description)

    def _delete(self, runtime_id: str) -> bool:
        directory = self.archive_directory(runtime_id)
        unpacked_root = (self._base / UNPACKED_DIR).resolve()
        recorded = [Path(item) for item in _read_state(directory).get("unpacked", [])]

        existed = self._database.delete(runtime_id)
        existed = remove_tree(directory) or existed
        remove_tree(self.default_unpack_directory(runtime_id))
        for path in recorded:
            if path.resolve().is_relative_to(unpacked_root):
                remove_tree(path)

        if existed:
            LOGGER.info("runtime deleted", extra={"stage": "inventory", "runtime_id": runtime_id})
            self._events.publish(RuntimeDeleted(id=runtime_id))
        return existed

    def _require(self, runtime_id: str) -> RuntimeDescription:
        description = self._database.get(runtime_id)
        if description is None:
            raise NotFoundError(f"runtime {runtime_id} is not in the inventory", details={"runtime_id": runtime_id})
        return description

    def _hash_archive(self, description: RuntimeDescription, token: CancellationToken) -> str:
        return compute_file_hash(
            self.archive_path(description.id),
            description.archive_hash.algorithm,
            checkpoint=lambda: token.raise_if_cancelled(f"hashing of {description.id}"),
        )

    def _verify(self, runtime_id: str, token: CancellationToken) -> VerificationResult:
        description = self._require(runtime_id)
        expected = description.archive_hash
        if not self.archive_path(runtime_id).is_file():
            raise VerificationError(
                f"archive of {runtime_id} is missing",
                expected=expected.value,
            )
        digest = self._hash_archive(description, token)
        if digest != expected.value:
            raise VerificationError(
                f"archive of {runtime_id} no longer matches its recorded hash",
                expected=expected.value,
                received=digest,
            )
        directory = self.archive_directory(runtime_id)
        state = _read_state(directory)
        state["verified_at"] = _now_iso()
        _write_state(directory, state)
        LOGGER.info("runtime verified", extra={"stage": "inventory", "runtime_id": runtime_id})
        self._events.publish(RuntimeVerified(id=runtime_id))
        return VerificationResult(
            id=runtime_id,
            expected=expected,
            received=RuntimeHash(expected.algorithm, digest),
        )

    def _unpack(
        self,
        runtime_id: str,
        target: Optional[Path],
        options: UnpackOptions,
        token: CancellationToken,
    ) -> Path:
        description = self._require(runtime_id)
        archive = self.archive_path(runtime_id)
        if not archive.is_file():
            raise UnpackError(f"archive of {runtime_id} is missing")
        digest = self._hash_archive(description, token)
        if digest != description.archive_hash.value:
            raise UnpackError(
                f"archive of {runtime_id} does not match its recorded hash",
                details={"expected": description.archive_hash.value, "received": digest},
            )
        destination = Path(target) if target is not None else self.default_unpack_directory(runtime_id)
        unpacked = unpack_archive(archive, destination, options, token=token)

        directory = self.archive_directory(runtime_id)
        state = _read_state(directory)
        paths = list(state.get("unpacked", []))
        resolved = str(unpacked.resolve())
        if resolved not in paths:
            paths.append(resolved)
        state["unpacked"] = paths
        _write_state(directory, state)
        self._events.publish(RuntimeUnpacked(id=runtime_id, path=unpacked))
        return unpacked

    def _build_record(self, description: RuntimeDescription) -> InventoryRecord:
        directory = self.archive_directory(description.id)
        state = _read_state(directory)
        return InventoryRecord(
            description=description,
            archive_present=(directory / ARCHIVE_FILE).is_file(),
            verified=state.get("verified_at") is not None,
            unpacked_paths=tuple(Path(item) for item in state.get("unpacked", [])),
        )

    def __enter__(self) -> "Inventory":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


# ============================================================================
# Per-runtime state files (STA)
# ============================================================================


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _read_state(directory: Path) -> Dict[str, Any]:
    path = directory / STATE_FILE
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, yaml.YAMLError) as exc:
        LOGGER.warning(
            "ignoring unreadable runtime state",
            extra={"stage": "inventory", "path": str(path), "error": str(exc)},
        )
        return {}
    return dict(data) if isinstance(data, dict) else {}


def _write_state(directory: Path, state: Dict[str, Any]) -> None:
    payload = yaml.safe_dump(state, sort_keys=True).encode("utf-8")
    atomic_write_bytes(directory / STATE_FILE, payload)
