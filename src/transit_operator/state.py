"""Persistent state of applied resources.

The state store is the only durable entity across runs. For each logical name
it remembers the remote identifier, the fingerprint of the inputs last
applied and the outputs last observed. Comparing fingerprints is what makes
re-application idempotent:

- no record              -> create
- fingerprint differs    -> update
- fingerprint matches    -> read only (confirm the object still exists)

Records whose logical name is no longer declared are orphans. They are
reported on every run and only deleted on explicit confirmation.

CONCURRENCY:
Workers applying one batch write to the store concurrently. Writes are
serialized per logical name, and the persisted document is written by one
writer at a time. Reads of different names never block each other.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import tempfile
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1

# Refuse to load state documents beyond this size
MAX_STATE_FILE_SIZE_BYTES = 16 * 1024 * 1024


class StateStoreError(Exception):
    """Raised when state cannot be loaded or persisted."""

    pass


def compute_fingerprint(kind: str, inputs: Mapping[str, Any]) -> str:
    """Stable SHA256 fingerprint of a node's kind and resolved inputs.

    Keys are sorted so that mapping order never changes the fingerprint;
    list order is significant.
    """
    canonical = json.dumps(
        {"kind": kind, "inputs": inputs},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class StateRecord:
    """Last known state of one applied resource."""

    name: str
    kind: str
    remote_id: str
    fingerprint: str
    outputs: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "kind": self.kind,
            "remote_id": self.remote_id,
            "fingerprint": self.fingerprint,
            "outputs": copy.deepcopy(self.outputs),
            "dependencies": list(self.dependencies),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateRecord:
        """Create from dictionary."""
        return cls(
            name=data["name"],
            kind=data["kind"],
            remote_id=data["remote_id"],
            fingerprint=data["fingerprint"],
            outputs=dict(data.get("outputs", {})),
            dependencies=list(data.get("dependencies", [])),
            updated_at=(
                datetime.fromisoformat(data["updated_at"])
                if data.get("updated_at")
                else datetime.now(UTC)
            ),
        )


@runtime_checkable
class StateStore(Protocol):
    """Mapping of logical name to StateRecord, persisted between runs."""

    def get(self, name: str) -> StateRecord | None: ...

    def put(self, name: str, record: StateRecord) -> None: ...

    def remove(self, name: str) -> None: ...

    def list(self) -> list[tuple[str, StateRecord]]: ...


class MemoryStateStore:
    """In-process state store.

    Used for dry runs and tests, and as the base of JsonFileStateStore.
    """

    def __init__(self, records: Mapping[str, StateRecord] | None = None) -> None:
        self._records: dict[str, StateRecord] = {}
        self._locks: dict[str, threading.Lock] = {}
        # Guards the lock table and structural changes of the record index
        self._index_lock = threading.Lock()
        for name, record in (records or {}).items():
            self._records[name] = copy.deepcopy(record)

    def _lock_for(self, name: str) -> threading.Lock:
        with self._index_lock:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._locks[name] = lock
            return lock

    def get(self, name: str) -> StateRecord | None:
        record = self._records.get(name)
        # Callers get a copy; the store owns its records
        return copy.deepcopy(record) if record is not None else None

    def put(self, name: str, record: StateRecord) -> None:
        if record.name != name:
            raise StateStoreError(f"Record name '{record.name}' does not match key '{name}'")
        stored = copy.deepcopy(record)
        with self._lock_for(name):
            with self._index_lock:
                self._records[name] = stored
            self._persist()

    def remove(self, name: str) -> None:
        with self._lock_for(name):
            with self._index_lock:
                removed = self._records.pop(name, None)
            if removed is not None:
                self._persist()

    def list(self) -> list[tuple[str, StateRecord]]:
        with self._index_lock:
            records = sorted(self._records.items())
        return [(name, copy.deepcopy(record)) for name, record in records]

    def snapshot(self) -> dict[str, StateRecord]:
        """Copy of every record, keyed by name."""
        return dict(self.list())

    def _persist(self) -> None:
        """Hook for durable subclasses; called with the name lock held."""
        pass


class JsonFileStateStore(MemoryStateStore):
    """State store persisted as a single JSON document.

    Every write rewrites the document to a temporary file in the same
    directory and renames it over the previous one, so a crash never leaves
    a truncated state file behind.
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = path
        self._file_lock = threading.Lock()
        self._records.update(self._load())

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, StateRecord]:
        if not self._path.exists():
            logger.info("No state file, starting empty", extra={"state_file": str(self._path)})
            return {}

        try:
            file_size = self._path.stat().st_size
        except OSError as e:
            raise StateStoreError(f"Failed to stat state file {self._path}: {e}") from e

        if file_size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateStoreError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: "
                f"{self._path}"
            )

        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateStoreError(f"Failed to read state file {self._path}: {e}") from e
        except json.JSONDecodeError as e:
            raise StateStoreError(f"Invalid JSON in state file {self._path}: {e}") from e

        if not isinstance(document, dict) or not isinstance(document.get("resources"), dict):
            raise StateStoreError(f"State file must contain a 'resources' mapping: {self._path}")

        version = document.get("version", STATE_FORMAT_VERSION)
        if version != STATE_FORMAT_VERSION:
            raise StateStoreError(
                f"Unsupported state format version {version} in {self._path} "
                f"(expected {STATE_FORMAT_VERSION})"
            )

        records: dict[str, StateRecord] = {}
        for name, data in document["resources"].items():
            try:
                records[name] = StateRecord.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                raise StateStoreError(
                    f"Malformed state record '{name}' in {self._path}: {e}"
                ) from e
            if records[name].name != name:
                raise StateStoreError(
                    f"State record '{name}' is stored under the name "
                    f"'{records[name].name}' in {self._path}"
                )

        logger.info(
            "Loaded state",
            extra={"state_file": str(self._path), "record_count": len(records)},
        )
        return records

    def _persist(self) -> None:
        with self._file_lock:
            document = {
                "version": STATE_FORMAT_VERSION,
                "resources": {name: record.to_dict() for name, record in self.list()},
            }
            payload = json.dumps(document, indent=2, sort_keys=True)

            tmp_name: str | None = None
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    prefix=f".{self._path.name}.", dir=self._path.parent
                )
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(tmp_name, self._path)
            except OSError as e:
                if tmp_name is not None and os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise StateStoreError(f"Failed to write state file {self._path}: {e}") from e
