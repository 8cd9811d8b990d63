"""
Local Storage Implementations

In-memory storage for tests and ephemeral sessions, and a JSON file
backend for on-device persistence.

The JSON backend writes to a temporary file in the same directory and
atomically replaces the target, so a crash mid-write leaves the previous
snapshot intact.
"""

import os
import tempfile
import threading
from pathlib import Path
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from finance_engine.models.audit import AuditEvent
from finance_engine.models.finance import LedgerSnapshot
from finance_engine.services.storage.interface import (
    AuditStorageInterface,
    LedgerStorageInterface,
    SnapshotCorruptedError,
    StorageError,
)


class InMemoryLedgerStorage(LedgerStorageInterface):
    """Keeps the serialized snapshot in memory."""

    def __init__(self, initial: Optional[LedgerSnapshot] = None):
        self._lock = threading.Lock()
        self._payload: Optional[str] = initial.model_dump_json() if initial else None
        self.save_count = 0

    def load(self) -> Optional[LedgerSnapshot]:
        with self._lock:
            payload = self._payload
        if payload is None:
            return None
        return LedgerSnapshot.model_validate_json(payload)

    def save(self, snapshot: LedgerSnapshot) -> bool:
        payload = snapshot.model_dump_json()
        with self._lock:
            self._payload = payload
            self.save_count += 1
        return True


class JsonFileLedgerStorage(LedgerStorageInterface):
    """
    One JSON document on disk.

    Complex fields (decimals, dates, nested keys) are serialized by
    pydantic, so a load is a plain model_validate_json.
    """

    def __init__(self, path: Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Optional[LedgerSnapshot]:
        if not self._path.exists():
            return None
        try:
            payload = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to read ledger file {self._path}: {e}")
        try:
            return LedgerSnapshot.model_validate_json(payload)
        except PydanticValidationError as e:
            raise SnapshotCorruptedError(f"Ledger file {self._path} is not a valid snapshot: {e}")

    def save(self, snapshot: LedgerSnapshot) -> bool:
        payload = snapshot.model_dump_json(indent=2)
        directory = self._path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=directory,
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, self._path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StorageError(f"Failed to write ledger file {self._path}: {e}")
        return True


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of audit events."""

    def __init__(self):
        self._events: list[AuditEvent] = []
        self._lock = threading.Lock()

    def append_event(self, event: AuditEvent) -> bool:
        with self._lock:
            self._events.append(event)
        return True

    def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        with self._lock:
            return list(reversed(self._events))[:limit]
