"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap the JSON file for Google Sheets (or a database) later
2. Use in-memory storage for testing
3. Keep the ledger decoupled from storage implementation

The interface is intentionally tiny: the ledger is always written and read
as one snapshot. Saves are eventually durable; the store never trusts the
cached aggregates inside a snapshot and re-derives them on load.
"""

from abc import ABC, abstractmethod
from typing import Optional

from finance_engine.models.audit import AuditEvent
from finance_engine.models.finance import LedgerSnapshot


class LedgerStorageInterface(ABC):
    """
    Abstract interface for ledger persistence.

    Any storage implementation (JSON file, Google Sheets, etc.)
    must implement these methods.
    """

    @abstractmethod
    def load(self) -> Optional[LedgerSnapshot]:
        """
        Load the most recently saved snapshot.

        Returns:
            The snapshot, or None if nothing was ever saved

        Raises:
            SnapshotCorruptedError: If stored data cannot be parsed
            StorageError: If the backend cannot be read
        """
        pass

    @abstractmethod
    def save(self, snapshot: LedgerSnapshot) -> bool:
        """
        Persist a snapshot, replacing the previous one.

        Implementations must not leave a half-written snapshot behind.

        Returns:
            True if saved successfully

        Raises:
            StorageError: If save fails
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """
        Get the most recent audit events (newest first).
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class SnapshotCorruptedError(StorageError):
    """Stored data exists but is not a valid snapshot."""
    pass


class StorageConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
