"""
Storage Services Package

Provides the abstract persistence interface, its implementations
(in-memory, JSON file, Google Sheets) and the ordered snapshot writer.
"""

from finance_engine.services.storage.interface import (
    AuditStorageInterface,
    LedgerStorageInterface,
    SnapshotCorruptedError,
    StorageConnectionError,
    StorageError,
)
from finance_engine.services.storage.local import (
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
    JsonFileLedgerStorage,
)
from finance_engine.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
)
from finance_engine.services.storage.writer import SnapshotWriter

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "LedgerStorageInterface",
    # Exceptions
    "SnapshotCorruptedError",
    "StorageConnectionError",
    "StorageError",
    # Local implementations
    "InMemoryAuditStorage",
    "InMemoryLedgerStorage",
    "JsonFileLedgerStorage",
    # Google Sheets implementation
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsLedgerStorage",
    # Ordered writes
    "SnapshotWriter",
]
