"""
Main Orchestrator for the Finance Engine

This module ties together all the components:
1. Storage backend (memory, JSON file or Google Sheets) per settings
2. Audit logger (local structlog + optional sheet)
3. Ledger store, auto-tracking bridge and intent dispatcher

DESIGN DECISION: The orchestrator enforces the boundaries:
- Only the store mutates ledger collections
- Planner code reaches the ledger through the bridge only
- Voice intents reach the ledger through the dispatcher only
- Every commit is audited
"""

from datetime import date
from pathlib import Path
from typing import Callable, Optional, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from finance_engine.audit import AuditLogger
from finance_engine.config import get_settings
from finance_engine.intents import IntentDispatcher
from finance_engine.ledger import LedgerStore, LoadResult
from finance_engine.queries import TransactionFilter, TransactionView, filter_transactions
from finance_engine.services.storage import (
    AuditStorageInterface,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
    InMemoryLedgerStorage,
    JsonFileLedgerStorage,
    LedgerStorageInterface,
    StorageError,
)
from finance_engine.tracking import AutoTrackingBridge

logger = structlog.get_logger(__name__)


class FinanceEngine:
    """
    The wired-up engine.

    UI code holds one of these for the life of the process.
    """

    def __init__(
        self,
        store: LedgerStore,
        bridge: AutoTrackingBridge,
        dispatcher: IntentDispatcher,
        audit_logger: AuditLogger,
        load_result: Optional[LoadResult] = None,
        sheets_client: Optional[GoogleSheetsClient] = None,
    ):
        self.store = store
        self.bridge = bridge
        self.dispatcher = dispatcher
        self.audit_logger = audit_logger
        self.load_result = load_result or LoadResult()
        self.sheets_client = sheets_client

    def transactions(self, filters: Optional[Union[TransactionFilter, dict]] = None) -> TransactionView:
        """Filtered, newest-first view of the committed transactions."""
        return filter_transactions(self.store.list_transactions(), filters)

    def close(self) -> None:
        self.store.close()


def _build_storage(
    backend: str,
    json_path: Optional[Path],
) -> tuple[LedgerStorageInterface, Optional[AuditStorageInterface], Optional[GoogleSheetsClient]]:
    if backend == "memory":
        return InMemoryLedgerStorage(), None, None
    if backend == "json":
        return JsonFileLedgerStorage(json_path or get_settings().storage.json_path), None, None
    if backend == "google_sheets":
        sheets_client = GoogleSheetsClient()
        return (
            GoogleSheetsLedgerStorage(sheets_client),
            GoogleSheetsAuditStorage(sheets_client),
            sheets_client,
        )
    raise ValueError(f"Unknown storage backend: {backend}")


def create_engine_components(
    backend: Optional[str] = None,
    json_path: Optional[Path] = None,
    load: bool = True,
    clock: Optional[Callable[[], date]] = None,
) -> FinanceEngine:
    """
    Factory function to create all engine components.

    Args:
        backend: 'memory', 'json' or 'google_sheets'. Defaults to settings.
        json_path: Snapshot file for the JSON backend. Defaults to settings.
        load: Load the persisted snapshot before returning.
        clock: Source of "today" for budget windows (tests pin it).

    If Google Sheets is selected but not configured, the engine falls back
    to in-memory storage with a warning.
    """
    backend = backend or get_settings().storage.backend

    try:
        storage, audit_storage, sheets_client = _build_storage(backend, json_path)
    except (PydanticValidationError, StorageError) as e:
        # Storage not configured - continue without it
        logger.warning("storage_not_configured", backend=backend, error=str(e))
        storage, audit_storage, sheets_client = InMemoryLedgerStorage(), None, None

    audit_logger = AuditLogger(audit_storage)
    store = LedgerStore(storage=storage, audit_logger=audit_logger, clock=clock)
    bridge = AutoTrackingBridge(store, audit_logger=audit_logger)
    dispatcher = IntentDispatcher(store, audit_logger=audit_logger)

    load_result = store.load() if load else None
    if load_result is not None and load_result.degraded:
        logger.warning("engine_started_degraded", warnings=load_result.warnings)

    return FinanceEngine(
        store=store,
        bridge=bridge,
        dispatcher=dispatcher,
        audit_logger=audit_logger,
        load_result=load_result,
        sheets_client=sheets_client,
    )
