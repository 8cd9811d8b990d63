"""Ledger package: the store, its posting rules and its exceptions."""

from finance_engine.ledger.errors import (
    ConsistencyError,
    GoalClosedError,
    LedgerError,
    NotFoundError,
    ValidationError,
)
from finance_engine.ledger.store import LedgerState, LedgerStore, LoadResult

__all__ = [
    "ConsistencyError",
    "GoalClosedError",
    "LedgerError",
    "LedgerState",
    "LedgerStore",
    "LoadResult",
    "NotFoundError",
    "ValidationError",
]
