"""Draft validation package."""

from finance_engine.validation.validator import LedgerValidator

__all__ = ["LedgerValidator"]
