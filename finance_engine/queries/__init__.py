"""Read-side projections over the transaction log."""

from finance_engine.queries.projections import (
    CurrencySummary,
    TransactionFilter,
    TransactionView,
    ViewSummary,
    filter_transactions,
    summarize,
    totals_by_category,
)

__all__ = [
    "CurrencySummary",
    "TransactionFilter",
    "TransactionView",
    "ViewSummary",
    "filter_transactions",
    "summarize",
    "totals_by_category",
]
