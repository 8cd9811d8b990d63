"""
Filter/View Projections

DESIGN DECISION: Projections are read-only and DETERMINISTIC.
They work on a snapshot of the transaction list and never touch the
store, so they are safe to recompute on every render.

A filter value of 'all' (or an empty string) means "no constraint",
which is what list screens send by default.
"""

from collections import defaultdict
from datetime import date, time
from decimal import Decimal
from typing import Iterable, Iterator, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from finance_engine.ledger.postings import ZERO
from finance_engine.models.finance import Transaction, TransactionType

ALL = "all"
UNCATEGORIZED = "uncategorized"


def _is_unset(value) -> bool:
    return value is None or (isinstance(value, str) and value.strip().lower() in ("", ALL))


class TransactionFilter(BaseModel):
    """
    Criteria for list screens.

    Every field defaults to "no constraint".
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    category: str = ALL
    account: Union[UUID, str] = ALL
    type: Union[TransactionType, str] = ALL
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    @field_validator("min_amount", "max_amount", "date_from", "date_to", mode="before")
    @classmethod
    def blank_means_unset(cls, v):
        return None if _is_unset(v) else v

    @field_validator("type", mode="before")
    @classmethod
    def parse_type(cls, v):
        if _is_unset(v):
            return ALL
        return TransactionType(v.strip().lower() if isinstance(v, str) else v)

    @field_validator("account", mode="before")
    @classmethod
    def parse_account(cls, v):
        if _is_unset(v):
            return ALL
        return v if isinstance(v, UUID) else UUID(str(v))

    def matches(self, txn: Transaction) -> bool:
        if not _is_unset(self.category) and txn.category != self.category:
            return False
        if self.account != ALL and self.account not in txn.account_ids:
            return False
        if self.type != ALL and txn.type != self.type:
            return False
        if self.min_amount is not None and txn.amount < self.min_amount:
            return False
        if self.max_amount is not None and txn.amount > self.max_amount:
            return False
        if self.date_from is not None and txn.date < self.date_from:
            return False
        if self.date_to is not None and txn.date > self.date_to:
            return False
        return True


def _newest_first(txn: Transaction) -> tuple:
    moment = txn.time or time.min
    seconds = moment.hour * 3600 + moment.minute * 60 + moment.second
    # Date and time descending, insertion order ascending
    return (-txn.date.toordinal(), -seconds, -1 if txn.time else 0, txn.sequence)


class TransactionView:
    """
    A lazy, restartable sequence of matching transactions.

    Nothing is evaluated until iteration, and every iteration starts over
    from the same captured transaction list.
    """

    def __init__(self, transactions: Iterable[Transaction], filters: Optional[TransactionFilter] = None):
        self._source = tuple(transactions)
        self._filters = filters or TransactionFilter()

    @property
    def filters(self) -> TransactionFilter:
        return self._filters

    def __iter__(self) -> Iterator[Transaction]:
        matching = (txn for txn in self._source if self._filters.matches(txn))
        yield from sorted(matching, key=_newest_first)

    def __len__(self) -> int:
        return sum(1 for txn in self._source if self._filters.matches(txn))

    def __bool__(self) -> bool:
        return any(self._filters.matches(txn) for txn in self._source)

    def first(self) -> Optional[Transaction]:
        return next(iter(self), None)

    def refine(self, **criteria) -> "TransactionView":
        """A new view with some filter fields replaced."""
        merged = {**self._filters.model_dump(), **criteria}
        return TransactionView(self._source, TransactionFilter(**merged))


def filter_transactions(
    transactions: Iterable[Transaction],
    filters: Optional[Union[TransactionFilter, dict]] = None,
) -> TransactionView:
    if isinstance(filters, dict):
        filters = TransactionFilter(**filters)
    return TransactionView(transactions, filters)


class CurrencySummary(BaseModel):
    """Income/expense totals in one currency. Transfers only count towards `count`."""

    currency: str
    income: Decimal = ZERO
    expense: Decimal = ZERO
    count: int = 0

    @property
    def net(self) -> Decimal:
        return self.income - self.expense


class ViewSummary(BaseModel):
    by_currency: dict[str, CurrencySummary] = Field(default_factory=dict)
    count: int = 0


def totals_by_category(view: Iterable[Transaction], currency: str) -> dict[str, Decimal]:
    """
    Expense totals per category for one currency, largest first.

    Transactions in other currencies are skipped, not converted.
    """
    totals: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for txn in view:
        if txn.type == TransactionType.EXPENSE and txn.currency == currency:
            totals[txn.category or UNCATEGORIZED] += txn.amount
    ordered = sorted(totals.items(), key=lambda item: item[1], reverse=True)
    return dict(ordered)


def summarize(view: Iterable[Transaction]) -> ViewSummary:
    summaries: dict[str, CurrencySummary] = {}
    count = 0
    for txn in view:
        count += 1
        summary = summaries.setdefault(txn.currency, CurrencySummary(currency=txn.currency))
        summary.count += 1
        if txn.type == TransactionType.INCOME:
            summary.income += txn.amount
        elif txn.type == TransactionType.EXPENSE:
            summary.expense += txn.amount
    return ViewSummary(by_currency=summaries, count=count)
