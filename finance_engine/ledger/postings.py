"""
Postings and Derived Aggregates

Pure functions that turn the transaction log into balances and budget
totals. The store calls these both incrementally (one transaction at a
time) and in bulk (rebuild after load), and the two paths must agree.
"""

from calendar import monthrange
from collections import defaultdict
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, NamedTuple
from uuid import UUID

from finance_engine.models.finance import (
    Account,
    Budget,
    BudgetPeriod,
    Transaction,
    TransactionType,
)

ZERO = Decimal("0")


class Posting(NamedTuple):
    """A single signed amount applied to one account."""
    account_id: UUID
    amount: Decimal


def postings_for(txn: Transaction) -> list[Posting]:
    """
    Decompose a transaction into postings.

    Transfers produce two postings that sum to zero.
    """
    if txn.type == TransactionType.INCOME:
        return [Posting(txn.account_id, txn.amount)]
    if txn.type == TransactionType.EXPENSE:
        return [Posting(txn.account_id, -txn.amount)]
    return [
        Posting(txn.account_id, -txn.amount),
        Posting(txn.to_account_id, txn.amount),
    ]


def apply_postings(
    balances: dict[UUID, Decimal],
    txn: Transaction,
    multiplier: int = 1,
) -> dict[UUID, Decimal]:
    """Return a new balance map with `txn` applied (1) or reversed (-1)."""
    updated = dict(balances)
    for posting in postings_for(txn):
        updated[posting.account_id] = updated.get(posting.account_id, ZERO) + posting.amount * multiplier
    return updated


def derive_balances(
    accounts: Iterable[Account],
    transactions: Iterable[Transaction],
) -> dict[UUID, Decimal]:
    """Rebuild every account balance from scratch."""
    balances = {account.id: account.opening_balance + account.adjustment for account in accounts}
    for txn in transactions:
        for posting in postings_for(txn):
            balances[posting.account_id] = balances.get(posting.account_id, ZERO) + posting.amount
    return balances


def period_window(period: BudgetPeriod, today: date, week_start: int = 0) -> tuple[date, date]:
    """Inclusive first and last day of the period containing `today`."""
    if period == BudgetPeriod.WEEKLY:
        start = today - timedelta(days=(today.weekday() - week_start) % 7)
        return start, start + timedelta(days=6)
    if period == BudgetPeriod.MONTHLY:
        last_day = monthrange(today.year, today.month)[1]
        return today.replace(day=1), today.replace(day=last_day)
    if period == BudgetPeriod.QUARTERLY:
        first_month = 3 * ((today.month - 1) // 3) + 1
        last_month = first_month + 2
        return (
            date(today.year, first_month, 1),
            date(today.year, last_month, monthrange(today.year, last_month)[1]),
        )
    return date(today.year, 1, 1), date(today.year, 12, 31)


def budget_matches(budget: Budget, txn: Transaction, window: tuple[date, date]) -> bool:
    """
    Does `txn` count towards `budget` in the given window?

    An explicit budget link wins over category matching. Transactions in
    another currency never count: there is no conversion here.
    """
    if txn.type != TransactionType.EXPENSE:
        return False
    if txn.currency != budget.currency:
        return False
    start, end = window
    if not start <= txn.date <= end:
        return False
    if txn.budget_id is not None:
        return txn.budget_id == budget.id
    return txn.category == budget.category


def compute_spent(
    budget: Budget,
    transactions: Iterable[Transaction],
    today: date,
    week_start: int = 0,
) -> Decimal:
    window = period_window(budget.period, today, week_start)
    total = ZERO
    for txn in transactions:
        if budget_matches(budget, txn, window):
            total += txn.amount
    return total


def totals_by_currency(amounts: Iterable[tuple[str, Decimal]]) -> dict[str, Decimal]:
    """Sum (currency, amount) pairs without ever mixing currencies."""
    totals: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for currency, amount in amounts:
        totals[currency] += amount
    return dict(totals)
