"""
Ledger Store

The single owner of accounts, transactions, budgets and debts.

DESIGN DECISION: Every mutation runs against a private working copy of the
committed state. Only when the whole operation (including its cross-entity
side effects) has succeeded is the working copy turned into a new immutable
LedgerState and swapped in. A failure at any point simply discards the
working copy, so callers never observe a partial mutation.

CRITICAL: Balances and budget `spent` are caches. They are maintained
incrementally on commit and re-derived from the transaction log on load.

Concurrency:
- A re-entrant lock serializes writers
- Readers use the committed state reference and never wait for writers
- `atomic()` groups several operations into one commit
- Snapshots go to the SnapshotWriter in commit order
- Subscribers receive snapshots in revision order
"""

import copy
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Union
from uuid import UUID

import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from finance_engine.audit import AuditLogger
from finance_engine.config import EngineSettings, get_settings
from finance_engine.currency import CurrencyNormalizer, default_normalizer
from finance_engine.ledger.errors import (
    ConsistencyError,
    GoalClosedError,
    NotFoundError,
    ValidationError,
)
from finance_engine.ledger.postings import (
    ZERO,
    apply_postings,
    compute_spent,
    derive_balances,
    period_window,
    totals_by_currency,
)
from finance_engine.models.audit import AuditEventBuilder, AuditEventType
from finance_engine.models.finance import (
    Account,
    AccountDraft,
    AccountPatch,
    Budget,
    BudgetDraft,
    BudgetPatch,
    BudgetStatus,
    Debt,
    DebtDirection,
    DebtDraft,
    DebtPayment,
    DebtStatus,
    DebtTotals,
    GoalEventKey,
    GoalEventType,
    LedgerSnapshot,
    Transaction,
    TransactionDraft,
    TransactionPatch,
    TransactionType,
    ValidationIssue,
    ValidationResult,
    utcnow,
)
from finance_engine.services.storage.interface import LedgerStorageInterface, StorageError
from finance_engine.services.storage.writer import SnapshotWriter
from finance_engine.validation import LedgerValidator

logger = structlog.get_logger(__name__)

Subscriber = Callable[[LedgerSnapshot], None]


# =============================================================================
# STATE
# =============================================================================

class LoadResult(BaseModel):
    """Outcome of LedgerStore.load()."""

    loaded: bool = Field(default=False, description="A snapshot was found and applied")
    degraded: bool = Field(
        default=False,
        description="Persisted data was unreadable or inconsistent; in-memory state kept",
    )
    revision: int = 0
    transactions: int = 0
    repaired_caches: int = Field(
        default=0,
        description="Cached balances/spent values that disagreed with the log",
    )
    warnings: list[str] = Field(default_factory=list)


@dataclass(frozen=True)
class LedgerState:
    """One committed version of the ledger. Never mutated."""

    revision: int
    base_currency: str
    next_sequence: int
    accounts: Mapping[UUID, Account]
    transactions: Mapping[UUID, Transaction]
    budgets: Mapping[UUID, Budget]
    debts: Mapping[UUID, Debt]

    @classmethod
    def empty(cls, base_currency: str) -> "LedgerState":
        return cls(
            revision=0,
            base_currency=base_currency,
            next_sequence=0,
            accounts=MappingProxyType({}),
            transactions=MappingProxyType({}),
            budgets=MappingProxyType({}),
            debts=MappingProxyType({}),
        )


class _Staging:
    """Mutable working copy of a LedgerState."""

    def __init__(self, state: LedgerState):
        self.revision = state.revision + 1
        self.base_currency = state.base_currency
        self.next_sequence = state.next_sequence
        self.accounts = dict(state.accounts)
        self.transactions = dict(state.transactions)
        self.budgets = dict(state.budgets)
        self.debts = dict(state.debts)
        self.balances = {account_id: account.balance for account_id, account in state.accounts.items()}
        self.touched: list[Transaction] = []
        self.events: list = []
        self.changed = False

    def fork(self) -> "_Staging":
        child = copy.copy(self)
        for name in ("accounts", "transactions", "budgets", "debts", "balances"):
            setattr(child, name, dict(getattr(self, name)))
        child.touched = list(self.touched)
        child.events = list(self.events)
        return child

    def rollback_to(self, checkpoint: "_Staging") -> None:
        self.__dict__.update(checkpoint.__dict__)

    def put_transaction(self, txn: Transaction) -> None:
        """Insert or replace a transaction, reversing the previous version's postings."""
        previous = self.transactions.get(txn.id)
        if previous is not None:
            self.balances = apply_postings(self.balances, previous, -1)
            self.touched.append(previous)
        self.transactions[txn.id] = txn
        self.balances = apply_postings(self.balances, txn)
        self.touched.append(txn)
        self.changed = True

    def pop_transaction(self, transaction_id: UUID) -> Transaction:
        txn = self.transactions.pop(transaction_id)
        self.balances = apply_postings(self.balances, txn, -1)
        self.touched.append(txn)
        self.changed = True
        return txn


# =============================================================================
# HELPERS
# =============================================================================

def _issues_from_pydantic(exc: PydanticValidationError) -> list[ValidationIssue]:
    issues = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ())) or "draft"
        issues.append(ValidationIssue(
            field=field,
            issue_type=error.get("type", "invalid_value"),
            message=f"{field}: {error.get('msg', 'invalid value')}",
            severity="error",
        ))
    return issues


def _build(model_cls: type, data: Mapping[str, Any]):
    """Construct a model, turning pydantic errors into a ledger ValidationError."""
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError.from_issues(_issues_from_pydantic(e))


def _coerce(model_cls: type, value: Union[BaseModel, Mapping[str, Any]]):
    if isinstance(value, model_cls):
        return value
    if isinstance(value, BaseModel):
        value = value.model_dump(exclude_unset=True)
    return _build(model_cls, value)


def _goal_transaction(
    transactions: Mapping[UUID, Transaction],
    key: GoalEventKey,
) -> Optional[Transaction]:
    for txn in transactions.values():
        if txn.goal_key == key:
            return txn
    return None


def _by_sequence(transactions: Iterable[Transaction]) -> list[Transaction]:
    return sorted(transactions, key=lambda txn: txn.sequence)


def _debt_transactions(transactions: Iterable[Transaction], debt_id: UUID) -> list[Transaction]:
    """Repayments and settlement of one debt, oldest first."""
    return _by_sequence(txn for txn in transactions if txn.debt_id == debt_id)


def _positive_amount(value: Union[Decimal, int, float, str], field: str = "amount") -> Decimal:
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError.single(field, "invalid_value", f"Invalid {field}: {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError.single(field, "invalid_value", f"{field} must be greater than zero")
    return amount


def _structural_problems(
    accounts: Mapping[UUID, Account],
    transactions: Iterable[Transaction],
    debts: Mapping[UUID, Debt],
) -> list[str]:
    """Invariant violations that no cache rebuild can fix."""
    problems = []
    goal_keys = set()
    repaid: dict[UUID, Decimal] = {}
    transaction_ids = set()

    for txn in transactions:
        transaction_ids.add(txn.id)
        for account_id in txn.account_ids:
            account = accounts.get(account_id)
            if account is None:
                problems.append(f"Transaction {txn.id} references missing account {account_id}")
            elif account.currency != txn.currency:
                problems.append(
                    f"Transaction {txn.id} is in {txn.currency} but account "
                    f"{account_id} is in {account.currency}"
                )
        if txn.goal_key is not None:
            marker = (txn.goal_key.goal_id, txn.goal_key.event_type)
            if marker in goal_keys:
                problems.append(
                    f"More than one transaction for goal {txn.goal_key.goal_id} "
                    f"({txn.goal_key.event_type.value})"
                )
            goal_keys.add(marker)
        if txn.debt_id is not None:
            debt = debts.get(txn.debt_id)
            if debt is None:
                problems.append(f"Transaction {txn.id} references missing debt {txn.debt_id}")
            elif debt.currency != txn.currency:
                problems.append(
                    f"Transaction {txn.id} repays debt {debt.id} in {txn.currency}, "
                    f"debt is in {debt.currency}"
                )
            repaid[txn.debt_id] = repaid.get(txn.debt_id, ZERO) + txn.amount

    for debt in debts.values():
        if repaid.get(debt.id, ZERO) > debt.amount:
            problems.append(
                f"Debt {debt.id} repayments {repaid[debt.id]} exceed its amount {debt.amount}"
            )
        if debt.settlement_transaction_id is not None and debt.settlement_transaction_id not in transaction_ids:
            problems.append(
                f"Debt {debt.id} points at missing settlement transaction "
                f"{debt.settlement_transaction_id}"
            )
        if debt.funding_transaction_id is not None and debt.funding_transaction_id not in transaction_ids:
            problems.append(
                f"Debt {debt.id} points at missing funding transaction "
                f"{debt.funding_transaction_id}"
            )

    return problems


# =============================================================================
# STORE
# =============================================================================

class LedgerStore:
    """
    Owns the finance collections and keeps them mutually consistent.

    Usage:
        store = LedgerStore(storage=JsonFileLedgerStorage(path))
        store.load()
        account = store.create_account({"name": "Wallet", "currency": "USD"})
        store.create_transaction({
            "type": "expense", "amount": "50", "account_id": account.id,
        })
    """

    def __init__(
        self,
        storage: Optional[LedgerStorageInterface] = None,
        normalizer: Optional[CurrencyNormalizer] = None,
        validator: Optional[LedgerValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
        writer: Optional[SnapshotWriter] = None,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Callable[[], date]] = None,
    ):
        self._settings = settings or get_settings().engine
        self._normalizer = normalizer or default_normalizer()
        self._clock = clock or date.today
        self._validator = validator or LedgerValidator(self._normalizer, clock=self._clock)
        self._audit = audit_logger or AuditLogger()
        self._storage = storage
        if writer is None and storage is not None:
            writer = SnapshotWriter(
                storage,
                retry_attempts=get_settings().storage.retry_attempts,
                on_failure=self._on_save_failed,
            )
        self._writer = writer

        self._lock = threading.RLock()
        self._state = LedgerState.empty(self._normalizer.base_currency)
        self._working: Optional[_Staging] = None
        self._working_thread: Optional[int] = None
        self._subscribers: list[Subscriber] = []
        self._publish_lock = threading.RLock()
        self._published_revision = -1

    # -------------------------------------------------------------------------
    # Transactions and commit
    # -------------------------------------------------------------------------

    @contextmanager
    def _mutation(self) -> Iterator[_Staging]:
        with self._lock:
            work = self._working
            if work is not None:
                checkpoint = work.fork()
                try:
                    yield work
                except BaseException:
                    work.rollback_to(checkpoint)
                    raise
                return

            work = _Staging(self._state)
            self._working = work
            self._working_thread = threading.get_ident()
            try:
                yield work
            finally:
                self._working = None
                self._working_thread = None
            if not work.changed:
                return
            snapshot = self._commit(work)

        self._publish(work.events, snapshot)

    @contextmanager
    def atomic(self) -> Iterator["LedgerStore"]:
        """
        Group several operations into a single commit.

        If anything inside the block raises, none of the operations are
        committed.
        """
        with self._mutation():
            yield self

    def _view(self):
        """The working copy for the thread that owns it, else the committed state."""
        work = self._working
        if work is not None and self._working_thread == threading.get_ident():
            return work
        return self._state

    def _commit(self, work: _Staging) -> LedgerSnapshot:
        accounts = {}
        for account_id, account in work.accounts.items():
            balance = work.balances.get(account_id, ZERO)
            if balance != account.balance:
                account = account.model_copy(update={"balance": balance, "updated_at": utcnow()})
            accounts[account_id] = account

        today = self._clock()
        budgets = {}
        for budget_id, budget in work.budgets.items():
            if self._budget_touched(budget, work.touched):
                spent = compute_spent(
                    budget, work.transactions.values(), today, self._settings.week_start,
                )
                if spent != budget.spent:
                    budget = budget.model_copy(update={"spent": spent})
            budgets[budget_id] = budget

        state = LedgerState(
            revision=work.revision,
            base_currency=work.base_currency,
            next_sequence=work.next_sequence,
            accounts=MappingProxyType(accounts),
            transactions=MappingProxyType(dict(work.transactions)),
            budgets=MappingProxyType(budgets),
            debts=MappingProxyType(dict(work.debts)),
        )
        self._state = state
        snapshot = self._snapshot_of(state)
        if self._writer is not None:
            self._writer.submit(snapshot)
        return snapshot

    @staticmethod
    def _budget_touched(budget: Budget, touched: list[Transaction]) -> bool:
        return any(
            txn.type == TransactionType.EXPENSE and txn.currency == budget.currency
            for txn in touched
        )

    def _publish(self, events: list, snapshot: LedgerSnapshot, reset: bool = False) -> None:
        """
        Log a commit's audit events and hand its snapshot to subscribers.

        Subscribers only ever see increasing revisions: a snapshot that
        lost the race to a newer commit is skipped, since the newer one
        already contains it. `reset` is for load(), which may go back.
        """
        with self._publish_lock:
            for event in events:
                self._audit.log(event)
            if not reset and snapshot.revision <= self._published_revision:
                logger.debug(
                    "stale_snapshot_skipped",
                    revision=snapshot.revision,
                    published=self._published_revision,
                )
                return
            self._published_revision = snapshot.revision
            for callback in list(self._subscribers):
                try:
                    callback(snapshot)
                except Exception:
                    logger.exception("subscriber_failed", revision=snapshot.revision)

    def _on_save_failed(self, snapshot: LedgerSnapshot, error: Exception) -> None:
        self._audit.log(AuditEventBuilder.snapshot_save_failed(snapshot.revision, str(error)))

    @staticmethod
    def _snapshot_of(state: LedgerState) -> LedgerSnapshot:
        return LedgerSnapshot(
            revision=state.revision,
            base_currency=state.base_currency,
            next_sequence=state.next_sequence,
            accounts=list(state.accounts.values()),
            transactions=_by_sequence(state.transactions.values()),
            budgets=list(state.budgets.values()),
            debts=list(state.debts.values()),
        )

    def _require(self, collection: Mapping[UUID, Any], entity_id: UUID, entity_type: str):
        entity = collection.get(entity_id)
        if entity is None:
            raise NotFoundError(entity_type, entity_id)
        return entity

    def _raise_for(self, result: ValidationResult, operation: str) -> None:
        for warning in result.warnings:
            logger.warning(
                "validation_warning",
                operation=operation,
                field=warning.field,
                message=warning.message,
            )
        if result.has_errors:
            self._audit.log(AuditEventBuilder.validation_failed(
                operation, [issue.model_dump() for issue in result.issues],
            ))
            raise ValidationError.from_issues(result.issues)

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a callback run after every commit with the new snapshot.

        Returns a function that removes the registration.
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    @property
    def revision(self) -> int:
        return self._state.revision

    @property
    def base_currency(self) -> str:
        return self._view().base_currency

    @property
    def normalizer(self) -> CurrencyNormalizer:
        return self._normalizer.with_base(self.base_currency)

    def snapshot(self) -> LedgerSnapshot:
        return self._snapshot_of(self._state)

    def today(self) -> date:
        """The store's notion of today, for budget windows and default dates."""
        return self._clock()

    @staticmethod
    def _with_live_balance(view, account: Account) -> Account:
        # Inside atomic() balances are only folded into accounts on commit
        if isinstance(view, _Staging):
            return account.model_copy(update={"balance": view.balances.get(account.id, ZERO)})
        return account

    def list_accounts(self, include_hidden: bool = True) -> list[Account]:
        view = self._view()
        return [
            self._with_live_balance(view, account)
            for account in view.accounts.values()
            if include_hidden or not account.is_hidden
        ]

    def list_transactions(self) -> list[Transaction]:
        """All transactions in insertion order."""
        return _by_sequence(self._view().transactions.values())

    def list_budgets(self) -> list[Budget]:
        return list(self._view().budgets.values())

    def list_debts(self) -> list[Debt]:
        return list(self._view().debts.values())

    def get_account(self, account_id: UUID) -> Account:
        view = self._view()
        return self._with_live_balance(view, self._require(view.accounts, account_id, "account"))

    def get_transaction(self, transaction_id: UUID) -> Transaction:
        return self._require(self._view().transactions, transaction_id, "transaction")

    def get_budget(self, budget_id: UUID) -> Budget:
        return self._require(self._view().budgets, budget_id, "budget")

    def get_debt(self, debt_id: UUID) -> Debt:
        return self._require(self._view().debts, debt_id, "debt")

    def find_goal_transaction(self, key: GoalEventKey) -> Optional[Transaction]:
        return _goal_transaction(self._view().transactions, key)

    def get_account_balance(self, account_id: UUID) -> Decimal:
        return self.get_account(account_id).balance

    def get_budget_status(self, budget_id: UUID) -> BudgetStatus:
        """Spent/remaining for the period window containing today."""
        view = self._view()
        budget = self._require(view.budgets, budget_id, "budget")
        today = self._clock()
        start, end = period_window(budget.period, today, self._settings.week_start)
        spent = compute_spent(budget, view.transactions.values(), today, self._settings.week_start)
        pct_used = spent / budget.amount if budget.amount > 0 else ZERO
        return BudgetStatus(
            budget_id=budget.id,
            currency=budget.currency,
            limit=budget.amount,
            spent=spent,
            remaining=budget.amount - spent,
            pct_used=pct_used,
            period_start=start,
            period_end=end,
        )

    def get_debt_totals(self, direction: DebtDirection) -> DebtTotals:
        """Open debts in one direction, summed per currency."""
        direction = DebtDirection(direction)
        view = self._view()
        open_debts = [
            debt for debt in view.debts.values()
            if debt.direction == direction and debt.status == DebtStatus.OPEN
        ]
        return DebtTotals(
            direction=direction,
            totals=totals_by_currency((debt.currency, debt.amount) for debt in open_debts),
            remaining=totals_by_currency(
                (debt.currency, self._remaining(view, debt)) for debt in open_debts
            ),
            count=len(open_debts),
        )

    @staticmethod
    def _remaining(view, debt: Debt) -> Decimal:
        if debt.status == DebtStatus.SETTLED:
            return ZERO
        paid = sum((txn.amount for txn in view.transactions.values() if txn.debt_id == debt.id), ZERO)
        return debt.amount - paid

    def get_debt_remaining(self, debt_id: UUID) -> Decimal:
        """What is still owed: the amount less repayments, zero once settled."""
        view = self._view()
        return self._remaining(view, self._require(view.debts, debt_id, "debt"))

    def list_debt_payments(self, debt_id: UUID) -> list[DebtPayment]:
        """Repayments of one debt in the order they were posted."""
        view = self._view()
        debt = self._require(view.debts, debt_id, "debt")
        payments = []
        remaining = debt.amount
        for txn in _debt_transactions(view.transactions.values(), debt_id):
            remaining -= txn.amount
            payments.append(DebtPayment(
                transaction_id=txn.id,
                debt_id=debt_id,
                amount=txn.amount,
                currency=txn.currency,
                date=txn.date,
                account_id=txn.account_id,
                note=txn.description,
                remaining_after=remaining,
            ))
        return payments

    def resolve_account(
        self,
        account_id: Optional[UUID] = None,
        currency: Optional[str] = None,
    ) -> Account:
        """
        Pick the account a synthetic transaction posts to.

        Explicit id first, then the first visible account in `currency`,
        then the first visible account of any currency.
        """
        view = self._view()
        if account_id is not None:
            return self._require(view.accounts, account_id, "account")
        visible = [account for account in view.accounts.values() if not account.is_hidden]
        if currency is not None:
            for account in visible:
                if account.currency == currency:
                    return account
        if visible:
            return visible[0]
        raise NotFoundError("account")

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def _check_transaction(self, work: _Staging, draft: TransactionDraft, operation: str) -> str:
        """Validate a draft against the working state. Returns the currency to store."""
        self._require(work.accounts, draft.account_id, "account")
        if draft.to_account_id is not None:
            self._require(work.accounts, draft.to_account_id, "account")
        if draft.budget_id is not None:
            self._require(work.budgets, draft.budget_id, "budget")
        self._raise_for(self._validator.validate_transaction(draft, work.accounts), operation)
        return work.accounts[draft.account_id].currency

    def _stage_new_transaction(
        self,
        work: _Staging,
        draft: TransactionDraft,
        goal_key: Optional[GoalEventKey] = None,
        debt_id: Optional[UUID] = None,
    ) -> Transaction:
        if draft.date is None:
            draft = draft.model_copy(update={"date": self._clock()})
        currency = self._check_transaction(work, draft, "create_transaction")
        if goal_key is not None and _goal_transaction(work.transactions, goal_key) is not None:
            raise ValidationError.single(
                "goal_key", "duplicate",
                f"A transaction for goal {goal_key.goal_id} ({goal_key.event_type.value}) already exists",
            )
        txn = _build(Transaction, {
            **draft.model_dump(),
            "currency": currency,
            "goal_key": goal_key,
            "debt_id": debt_id,
            "sequence": work.next_sequence,
        })
        work.next_sequence += 1
        work.put_transaction(txn)
        work.events.append(AuditEventBuilder.transaction_changed(
            AuditEventType.TRANSACTION_CREATED,
            txn.id, txn.type.value, str(txn.amount), txn.currency, work.revision,
        ))
        return txn

    def create_transaction(
        self,
        draft: Union[TransactionDraft, Mapping[str, Any]],
        goal_key: Optional[GoalEventKey] = None,
    ) -> Transaction:
        """
        Post a new transaction and update balances and budgets.

        Raises:
            ValidationError: bad amount, unsupported or mismatched currency
            NotFoundError: an account or budget does not exist
        """
        draft = _coerce(TransactionDraft, draft)
        with self._mutation() as work:
            txn = self._stage_new_transaction(work, draft, goal_key=goal_key)
        return txn

    def edit_transaction(
        self,
        transaction_id: UUID,
        patch: Union[TransactionPatch, Mapping[str, Any]],
    ) -> Transaction:
        """
        Replace a transaction's fields.

        The old postings are reversed and the new ones applied in the same
        commit, so the result equals having created only the new version.
        Links (goal key, debt) are kept.
        """
        patch = _coerce(TransactionPatch, patch)
        updates = patch.model_dump(exclude_unset=True)
        with self._mutation() as work:
            old = self._require(work.transactions, transaction_id, "transaction")
            fields = {name: getattr(old, name) for name in TransactionDraft.model_fields}
            # Moving to another account adopts that account's currency
            if updates.get("account_id", old.account_id) != old.account_id and "currency" not in updates:
                fields["currency"] = None
            fields.update(updates)
            if fields["date"] is None:
                fields["date"] = old.date
            if fields["type"] != TransactionType.TRANSFER and "to_account_id" not in updates:
                fields["to_account_id"] = None

            draft = _build(TransactionDraft, fields)
            currency = self._check_transaction(work, draft, "edit_transaction")
            updated = _build(Transaction, {
                **old.model_dump(),
                **draft.model_dump(),
                "currency": currency,
                "updated_at": utcnow(),
            })
            work.put_transaction(updated)
            if updated.debt_id is not None:
                self._reconcile_debt(work, updated.debt_id, updated.id)
            work.events.append(AuditEventBuilder.transaction_changed(
                AuditEventType.TRANSACTION_EDITED,
                updated.id, updated.type.value, str(updated.amount), updated.currency, work.revision,
            ))
        return updated

    def _stage_delete(self, work: _Staging, transaction_id: UUID) -> Transaction:
        self._require(work.transactions, transaction_id, "transaction")
        txn = work.pop_transaction(transaction_id)
        if txn.debt_id is not None:
            self._reconcile_debt(work, txn.debt_id, txn.id)
        for debt in list(work.debts.values()):
            if debt.funding_transaction_id == txn.id:
                work.debts[debt.id] = debt.model_copy(update={
                    "funding_transaction_id": None,
                    "updated_at": utcnow(),
                })
        work.events.append(AuditEventBuilder.transaction_changed(
            AuditEventType.TRANSACTION_DELETED,
            txn.id, txn.type.value, str(txn.amount), txn.currency, work.revision,
        ))
        return txn

    def delete_transaction(self, transaction_id: UUID) -> Transaction:
        """
        Remove a transaction and reverse its postings.

        Returns the removed record so it can be handed to
        restore_transaction() for undo. Removing any repayment of a debt
        that was paid off reopens the debt.
        """
        with self._mutation() as work:
            txn = self._stage_delete(work, transaction_id)
        return txn

    def restore_transaction(self, transaction: Transaction) -> Transaction:
        """
        Re-insert a previously deleted transaction with its original id and order.

        Restoring a goal completion removes that goal's progress transaction
        in the same commit, as recording the completion would.
        """
        with self._mutation() as work:
            if transaction.id in work.transactions:
                raise ValidationError.single(
                    "id", "duplicate", f"Transaction already exists: {transaction.id}",
                )
            for account_id in transaction.account_ids:
                account = self._require(work.accounts, account_id, "account")
                if account.currency != transaction.currency:
                    raise ValidationError.single(
                        "currency", "currency_mismatch",
                        f"Transaction currency {transaction.currency} does not match "
                        f"account {account.name!r} ({account.currency})",
                    )

            restored = transaction
            if restored.budget_id is not None and restored.budget_id not in work.budgets:
                restored = restored.model_copy(update={"budget_id": None})

            key = restored.goal_key
            if key is not None:
                if _goal_transaction(work.transactions, key) is not None:
                    raise ValidationError.single(
                        "goal_key", "duplicate",
                        f"A transaction for goal {key.goal_id} ({key.event_type.value}) already exists",
                    )
                completed = GoalEventKey(goal_id=key.goal_id, event_type=GoalEventType.GOAL_COMPLETED)
                progress = GoalEventKey(goal_id=key.goal_id, event_type=GoalEventType.GOAL_PROGRESS)
                if key.event_type == GoalEventType.GOAL_PROGRESS and _goal_transaction(work.transactions, completed):
                    raise GoalClosedError.single(
                        "goal_key", "goal_closed", f"Goal {key.goal_id} is already completed",
                    )
                superseded = _goal_transaction(work.transactions, progress)
                if key.event_type == GoalEventType.GOAL_COMPLETED and superseded is not None:
                    self._stage_delete(work, superseded.id)

            if restored.debt_id is not None:
                debt = self._require(work.debts, restored.debt_id, "debt")
                if debt.status == DebtStatus.SETTLED and debt.settlement_transaction_id is None:
                    raise ValidationError.single(
                        "debt_id", "debt_settled", f"Debt {debt.id} was settled without a transaction",
                    )

            work.next_sequence = max(work.next_sequence, restored.sequence + 1)
            work.put_transaction(restored)
            if restored.debt_id is not None:
                self._reconcile_debt(work, restored.debt_id, restored.id)
            work.events.append(AuditEventBuilder.transaction_changed(
                AuditEventType.TRANSACTION_RESTORED,
                restored.id, restored.type.value, str(restored.amount), restored.currency, work.revision,
            ))
        return restored

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    def create_account(self, draft: Union[AccountDraft, Mapping[str, Any]]) -> Account:
        draft = _coerce(AccountDraft, draft)
        with self._mutation() as work:
            if draft.currency is not None and not self._normalizer.is_supported(draft.currency):
                raise ValidationError.single(
                    "currency", "unsupported", f"Currency {draft.currency!r} is not supported",
                )
            if not draft.opening_balance.is_finite():
                raise ValidationError.single(
                    "opening_balance", "invalid_value", "Opening balance must be a finite number",
                )
            currency = self._normalizer.normalize(draft.currency, work.base_currency)
            account = _build(Account, {
                **draft.model_dump(),
                "currency": currency,
                "balance": draft.opening_balance,
            })
            work.accounts[account.id] = account
            work.balances[account.id] = account.balance
            work.changed = True
            work.events.append(AuditEventBuilder.entity_changed(
                AuditEventType.ACCOUNT_CREATED, "account", account.id, work.revision,
                {"name": account.name, "currency": currency},
            ))
        return account

    def update_account(
        self,
        account_id: UUID,
        patch: Union[AccountPatch, Mapping[str, Any]],
    ) -> Account:
        """Rename, retype, recolor or hide an account. Currency and balances are fixed."""
        patch = _coerce(AccountPatch, patch)
        updates = patch.model_dump(exclude_unset=True)
        with self._mutation() as work:
            account = self._require(work.accounts, account_id, "account")
            updated = _build(Account, {**account.model_dump(), **updates, "updated_at": utcnow()})
            work.accounts[account_id] = updated
            work.changed = True
            work.events.append(AuditEventBuilder.entity_changed(
                AuditEventType.ACCOUNT_UPDATED, "account", account_id, work.revision,
                {"fields": sorted(updates)},
            ))
        return updated

    def hide_account(self, account_id: UUID, hidden: bool = True) -> Account:
        return self.update_account(account_id, {"is_hidden": hidden})

    def reconcile_account(self, account_id: UUID, actual_balance: Decimal) -> Account:
        """
        Align an account with a real-world balance.

        The difference goes into `adjustment`; no transaction is created.
        """
        actual_balance = Decimal(str(actual_balance))
        if not actual_balance.is_finite():
            raise ValidationError.single(
                "actual_balance", "invalid_value", "Balance must be a finite number",
            )
        with self._mutation() as work:
            account = self._require(work.accounts, account_id, "account")
            difference = actual_balance - work.balances.get(account_id, ZERO)
            if difference == 0:
                return account
            account = account.model_copy(update={
                "adjustment": account.adjustment + difference,
                "updated_at": utcnow(),
            })
            work.accounts[account_id] = account
            work.balances[account_id] = actual_balance
            work.changed = True
            work.events.append(AuditEventBuilder.entity_changed(
                AuditEventType.ACCOUNT_RECONCILED, "account", account_id, work.revision,
                {"difference": str(difference), "actual_balance": str(actual_balance)},
            ))
        return self.get_account(account_id)

    def delete_account(self, account_id: UUID, cascade: bool = False) -> Account:
        """
        Delete an account.

        Refused while transactions reference it, unless `cascade` is set,
        in which case those transactions are deleted (and reversed) too.
        Debts funded from the account lose their funding link.
        """
        with self._mutation() as work:
            account = self._require(work.accounts, account_id, "account")
            linked = [
                txn.id for txn in _by_sequence(work.transactions.values())
                if account_id in txn.account_ids
            ]
            if linked and not cascade:
                raise ValidationError.single(
                    "account_id", "in_use",
                    f"Account {account.name!r} has {len(linked)} transaction(s); "
                    "hide it or delete with cascade",
                )
            for transaction_id in linked:
                self._stage_delete(work, transaction_id)
            for debt in list(work.debts.values()):
                if debt.account_id == account_id:
                    work.debts[debt.id] = debt.model_copy(update={"account_id": None})
            del work.accounts[account_id]
            work.balances.pop(account_id, None)
            work.changed = True
            work.events.append(AuditEventBuilder.entity_changed(
                AuditEventType.ACCOUNT_DELETED, "account", account_id, work.revision,
                {"cascaded_transactions": len(linked)},
            ))
        return account

    # -------------------------------------------------------------------------
    # Budgets
    # -------------------------------------------------------------------------

    def _spent_now(self, work: _Staging, budget: Budget) -> Decimal:
        return compute_spent(budget, work.transactions.values(), self._clock(), self._settings.week_start)

    def create_budget(self, draft: Union[BudgetDraft, Mapping[str, Any]]) -> Budget:
        draft = _coerce(BudgetDraft, draft)
        self._raise_for(self._validator.validate_budget(draft), "create_budget")
        with self._mutation() as work:
            currency = self._normalizer.normalize(draft.currency, work.base_currency)
            budget = _build(Budget, {**draft.model_dump(), "currency": currency})
            budget = budget.model_copy(update={"spent": self._spent_now(work, budget)})
            work.budgets[budget.id] = budget
            work.changed = True
            work.events.append(AuditEventBuilder.entity_changed(
                AuditEventType.BUDGET_CREATED, "budget", budget.id, work.revision,
                {"category": budget.category, "currency": currency},
            ))
        return budget

    def update_budget(
        self,
        budget_id: UUID,
        patch: Union[BudgetPatch, Mapping[str, Any]],
    ) -> Budget:
        patch = _coerce(BudgetPatch, patch)
        updates = patch.model_dump(exclude_unset=True)
        with self._mutation() as work:
            budget = self._require(work.budgets, budget_id, "budget")
            updated = _build(Budget, {**budget.model_dump(), **updates, "updated_at": utcnow()})
            updated = updated.model_copy(update={"spent": self._spent_now(work, updated)})
            work.budgets[budget_id] = updated
            work.changed = True
            work.events.append(AuditEventBuilder.entity_changed(
                AuditEventType.BUDGET_UPDATED, "budget", budget_id, work.revision,
                {"fields": sorted(updates)},
            ))
        return updated

    def delete_budget(self, budget_id: UUID) -> Budget:
        """Delete a budget. Transactions linked to it fall back to category matching."""
        with self._mutation() as work:
            budget = self._require(work.budgets, budget_id, "budget")
            for txn in list(work.transactions.values()):
                if txn.budget_id == budget_id:
                    work.put_transaction(txn.model_copy(update={"budget_id": None}))
            del work.budgets[budget_id]
            work.changed = True
            work.events.append(AuditEventBuilder.entity_changed(
                AuditEventType.BUDGET_DELETED, "budget", budget_id, work.revision,
            ))
        return budget

    def recompute_budget_aggregate(self, budget_id: UUID) -> Budget:
        """Rescan the transaction log and reset the budget's `spent`."""
        with self._mutation() as work:
            budget = self._require(work.budgets, budget_id, "budget")
            spent = self._spent_now(work, budget)
            if spent == budget.spent:
                return budget
            logger.info(
                "budget_spent_corrected",
                budget_id=str(budget_id),
                cached=str(budget.spent),
                derived=str(spent),
            )
            budget = budget.model_copy(update={"spent": spent})
            work.budgets[budget_id] = budget
            work.changed = True
            work.events.append(AuditEventBuilder.entity_changed(
                AuditEventType.BUDGET_RECOMPUTED, "budget", budget_id, work.revision,
                {"spent": str(spent)},
            ))
        return budget

    # -------------------------------------------------------------------------
    # Debts
    # -------------------------------------------------------------------------

    @staticmethod
    def _repayment_type(debt: Debt) -> TransactionType:
        """Money I owed leaves an account as an expense; money owed to me arrives as income."""
        if debt.direction == DebtDirection.OWED_BY_ME:
            return TransactionType.EXPENSE
        return TransactionType.INCOME

    def _debt_draft(
        self,
        debt: Debt,
        transaction_type: TransactionType,
        amount: Decimal,
        description: str,
        account_id: Optional[UUID] = None,
        on: Optional[date] = None,
    ) -> TransactionDraft:
        account = self.resolve_account(account_id or debt.account_id, debt.currency)
        return _build(TransactionDraft, {
            "type": transaction_type,
            "amount": amount,
            "currency": debt.currency,
            "category": self._settings.debt_category,
            "description": description,
            "account_id": account.id,
            "date": on or self._clock(),
        })

    def _mark_settled(self, work: _Staging, debt: Debt, transaction_id: Optional[UUID]) -> Debt:
        now = utcnow()
        debt = debt.model_copy(update={
            "status": DebtStatus.SETTLED,
            "settled_at": now,
            "settlement_transaction_id": transaction_id,
            "updated_at": now,
        })
        work.debts[debt.id] = debt
        work.changed = True
        work.events.append(AuditEventBuilder.debt_settled(
            debt.id, debt.person, transaction_id, work.revision,
        ))
        return debt

    def _reconcile_debt(self, work: _Staging, debt_id: UUID, transaction_id: Optional[UUID]) -> None:
        """
        Bring a debt's status in line with the transactions linked to it.

        Paid in full settles an open debt. Falling short again reopens a debt
        that was settled by payment; a debt settled by hand stays settled.

        Raises:
            ValidationError: repayments exceed the debt, or are in another currency
        """
        debt = work.debts.get(debt_id)
        if debt is None:
            return
        linked = _debt_transactions(work.transactions.values(), debt_id)
        for txn in linked:
            if txn.currency != debt.currency:
                raise ValidationError.single(
                    "currency", "currency_mismatch",
                    f"Debt with {debt.person!r} is in {debt.currency}; "
                    f"a {txn.currency} transaction cannot repay it",
                )
        paid = sum((txn.amount for txn in linked), ZERO)
        if paid > debt.amount:
            raise ValidationError.single(
                "amount", "overpayment",
                f"Repayments of {paid} exceed the debt of {debt.amount} {debt.currency}",
            )

        if debt.status == DebtStatus.OPEN and linked and paid == debt.amount:
            settled_by = transaction_id if transaction_id in work.transactions else linked[-1].id
            self._mark_settled(work, debt, settled_by)
        elif (
            debt.status == DebtStatus.SETTLED
            and debt.settlement_transaction_id is not None
            and paid < debt.amount
        ):
            work.debts[debt.id] = debt.model_copy(update={
                "status": DebtStatus.OPEN,
                "settled_at": None,
                "settlement_transaction_id": None,
                "updated_at": utcnow(),
            })
            work.changed = True
            work.events.append(AuditEventBuilder.entity_changed(
                AuditEventType.DEBT_REOPENED, "debt", debt.id, work.revision,
                {"transaction_id": str(transaction_id), "remaining": str(debt.amount - paid)},
            ))

    def upsert_debt(
        self,
        draft: Union[DebtDraft, Mapping[str, Any]],
        post_funding: bool = False,
    ) -> Debt:
        """
        Create a debt, or replace an open one when the draft carries its id.

        Settled debts cannot be edited, and an edit may not bring the amount
        below what has already been repaid. With `post_funding` a new debt
        also posts the money that changed hands when it was made (lending is
        an expense, borrowing is income). That funding transaction is not a
        repayment.
        """
        draft = _coerce(DebtDraft, draft)
        with self._mutation() as work:
            existing = work.debts.get(draft.id) if draft.id is not None else None
            if existing is not None and existing.status == DebtStatus.SETTLED:
                raise ValidationError.single(
                    "id", "debt_settled", f"Debt {existing.id} is settled and cannot be edited",
                )
            account = None
            if draft.account_id is not None:
                account = self._require(work.accounts, draft.account_id, "account")
            self._raise_for(self._validator.validate_debt(draft, work.accounts), "upsert_debt")

            fallback = account.currency if account is not None else work.base_currency
            data = draft.model_dump(exclude_none=True)
            data["currency"] = self._normalizer.normalize(draft.currency, fallback)
            if existing is not None:
                data["created_at"] = existing.created_at
                data["updated_at"] = utcnow()
                data["funding_transaction_id"] = existing.funding_transaction_id
            debt = _build(Debt, data)
            work.debts[debt.id] = debt
            work.changed = True

            if existing is not None:
                self._reconcile_debt(work, debt.id, None)
            elif post_funding:
                funding_type = (
                    TransactionType.EXPENSE
                    if debt.direction == DebtDirection.OWED_TO_ME
                    else TransactionType.INCOME
                )
                funding = self._stage_new_transaction(work, self._debt_draft(
                    debt, funding_type, debt.amount, debt.description or f"Debt: {debt.person}",
                ))
                work.debts[debt.id] = debt.model_copy(update={"funding_transaction_id": funding.id})

            debt = work.debts[debt.id]
            work.events.append(AuditEventBuilder.entity_changed(
                AuditEventType.DEBT_UPSERTED, "debt", debt.id, work.revision,
                {"direction": debt.direction.value, "amount": str(debt.amount), "currency": debt.currency},
            ))
        return debt

    def add_debt_payment(
        self,
        debt_id: UUID,
        amount: Union[Decimal, int, float, str],
        account_id: Optional[UUID] = None,
        date: Optional[date] = None,
        note: Optional[str] = None,
    ) -> DebtPayment:
        """
        Record a partial repayment of an open debt.

        Posts one transaction linked to the debt. The payment that brings
        what remains to zero settles the debt in the same commit.

        Raises:
            ValidationError: amount not positive or larger than what remains,
                debt already settled
            NotFoundError: debt or account missing, or no account exists
        """
        amount = _positive_amount(amount)
        with self._mutation() as work:
            debt = self._require(work.debts, debt_id, "debt")
            if debt.status == DebtStatus.SETTLED:
                raise ValidationError.single(
                    "debt_id", "debt_settled", f"Debt {debt_id} is already settled",
                )
            draft = self._debt_draft(
                debt,
                self._repayment_type(debt),
                amount,
                note or f"Debt payment: {debt.person}",
                account_id,
                date,
            )
            txn = self._stage_new_transaction(work, draft, debt_id=debt.id)
            self._reconcile_debt(work, debt.id, txn.id)

            remaining = debt.amount - sum(
                (linked.amount for linked in _debt_transactions(work.transactions.values(), debt.id)),
                ZERO,
            )
            work.events.append(AuditEventBuilder.entity_changed(
                AuditEventType.DEBT_PAYMENT_ADDED, "debt", debt.id, work.revision,
                {"transaction_id": str(txn.id), "amount": str(amount), "remaining": str(remaining)},
            ))
        return DebtPayment(
            transaction_id=txn.id,
            debt_id=debt.id,
            amount=txn.amount,
            currency=txn.currency,
            date=txn.date,
            account_id=txn.account_id,
            note=txn.description,
            remaining_after=remaining,
        )

    def settle_debt(
        self,
        debt_id: UUID,
        post_transaction: bool = False,
        account_id: Optional[UUID] = None,
    ) -> Debt:
        """
        Mark a debt settled, optionally posting what remains of it.

        Settling an already settled debt returns it unchanged and posts
        nothing.
        """
        with self._mutation() as work:
            debt = self._require(work.debts, debt_id, "debt")
            if debt.status == DebtStatus.SETTLED:
                logger.debug("debt_already_settled", debt_id=str(debt_id))
                return debt

            txn = None
            remaining = self._remaining(work, debt)
            if post_transaction and remaining > 0:
                draft = self._debt_draft(
                    debt,
                    self._repayment_type(debt),
                    remaining,
                    f"Debt settlement: {debt.person}",
                    account_id,
                )
                txn = self._stage_new_transaction(work, draft, debt_id=debt.id)
            debt = self._mark_settled(work, debt, txn.id if txn is not None else None)
        return debt

    def delete_debt(self, debt_id: UUID, cascade: bool = False) -> Debt:
        """
        Delete a debt.

        Refused while repayments are linked to it, unless `cascade` is set,
        in which case the repayments and the funding transaction are deleted
        (and reversed) too.
        """
        with self._mutation() as work:
            debt = self._require(work.debts, debt_id, "debt")
            linked = [txn.id for txn in _debt_transactions(work.transactions.values(), debt_id)]
            if linked and not cascade:
                raise ValidationError.single(
                    "debt_id", "in_use",
                    f"Debt {debt_id} has {len(linked)} linked transaction(s); "
                    "delete them first or delete with cascade",
                )
            if cascade and debt.funding_transaction_id in work.transactions:
                linked.append(debt.funding_transaction_id)
            del work.debts[debt_id]
            for transaction_id in linked:
                self._stage_delete(work, transaction_id)
            work.changed = True
            work.events.append(AuditEventBuilder.entity_changed(
                AuditEventType.DEBT_DELETED, "debt", debt_id, work.revision,
                {"cascaded_transactions": len(linked)},
            ))
        return debt

    # -------------------------------------------------------------------------
    # Preferences
    # -------------------------------------------------------------------------

    def set_base_currency(self, code: str) -> str:
        """Change the currency used when a draft carries none. Existing records are untouched."""
        if not self._normalizer.is_supported(code):
            raise ValidationError.single(
                "base_currency", "unsupported", f"Currency {code!r} is not supported",
            )
        code = self._normalizer.normalize(code)
        with self._mutation() as work:
            previous = work.base_currency
            if previous == code:
                return code
            work.base_currency = code
            work.changed = True
            work.events.append(AuditEventBuilder.base_currency_changed(previous, code, work.revision))
        return code

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _rebuild(self, snapshot: LedgerSnapshot) -> tuple[LedgerState, int]:
        """Turn a persisted snapshot into a state, re-deriving every cache."""
        accounts = {account.id: account for account in snapshot.accounts}
        transactions = _by_sequence(snapshot.transactions)
        debts = {debt.id: debt for debt in snapshot.debts}

        problems = _structural_problems(accounts, transactions, debts)
        if problems:
            raise ConsistencyError(problems)

        repaired = 0
        balances = derive_balances(accounts.values(), transactions)
        for account_id, account in accounts.items():
            if account.balance != balances[account_id]:
                logger.warning(
                    "balance_cache_mismatch",
                    account_id=str(account_id),
                    cached=str(account.balance),
                    derived=str(balances[account_id]),
                )
                accounts[account_id] = account.model_copy(update={"balance": balances[account_id]})
                repaired += 1

        today = self._clock()
        budgets = {}
        for budget in snapshot.budgets:
            spent = compute_spent(budget, transactions, today, self._settings.week_start)
            if spent != budget.spent:
                logger.info(
                    "budget_cache_mismatch",
                    budget_id=str(budget.id),
                    cached=str(budget.spent),
                    derived=str(spent),
                )
                budget = budget.model_copy(update={"spent": spent})
                repaired += 1
            budgets[budget.id] = budget

        next_sequence = max(
            snapshot.next_sequence,
            max((txn.sequence for txn in transactions), default=-1) + 1,
        )
        state = LedgerState(
            revision=snapshot.revision,
            base_currency=self._normalizer.normalize(snapshot.base_currency),
            next_sequence=next_sequence,
            accounts=MappingProxyType(accounts),
            transactions=MappingProxyType({txn.id: txn for txn in transactions}),
            budgets=MappingProxyType(budgets),
            debts=MappingProxyType(debts),
        )
        return state, repaired

    def _degraded(self, problems: list[str]) -> LoadResult:
        logger.warning("ledger_load_degraded", problems=problems)
        self._audit.log(AuditEventBuilder.consistency_warning(problems))
        return LoadResult(degraded=True, revision=self._state.revision, warnings=problems)

    def load(self) -> LoadResult:
        """
        Replace the in-memory state with the persisted snapshot.

        Unreadable or inconsistent data never replaces the current state;
        it produces a degraded result instead.
        """
        if self._storage is None:
            return LoadResult(revision=self._state.revision)

        try:
            snapshot = self._storage.load()
        except StorageError as e:
            return self._degraded([str(e)])
        if snapshot is None:
            return LoadResult(revision=self._state.revision)

        try:
            state, repaired = self._rebuild(snapshot)
        except ConsistencyError as e:
            return self._degraded(e.problems)

        with self._lock:
            self._state = state
        self._publish(
            [AuditEventBuilder.snapshot_loaded(state.revision, len(state.transactions), repaired)],
            self._snapshot_of(state),
            reset=True,
        )

        return LoadResult(
            loaded=True,
            revision=state.revision,
            transactions=len(state.transactions),
            repaired_caches=repaired,
        )

    def verify(self) -> None:
        """
        Check the committed state against the transaction log.

        Raises:
            ConsistencyError: listing every broken invariant
        """
        state = self._state
        transactions = _by_sequence(state.transactions.values())
        problems = _structural_problems(state.accounts, transactions, state.debts)

        balances = derive_balances(state.accounts.values(), transactions)
        for account in state.accounts.values():
            if balances[account.id] != account.balance:
                problems.append(
                    f"Account {account.id} balance {account.balance} != derived {balances[account.id]}"
                )

        today = self._clock()
        for budget in state.budgets.values():
            spent = compute_spent(budget, transactions, today, self._settings.week_start)
            if spent != budget.spent:
                problems.append(f"Budget {budget.id} spent {budget.spent} != derived {spent}")

        if problems:
            raise ConsistencyError(problems)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued snapshot writes. True when nothing is pending."""
        if self._writer is None:
            return True
        return self._writer.flush(timeout)

    def close(self) -> None:
        if self._writer is not None:
            self._writer.flush()
            self._writer.close()
