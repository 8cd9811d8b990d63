"""
Core Finance Models

These models define the strict schemas for all ledger data.
They are designed to:
1. Enforce type safety at runtime
2. Be immutable once handed out (frozen), so no caller can edit a
   committed entity in place
3. Be serializable as plain records for the persistence adapter

DESIGN DECISION: Drafts are deliberately lenient (an amount of zero or an
unknown currency still parses). The LedgerValidator reports those problems
as ValidationIssues, the same way extracted data is validated before it is
trusted. Committed entities are strict.
"""

import datetime as dt
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class AccountType(str, Enum):
    CASH = "cash"
    CARD = "card"
    SAVINGS = "savings"
    INVESTMENT = "investment"
    CRYPTO = "crypto"


class TransactionType(str, Enum):
    """
    Transaction kinds.

    A transfer always moves money between two accounts and never
    touches a budget.
    """
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class BudgetPeriod(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class DebtDirection(str, Enum):
    OWED_BY_ME = "owed_by_me"
    OWED_TO_ME = "owed_to_me"


class DebtStatus(str, Enum):
    OPEN = "open"
    SETTLED = "settled"


class GoalCategory(str, Enum):
    FINANCIAL = "financial"
    HEALTH = "health"
    EDUCATION = "education"
    PRODUCTIVITY = "productivity"
    PERSONAL = "personal"


class GoalFinanceMode(str, Enum):
    """Saving goals post income, spending goals post expenses."""
    SAVE = "save"
    SPEND = "spend"


class GoalEventType(str, Enum):
    GOAL_PROGRESS = "goal-progress"
    GOAL_COMPLETED = "goal-completed"


_ENTITY_CONFIG = ConfigDict(frozen=True, str_strip_whitespace=True)
_DRAFT_CONFIG = ConfigDict(str_strip_whitespace=True, extra="forbid")


# =============================================================================
# ENTITIES
# =============================================================================

class GoalEventKey(BaseModel):
    """
    Idempotency key for synthetic goal transactions.

    Stored on the transaction itself. At most one transaction may carry
    a given key.
    """
    model_config = ConfigDict(frozen=True)

    goal_id: UUID
    event_type: GoalEventType


class Account(BaseModel):
    """
    A money container.

    `balance` is a cache: opening_balance + adjustment + the sum of all
    postings on this account. Only reconciliation touches `adjustment`.
    """
    model_config = _ENTITY_CONFIG

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.CASH
    currency: str = Field(..., min_length=3, max_length=5)
    opening_balance: Decimal = Decimal("0")
    adjustment: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")
    is_hidden: bool = False
    color: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Transaction(BaseModel):
    """
    A posted transaction.

    For transfers `account_id` is the source and `to_account_id` the
    destination; for income/expense `to_account_id` is always None.
    """
    model_config = _ENTITY_CONFIG

    id: UUID = Field(default_factory=uuid4)
    type: TransactionType
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=5)
    category: Optional[str] = None
    description: str = ""
    account_id: UUID
    to_account_id: Optional[UUID] = None
    date: dt.date
    time: Optional[dt.time] = None

    # Cross-entity links
    goal_key: Optional[GoalEventKey] = None
    debt_id: Optional[UUID] = None
    budget_id: Optional[UUID] = None

    # Insertion order, used to break date ties
    sequence: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def validate_accounts(self) -> "Transaction":
        if self.type == TransactionType.TRANSFER:
            if self.to_account_id is None:
                raise ValueError("Transfer requires a destination account")
            if self.to_account_id == self.account_id:
                raise ValueError("Transfer source and destination must differ")
        elif self.to_account_id is not None:
            raise ValueError("Only transfers can have a destination account")
        return self

    @property
    def account_ids(self) -> tuple[UUID, ...]:
        if self.to_account_id is not None:
            return (self.account_id, self.to_account_id)
        return (self.account_id,)


class Budget(BaseModel):
    """A spending limit for one category over a repeating period."""
    model_config = _ENTITY_CONFIG

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., ge=0, description="Limit for one period")
    spent: Decimal = Field(default=Decimal("0"), ge=0)
    category: str = Field(..., min_length=1)
    period: BudgetPeriod = BudgetPeriod.MONTHLY
    currency: str = Field(..., min_length=3, max_length=5)
    color: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Debt(BaseModel):
    """
    Money owed between the user and another person.

    CRITICAL: settlement is a one-way transition. A settled debt keeps the
    id of the transaction that paid it, which is what makes a repeated
    settle a no-op.

    What has been paid is not stored here: it is the sum of the
    transactions linked through `debt_id`. The funding transaction (money
    lent out or borrowed in) is not linked that way, so it never counts as
    a repayment.
    """
    model_config = _ENTITY_CONFIG

    id: UUID = Field(default_factory=uuid4)
    direction: DebtDirection
    person: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=5)
    due_date: Optional[dt.date] = None
    description: str = ""
    account_id: Optional[UUID] = None
    status: DebtStatus = DebtStatus.OPEN
    settled_at: Optional[datetime] = None
    settlement_transaction_id: Optional[UUID] = None
    funding_transaction_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Goal(BaseModel):
    """A Planner goal. Read-only from the engine's point of view."""
    model_config = _ENTITY_CONFIG

    id: UUID = Field(default_factory=uuid4)
    title: str = Field(..., min_length=1)
    current: Decimal = Decimal("0")
    target: Decimal = Decimal("0")
    unit: Optional[str] = None
    category: GoalCategory = GoalCategory.PERSONAL
    finance_mode: Optional[GoalFinanceMode] = None

    @property
    def is_financial(self) -> bool:
        return self.category == GoalCategory.FINANCIAL


# =============================================================================
# DRAFTS AND PATCHES - what callers hand to store operations
# =============================================================================

class AccountDraft(BaseModel):
    model_config = _DRAFT_CONFIG

    name: str
    type: AccountType = AccountType.CASH
    currency: Optional[str] = None
    opening_balance: Decimal = Decimal("0")
    is_hidden: bool = False
    color: Optional[str] = None


class AccountPatch(BaseModel):
    """Editable account fields. Balance fields are not editable here."""
    model_config = _DRAFT_CONFIG

    name: Optional[str] = None
    type: Optional[AccountType] = None
    is_hidden: Optional[bool] = None
    color: Optional[str] = None


class TransactionDraft(BaseModel):
    """
    Input for create_transaction.

    When `currency` is omitted the account's currency is used; when `date`
    is omitted the store's clock supplies it.
    """
    model_config = _DRAFT_CONFIG

    type: TransactionType
    amount: Decimal
    currency: Optional[str] = None
    category: Optional[str] = None
    description: str = ""
    account_id: UUID
    to_account_id: Optional[UUID] = None
    date: Optional[dt.date] = Field(default=None, description="Defaults to the store's today")
    time: Optional[dt.time] = None
    budget_id: Optional[UUID] = None


class TransactionPatch(BaseModel):
    """
    Input for edit_transaction.

    Only fields that were explicitly set are applied.
    """
    model_config = _DRAFT_CONFIG

    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    account_id: Optional[UUID] = None
    to_account_id: Optional[UUID] = None
    date: Optional[dt.date] = None
    time: Optional[dt.time] = None
    budget_id: Optional[UUID] = None


class BudgetDraft(BaseModel):
    model_config = _DRAFT_CONFIG

    name: str
    amount: Decimal
    category: str
    period: BudgetPeriod = BudgetPeriod.MONTHLY
    currency: Optional[str] = None
    color: Optional[str] = None


class BudgetPatch(BaseModel):
    model_config = _DRAFT_CONFIG

    name: Optional[str] = None
    amount: Optional[Decimal] = None
    category: Optional[str] = None
    period: Optional[BudgetPeriod] = None
    color: Optional[str] = None


class DebtDraft(BaseModel):
    """
    Input for upsert_debt.

    With an `id` that already exists the debt is replaced (settled debts
    cannot be edited); otherwise a new debt is created.
    """
    model_config = _DRAFT_CONFIG

    id: Optional[UUID] = None
    direction: DebtDirection
    person: str
    amount: Decimal
    currency: Optional[str] = None
    due_date: Optional[dt.date] = None
    description: str = ""
    account_id: Optional[UUID] = None


# =============================================================================
# READ VIEWS
# =============================================================================

class BudgetStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    budget_id: UUID
    currency: str
    limit: Decimal
    spent: Decimal
    remaining: Decimal
    pct_used: Decimal = Field(description="spent / limit, 0 when the limit is 0")
    period_start: dt.date
    period_end: dt.date

    @property
    def is_exceeded(self) -> bool:
        return self.remaining < 0


class DebtPayment(BaseModel):
    """
    One repayment of a debt, read from the transaction that carries it.

    The linked transaction is the record; deleting it removes the payment
    and restores the remaining amount.
    """
    model_config = ConfigDict(frozen=True)

    transaction_id: UUID
    debt_id: UUID
    amount: Decimal
    currency: str
    date: dt.date
    account_id: UUID
    note: str = ""
    remaining_after: Decimal = Field(description="Debt remaining once this payment is applied")


class DebtTotals(BaseModel):
    """Open debt totals for one direction, grouped by currency."""
    model_config = ConfigDict(frozen=True)

    direction: DebtDirection
    totals: dict[str, Decimal] = Field(default_factory=dict)
    remaining: dict[str, Decimal] = Field(
        default_factory=dict,
        description="Principal minus repayments so far, per currency",
    )
    count: int = Field(default=0, ge=0)


class LedgerSnapshot(BaseModel):
    """
    Everything the persistence adapter stores.

    The transaction list is the source of truth. Account balances and
    budget `spent` values in here are caches and are re-derived on load.
    """

    revision: int = Field(default=0, ge=0)
    saved_at: datetime = Field(default_factory=utcnow)
    base_currency: str = "USD"
    next_sequence: int = Field(default=0, ge=0)
    accounts: list[Account] = Field(default_factory=list)
    transactions: list[Transaction] = Field(default_factory=list)
    budgets: list[Budget] = Field(default_factory=list)
    debts: list[Debt] = Field(default_factory=list)


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(..., description="Field with the issue")
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'invalid_value', 'not_found')",
    )
    message: str = Field(..., description="Human-readable description of the issue")
    severity: str = Field(..., pattern="^(error|warning|info)$")


class ValidationResult(BaseModel):
    """
    Result of the two-stage draft validation.

    Stage 1: Schema validation (amount, currency, shape)
    Stage 2: Semantic validation (references, currency consistency)
    """

    schema_valid: bool
    semantic_valid: bool
    issues: list[ValidationIssue] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.schema_valid and self.semantic_valid

    @property
    def has_errors(self) -> bool:
        """Check if there are any error-level issues."""
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def error_count(self) -> int:
        """Count error-level issues."""
        return sum(1 for issue in self.issues if issue.severity == "error")

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "warning"]
