"""
Data Models Package

This package contains all Pydantic models used by the finance engine.
All data flowing through the engine must conform to these schemas.
"""

from finance_engine.models.finance import (
    Account,
    AccountDraft,
    AccountPatch,
    AccountType,
    Budget,
    BudgetDraft,
    BudgetPatch,
    BudgetPeriod,
    BudgetStatus,
    Debt,
    DebtDirection,
    DebtDraft,
    DebtPayment,
    DebtStatus,
    DebtTotals,
    Goal,
    GoalCategory,
    GoalEventKey,
    GoalEventType,
    GoalFinanceMode,
    LedgerSnapshot,
    Transaction,
    TransactionDraft,
    TransactionPatch,
    TransactionType,
    ValidationIssue,
    ValidationResult,
)
from finance_engine.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from finance_engine.models.intents import (
    CustomIntent,
    DebtGivenIntent,
    ExpenseIntent,
    IncomeIntent,
    ParsedIntent,
    TransferIntent,
    parse_intent,
)

__all__ = [
    # Ledger entities
    "Account",
    "AccountType",
    "Budget",
    "BudgetPeriod",
    "Debt",
    "DebtDirection",
    "DebtStatus",
    "Goal",
    "GoalCategory",
    "GoalEventKey",
    "GoalEventType",
    "GoalFinanceMode",
    "LedgerSnapshot",
    "Transaction",
    "TransactionType",
    # Drafts and patches
    "AccountDraft",
    "AccountPatch",
    "BudgetDraft",
    "BudgetPatch",
    "DebtDraft",
    "TransactionDraft",
    "TransactionPatch",
    # Read views
    "BudgetStatus",
    "DebtPayment",
    "DebtTotals",
    # Validation
    "ValidationIssue",
    "ValidationResult",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
    # Parsed intents
    "CustomIntent",
    "DebtGivenIntent",
    "ExpenseIntent",
    "IncomeIntent",
    "ParsedIntent",
    "TransferIntent",
    "parse_intent",
]
