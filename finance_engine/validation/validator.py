"""
Two-Stage Draft Validation

DESIGN DECISION: Validation happens in two distinct stages:

STAGE 1 - SCHEMA VALIDATION:
- Amount present and positive
- Currency code supported
- Transfer shape (destination present, different from source)
- This catches malformed drafts without looking at the ledger

STAGE 2 - SEMANTIC VALIDATION:
- Referenced accounts exist
- Transaction currency matches the account currency
- Dates far in the future, absurd amounts (warnings only)
- This needs the current ledger state

IMPORTANT: Validation NEVER silently fixes issues.
It reports them; the store turns errors into a ValidationError.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, Mapping, Optional
from uuid import UUID

from finance_engine.config import get_settings
from finance_engine.currency import CurrencyNormalizer, default_normalizer
from finance_engine.models.finance import (
    Account,
    BudgetDraft,
    DebtDraft,
    TransactionDraft,
    TransactionType,
    ValidationIssue,
    ValidationResult,
)


def _error(field: str, issue_type: str, message: str) -> ValidationIssue:
    return ValidationIssue(field=field, issue_type=issue_type, message=message, severity="error")


def _warning(field: str, issue_type: str, message: str) -> ValidationIssue:
    return ValidationIssue(field=field, issue_type=issue_type, message=message, severity="warning")


class LedgerValidator:
    """
    Validates drafts before the store stages them.

    Stage 1: Schema validation (no ledger access)
    Stage 2: Semantic validation (needs the accounts map)
    """

    def __init__(
        self,
        normalizer: Optional[CurrencyNormalizer] = None,
        clock: Optional[Callable[[], date]] = None,
    ):
        self._normalizer = normalizer or default_normalizer()
        self._clock = clock or date.today
        self._settings = get_settings().engine

    def _check_amount(self, field: str, amount: Optional[Decimal]) -> list[ValidationIssue]:
        if amount is None:
            return [_error(field, "missing", f"{field} is required")]
        if not amount.is_finite():
            return [_error(field, "invalid_value", f"{field} must be a finite number")]
        if amount <= 0:
            return [_error(field, "invalid_value", f"{field} must be greater than zero")]
        if amount > self._settings.max_transaction_amount:
            return [_warning(field, "suspicious_value", f"{field} {amount} is unusually large")]
        return []

    def _check_currency(self, currency: Optional[str]) -> list[ValidationIssue]:
        if currency is not None and not self._normalizer.is_supported(currency):
            return [_error("currency", "unsupported", f"Currency {currency!r} is not supported")]
        return []

    def _validate_schema(self, draft: TransactionDraft) -> tuple[bool, list[ValidationIssue]]:
        """
        Stage 1: Schema validation.

        Returns: (is_valid, list_of_issues)
        """
        issues = self._check_amount("amount", draft.amount)
        issues += self._check_currency(draft.currency)

        if draft.type == TransactionType.TRANSFER:
            if draft.to_account_id is None:
                issues.append(_error(
                    "to_account_id", "missing", "Transfer requires a destination account",
                ))
            elif draft.to_account_id == draft.account_id:
                issues.append(_error(
                    "to_account_id", "invalid_value", "Transfer source and destination must differ",
                ))
            if draft.budget_id is not None:
                issues.append(_error(
                    "budget_id", "invalid_value", "Transfers cannot be linked to a budget",
                ))
        elif draft.to_account_id is not None:
            issues.append(_error(
                "to_account_id", "invalid_value", "Only transfers can have a destination account",
            ))

        is_valid = not any(issue.severity == "error" for issue in issues)
        return is_valid, issues

    def _validate_semantic(
        self,
        draft: TransactionDraft,
        accounts: Mapping[UUID, Account],
    ) -> tuple[bool, list[ValidationIssue]]:
        """
        Stage 2: Semantic validation.

        Returns: (is_valid, list_of_issues)
        """
        issues = []

        referenced = [("account_id", draft.account_id)]
        if draft.type == TransactionType.TRANSFER and draft.to_account_id is not None:
            referenced.append(("to_account_id", draft.to_account_id))

        # Without an explicit currency the source account decides
        source = accounts.get(draft.account_id)
        currency = self._normalizer.normalize(
            draft.currency, source.currency if source is not None else None,
        )

        for field, account_id in referenced:
            account = accounts.get(account_id)
            if account is None:
                issues.append(_error(field, "not_found", f"Account not found: {account_id}"))
                continue
            if currency != account.currency:
                issues.append(_error(
                    "currency",
                    "currency_mismatch",
                    f"Transaction currency {currency} does not match "
                    f"account {account.name!r} ({account.currency})",
                ))

        max_future = self._clock() + timedelta(days=self._settings.future_date_tolerance_days)
        if draft.date is not None and draft.date > max_future:
            issues.append(_warning(
                "date", "future_date", f"Transaction date ({draft.date}) is in the future",
            ))

        is_valid = not any(issue.severity == "error" for issue in issues)
        return is_valid, issues

    def validate_transaction(
        self,
        draft: TransactionDraft,
        accounts: Mapping[UUID, Account],
    ) -> ValidationResult:
        """
        Run both stages.

        Stage 2 is skipped when stage 1 fails.
        """
        schema_valid, issues = self._validate_schema(draft)
        semantic_valid = False
        if schema_valid:
            semantic_valid, semantic_issues = self._validate_semantic(draft, accounts)
            issues = issues + semantic_issues
        return ValidationResult(
            schema_valid=schema_valid,
            semantic_valid=semantic_valid,
            issues=issues,
        )

    def validate_budget(self, draft: BudgetDraft) -> ValidationResult:
        issues = []
        if draft.amount is None or draft.amount < 0:
            issues.append(_error("amount", "invalid_value", "Budget limit cannot be negative"))
        if not draft.category:
            issues.append(_error("category", "missing", "Budget category is required"))
        issues += self._check_currency(draft.currency)
        valid = not any(issue.severity == "error" for issue in issues)
        return ValidationResult(schema_valid=valid, semantic_valid=valid, issues=issues)

    def validate_debt(self, draft: DebtDraft, accounts: Mapping[UUID, Account]) -> ValidationResult:
        issues = self._check_amount("amount", draft.amount)
        issues += self._check_currency(draft.currency)
        if not draft.person:
            issues.append(_error("person", "missing", "Debt counterparty is required"))
        schema_valid = not any(issue.severity == "error" for issue in issues)

        semantic_issues = []
        if draft.account_id is not None:
            account = accounts.get(draft.account_id)
            if account is None:
                semantic_issues.append(_error(
                    "account_id", "not_found", f"Account not found: {draft.account_id}",
                ))
            elif draft.currency and self._normalizer.normalize(draft.currency) != account.currency:
                semantic_issues.append(_error(
                    "currency",
                    "currency_mismatch",
                    f"Debt currency does not match account {account.name!r} ({account.currency})",
                ))
        semantic_valid = not semantic_issues
        return ValidationResult(
            schema_valid=schema_valid,
            semantic_valid=semantic_valid,
            issues=issues + semantic_issues,
        )
