"""
Ledger Exceptions

Every store operation either commits its full effect or raises one of
these and leaves the committed state untouched.
"""

from typing import Iterable, Optional
from uuid import UUID

from finance_engine.models.finance import ValidationIssue


class LedgerError(Exception):
    """Base exception for ledger operations."""
    pass


class ValidationError(LedgerError):
    """Bad amount, unsupported currency, malformed draft."""

    def __init__(self, message: str, issues: Optional[Iterable[ValidationIssue]] = None):
        super().__init__(message)
        self.issues = list(issues or [])

    @classmethod
    def from_issues(cls, issues: list[ValidationIssue]) -> "ValidationError":
        errors = [issue for issue in issues if issue.severity == "error"]
        message = "; ".join(issue.message for issue in errors) or "Invalid input"
        return cls(message, issues)

    @classmethod
    def single(cls, field: str, issue_type: str, message: str) -> "ValidationError":
        return cls(
            message,
            [ValidationIssue(field=field, issue_type=issue_type, message=message, severity="error")],
        )


class GoalClosedError(ValidationError):
    """A progress event arrived for a goal whose completion is already recorded."""
    pass


class NotFoundError(LedgerError):
    """Referenced account/transaction/budget/debt is missing."""

    def __init__(self, entity_type: str, entity_id: Optional[UUID] = None):
        if entity_id is None:
            message = f"No {entity_type} available"
        else:
            message = f"{entity_type.capitalize()} not found: {entity_id}"
        super().__init__(message)
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConsistencyError(LedgerError):
    """
    An invariant is broken in data that was supposed to be consistent.

    Surfaced, never silently repaired.
    """

    def __init__(self, problems: Iterable[str]):
        self.problems = list(problems)
        super().__init__(
            f"Ledger failed reconciliation with {len(self.problems)} problem(s): "
            + "; ".join(self.problems[:5])
        )
