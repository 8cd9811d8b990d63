"""
Auto-Tracking Bridge

Turns Planner goal events into finance transactions.

DESIGN DECISION: Every synthetic transaction carries a GoalEventKey
(goal id + event type). The key, not the description text, decides
whether an event is new or a repeat:
- A repeated event updates the tagged transaction in place
- A new event creates one tagged transaction

Completion policy:
- `goal-completed` removes the goal's `goal-progress` transaction in the
  same commit, so a completed goal is represented by one transaction
- Once a completion is recorded, `goal-progress` events are rejected
  with GoalClosedError
"""

from decimal import Decimal, InvalidOperation
from typing import Optional, Union
from uuid import UUID

import structlog

from finance_engine.audit import AuditLogger
from finance_engine.config import EngineSettings, get_settings
from finance_engine.ledger import GoalClosedError, LedgerStore, NotFoundError, ValidationError
from finance_engine.models.audit import AuditEventBuilder
from finance_engine.models.finance import (
    Goal,
    GoalEventKey,
    GoalEventType,
    GoalFinanceMode,
    Transaction,
    TransactionType,
)

logger = structlog.get_logger(__name__)


class AutoTrackingBridge:
    """The only way Planner code touches the ledger."""

    def __init__(
        self,
        store: LedgerStore,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self._store = store
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or get_settings().engine

    @staticmethod
    def _parse_amount(amount: Union[Decimal, int, float, str]) -> Decimal:
        try:
            value = Decimal(str(amount))
        except InvalidOperation:
            raise ValidationError.single("amount", "invalid_value", f"Invalid amount: {amount!r}")
        if not value.is_finite() or value <= 0:
            raise ValidationError.single("amount", "invalid_value", "Goal amount must be greater than zero")
        return value

    def record_goal_event(
        self,
        goal: Goal,
        amount: Union[Decimal, int, float, str],
        event_type: Union[GoalEventType, str],
        budget_id: Optional[UUID] = None,
        note: Optional[str] = None,
        account_id: Optional[UUID] = None,
    ) -> Optional[Transaction]:
        """
        Record one goal event as a finance transaction.

        Returns None for goals outside the financial category.

        Raises:
            ValidationError: amount is not positive
            GoalClosedError: progress for a goal that is already completed
            NotFoundError: budget or account missing, or no account exists
        """
        event_type = GoalEventType(event_type)
        if not goal.is_financial:
            logger.debug(
                "goal_event_ignored",
                goal_id=str(goal.id),
                category=goal.category.value,
                event_type=event_type.value,
            )
            return None

        key = GoalEventKey(goal_id=goal.id, event_type=event_type)
        progress_key = GoalEventKey(goal_id=goal.id, event_type=GoalEventType.GOAL_PROGRESS)
        completed_key = GoalEventKey(goal_id=goal.id, event_type=GoalEventType.GOAL_COMPLETED)

        try:
            value = self._parse_amount(amount)
            with self._store.atomic():
                if event_type == GoalEventType.GOAL_PROGRESS and self._store.find_goal_transaction(completed_key):
                    raise GoalClosedError.single(
                        "event_type", "goal_closed", f"Goal {goal.title!r} is already completed",
                    )

                budget = self._store.get_budget(budget_id) if budget_id is not None else None
                description = note or f"Goal: {goal.title}"
                if note is None and budget is not None:
                    description += f" · Budget: {budget.name}"

                existing = self._store.find_goal_transaction(key)
                if existing is not None:
                    txn = self._store.edit_transaction(
                        existing.id, {"amount": value, "description": description},
                    )
                else:
                    account = self._store.resolve_account(
                        account_id, budget.currency if budget is not None else None,
                    )
                    txn = self._store.create_transaction(
                        {
                            "type": (
                                TransactionType.INCOME
                                if goal.finance_mode == GoalFinanceMode.SAVE
                                else TransactionType.EXPENSE
                            ),
                            "amount": value,
                            "category": budget.category if budget is not None else self._settings.goal_category,
                            "description": description,
                            "account_id": account.id,
                            "date": self._store.today(),
                            "budget_id": budget_id,
                        },
                        goal_key=key,
                    )

                if event_type == GoalEventType.GOAL_COMPLETED:
                    progress = self._store.find_goal_transaction(progress_key)
                    if progress is not None:
                        self._store.delete_transaction(progress.id)
        except (ValidationError, NotFoundError) as e:
            self._audit.log(AuditEventBuilder.goal_event_rejected(goal.id, event_type.value, str(e)))
            raise

        self._audit.log(AuditEventBuilder.goal_event_recorded(
            goal_id=goal.id,
            event_type=event_type.value,
            transaction_id=txn.id,
            amount=str(value),
            updated_in_place=existing is not None,
            revision=self._store.revision,
        ))
        return txn
