"""
Audit Models for the Finance Engine

Every committed mutation and every rejected cross-entity event is
recorded. This provides:
1. Traceability of balance changes back to the operation that made them
2. Debugging information when persisted data fails reconciliation
3. A history the UI can show

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from finance_engine.models.finance import utcnow


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Transactions
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_EDITED = "transaction_edited"
    TRANSACTION_DELETED = "transaction_deleted"
    TRANSACTION_RESTORED = "transaction_restored"

    # Accounts
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_UPDATED = "account_updated"
    ACCOUNT_RECONCILED = "account_reconciled"
    ACCOUNT_DELETED = "account_deleted"

    # Budgets
    BUDGET_CREATED = "budget_created"
    BUDGET_UPDATED = "budget_updated"
    BUDGET_DELETED = "budget_deleted"
    BUDGET_RECOMPUTED = "budget_recomputed"

    # Debts
    DEBT_UPSERTED = "debt_upserted"
    DEBT_PAYMENT_ADDED = "debt_payment_added"
    DEBT_SETTLED = "debt_settled"
    DEBT_REOPENED = "debt_reopened"
    DEBT_DELETED = "debt_deleted"

    # Planner bridge
    GOAL_EVENT_RECORDED = "goal_event_recorded"
    GOAL_EVENT_REJECTED = "goal_event_rejected"

    # Voice intents
    INTENT_DISPATCHED = "intent_dispatched"
    INTENT_REJECTED = "intent_rejected"

    # Preferences
    BASE_CURRENCY_CHANGED = "base_currency_changed"

    # Persistence
    SNAPSHOT_LOADED = "snapshot_loaded"
    SNAPSHOT_SAVE_FAILED = "snapshot_save_failed"
    CONSISTENCY_WARNING = "consistency_warning"

    # Failures surfaced to callers
    VALIDATION_FAILED = "validation_failed"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(default_factory=utcnow)

    # Event classification
    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'transaction', 'debt', 'goal')",
    )
    entity_id: Optional[UUID] = None

    # Ledger revision the event was committed in
    revision: Optional[int] = None

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)

    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "revision": self.revision,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         revision, description, details_json, error_message]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            str(self.entity_id) if self.entity_id else "",
            str(self.revision) if self.revision is not None else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.transaction_created(txn_id, "expense", "50", "USD", revision)
    """

    @staticmethod
    def transaction_changed(
        event_type: AuditEventType,
        transaction_id: UUID,
        txn_type: str,
        amount: str,
        currency: str,
        revision: int,
    ) -> AuditEvent:
        verb = event_type.value.split("_", 1)[1]
        return AuditEvent(
            event_type=event_type,
            entity_type="transaction",
            entity_id=transaction_id,
            revision=revision,
            description=f"Transaction {verb}: {txn_type} {amount} {currency}",
            details={"type": txn_type, "amount": amount, "currency": currency},
        )

    @staticmethod
    def entity_changed(
        event_type: AuditEventType,
        entity_type: str,
        entity_id: UUID,
        revision: int,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        verb = event_type.value.split("_", 1)[1]
        return AuditEvent(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            revision=revision,
            description=f"{entity_type.capitalize()} {verb}",
            details=details or {},
        )

    @staticmethod
    def debt_settled(
        debt_id: UUID,
        person: str,
        transaction_id: Optional[UUID],
        revision: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DEBT_SETTLED,
            entity_type="debt",
            entity_id=debt_id,
            revision=revision,
            description=f"Debt with {person} settled",
            details={
                "settlement_transaction_id": str(transaction_id) if transaction_id else None,
            },
        )

    @staticmethod
    def goal_event_recorded(
        goal_id: UUID,
        event_type: str,
        transaction_id: UUID,
        amount: str,
        updated_in_place: bool,
        revision: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GOAL_EVENT_RECORDED,
            entity_type="goal",
            entity_id=goal_id,
            revision=revision,
            description=f"Goal event {event_type} recorded for {amount}",
            details={
                "event_type": event_type,
                "transaction_id": str(transaction_id),
                "amount": amount,
                "updated_in_place": updated_in_place,
            },
        )

    @staticmethod
    def goal_event_rejected(goal_id: UUID, event_type: str, reason: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GOAL_EVENT_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="goal",
            entity_id=goal_id,
            description=f"Goal event {event_type} rejected",
            details={"event_type": event_type},
            error_message=reason,
        )

    @staticmethod
    def intent_dispatched(intent_type: str, entity_type: str, entity_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INTENT_DISPATCHED,
            entity_type=entity_type,
            entity_id=entity_id,
            description=f"Parsed {intent_type} intent applied",
            details={"intent_type": intent_type},
        )

    @staticmethod
    def intent_rejected(intent_type: str, reason: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INTENT_REJECTED,
            severity=AuditSeverity.WARNING,
            description=f"Parsed {intent_type} intent rejected",
            details={"intent_type": intent_type},
            error_message=reason,
        )

    @staticmethod
    def validation_failed(operation: str, issues: list[dict]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILED,
            severity=AuditSeverity.WARNING,
            description=f"{operation} rejected with {len(issues)} issue(s)",
            details={"operation": operation, "issues": issues},
        )

    @staticmethod
    def base_currency_changed(previous: str, current: str, revision: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BASE_CURRENCY_CHANGED,
            revision=revision,
            description=f"Base currency changed from {previous} to {current}",
            details={"previous": previous, "current": current},
        )

    @staticmethod
    def snapshot_loaded(revision: int, transactions: int, repaired_caches: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SNAPSHOT_LOADED,
            revision=revision,
            description=f"Ledger loaded with {transactions} transactions",
            details={
                "transactions": transactions,
                "repaired_caches": repaired_caches,
            },
        )

    @staticmethod
    def consistency_warning(problems: list[str]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONSISTENCY_WARNING,
            severity=AuditSeverity.ERROR,
            description="Persisted ledger failed reconciliation; keeping in-memory state",
            details={"problems": problems},
        )

    @staticmethod
    def snapshot_save_failed(revision: int, error_message: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SNAPSHOT_SAVE_FAILED,
            severity=AuditSeverity.ERROR,
            revision=revision,
            description=f"Snapshot revision {revision} could not be saved",
            error_message=error_message,
        )
