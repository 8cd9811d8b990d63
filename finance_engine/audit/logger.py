"""
Audit Logger

DESIGN DECISION: Every committed ledger mutation is logged.
This provides:
1. Complete traceability of balance changes
2. Debugging capability when a snapshot fails reconciliation
3. A user-visible history

The audit logger:
- Is called after commit, so it never affects what was committed
- Gracefully handles sink failures (doesn't break a mutation if logging fails)
"""

from typing import Optional

import structlog

from finance_engine.models.audit import AuditEvent, AuditSeverity
from finance_engine.services.storage.interface import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. An audit sink, if one is configured
    """

    def __init__(self, storage: Optional[AuditStorageInterface] = None):
        """
        Initialize audit logger.

        Args:
            storage: Sink for persistence. If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("finance_engine.audit")

    def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Appends to the sink if available.

        Returns True if the sink write succeeded (or no sink configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True
