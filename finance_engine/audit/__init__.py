"""Audit logging package."""

from finance_engine.audit.logger import AuditLogger

__all__ = ["AuditLogger"]
