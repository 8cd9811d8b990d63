"""Planner to finance auto-tracking."""

from finance_engine.tracking.bridge import AutoTrackingBridge

__all__ = ["AutoTrackingBridge"]
