"""Reconciliation package."""

from bookkeeping.reconciliation.engine import ReconciliationEngine

__all__ = ["ReconciliationEngine"]
