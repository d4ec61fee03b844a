"""Validation package."""

from bookkeeping.validation.validator import LedgerValidator

__all__ = ["LedgerValidator"]
