"""
Domain Errors

Storage failures live with the storage interface (StorageError and friends).
This module holds the errors raised when the ledger's configuration cannot
satisfy an operation: a missing currency rate, or a plan that points at an
account which no longer exists.

These are fatal to the single operation that hit them. Batch operations
catch them per item and report them in their outcome lists.
"""

from typing import Optional
from uuid import UUID


class ConfigurationError(Exception):
    """Base class for configuration problems that make an operation impossible."""
    pass


class CurrencyRateNotFoundError(ConfigurationError):
    """No rate (direct, inverse or fallback) is configured for a currency pair."""

    def __init__(self, from_currency: str, to_currency: str):
        self.from_currency = from_currency
        self.to_currency = to_currency
        super().__init__(
            f"No exchange rate configured for {from_currency} -> {to_currency}"
        )


class MissingAccountError(ConfigurationError):
    """A required account reference points at an account that does not exist."""

    def __init__(self, account_id: UUID, context: Optional[str] = None):
        self.account_id = account_id
        self.context = context
        message = f"Account not found: {account_id}"
        if context:
            message = f"{message} ({context})"
        super().__init__(message)
