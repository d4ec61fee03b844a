"""Currency conversion package."""

from bookkeeping.currency.converter import CurrencyConverter

__all__ = ["CurrencyConverter"]
