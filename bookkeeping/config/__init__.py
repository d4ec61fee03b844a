"""Configuration package."""

from bookkeeping.config.settings import (
    DEFAULT_FALLBACK_RATES,
    AppSettings,
    BudgetSettings,
    CurrencySettings,
    GoogleSheetsSettings,
    LedgerSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "DEFAULT_FALLBACK_RATES",
    "AppSettings",
    "BudgetSettings",
    "CurrencySettings",
    "GoogleSheetsSettings",
    "LedgerSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
