"""
Configuration Management for Calibrated Bookkeeping

Every knob of the ledger, the budget engine, currency conversion and the
Google Sheets backend, read from the environment (and .env) with
pydantic-settings.

DESIGN DECISION: All configuration lives here, one BaseSettings class per
concern with its own env prefix. Google credentials are only loaded when
the Sheets backend asks for them, so the in-memory backend runs with no
environment at all.
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Built-in rates. Used only after the store has
# been consulted and has no direct or inverse rate for a pair.
DEFAULT_FALLBACK_RATES: dict[str, dict[str, Decimal]] = {
    "CNY": {"HKD": Decimal("1.09"), "USD": Decimal("0.14"), "USDT": Decimal("0.14")},
    "HKD": {"CNY": Decimal("0.92"), "USD": Decimal("0.13"), "USDT": Decimal("0.13")},
    "USD": {"CNY": Decimal("7.25"), "HKD": Decimal("7.78"), "USDT": Decimal("1.0")},
    "USDT": {"CNY": Decimal("7.25"), "HKD": Decimal("7.78"), "USD": Decimal("1.0")},
}


class LedgerSettings(BaseSettings):
    """Balance reconstruction and reconciliation configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        extra="ignore"
    )

    default_currency: str = Field(
        default="CNY",
        min_length=3,
        max_length=5,
        description="Reporting currency, and the currency assumed for accounts without one"
    )
    timezone: str = Field(
        default="UTC",
        description="IANA timezone used to turn calendar dates into instants"
    )
    reconciliation_tolerance: Decimal = Field(
        default=Decimal("0.01"),
        ge=0,
        description="Absolute difference above which a calibration pair is flagged"
    )
    money_places: int = Field(
        default=2,
        ge=0,
        le=8,
        description="Decimal places kept for converted amounts"
    )

    # Batch execution
    batch_concurrency: int = Field(
        default=8,
        ge=1,
        le=64,
        description="Maximum accounts reconciled in parallel"
    )
    batch_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Overall deadline for a batch run (None = no deadline)"
    )

    @field_validator('default_currency')
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Fail at startup rather than at the first period refresh."""
        try:
            ZoneInfo(v)
        except ZoneInfoNotFoundError:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class BudgetSettings(BaseSettings):
    """Budget plan and period configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BUDGET_",
        extra="ignore"
    )

    periods_per_round: int = Field(
        default=12,
        ge=1,
        le=12,
        description="Number of period records generated per plan round"
    )
    soft_limit_lookback: int = Field(
        default=3,
        ge=1,
        le=12,
        description="How many preceding periods are averaged into the soft limit"
    )
    default_limit_currency: str = Field(
        default="CNY",
        description="Limit currency used when a plan does not name one"
    )


class CurrencySettings(BaseSettings):
    """Currency conversion configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CURRENCY_",
        extra="ignore"
    )

    # JSON in the environment: CURRENCY_FALLBACK_RATES='{"USD": {"EUR": "0.92"}}'
    fallback_rates: dict[str, dict[str, Decimal]] = Field(
        default_factory=lambda: {
            source: dict(targets) for source, targets in DEFAULT_FALLBACK_RATES.items()
        },
        description="Rates consulted after the store, as {from: {to: rate}}"
    )
    derive_inverse: bool = Field(
        default=True,
        description="Derive to->from as 1/rate when only from->to is configured"
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )

    # Sheet names within the spreadsheet
    accounts_sheet_name: str = Field(default="Accounts")
    transactions_sheet_name: str = Field(default="Transactions")
    calibrations_sheet_name: str = Field(default="Calibrations")
    issues_sheet_name: str = Field(default="ReconciliationIssues")
    rates_sheet_name: str = Field(default="CurrencyRates")
    budget_plans_sheet_name: str = Field(default="BudgetPlans")
    budget_periods_sheet_name: str = Field(default="BudgetPeriods")
    audit_sheet_name: str = Field(
        default="AuditLog",
        description="Name of the sheet for audit logs"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class AppSettings(BaseSettings):
    """
    Process-level settings: environment, log level and storage backend.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        description="Root log level for structured logging"
    )
    storage_backend: str = Field(
        default="google_sheets",
        pattern="^(google_sheets|memory)$",
        description="Which storage implementation create_app_components builds"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Groups the per-concern settings; each is built on first access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily to allow partial configuration
    # (the in-memory backend never needs Google credentials).

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def budget(self) -> BudgetSettings:
        return BudgetSettings()

    @property
    def currency(self) -> CurrencySettings:
        return CurrencySettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Process-wide settings, built once. get_settings.cache_clear() reloads them.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Try to load every settings group.

    Returns {name: loaded} plus {name_error: message} for each failure.
    """
    results = {}

    settings = get_settings()

    for name in ("ledger", "budget", "currency", "google_sheets", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
