"""
Core Ledger Models for Calibrated Bookkeeping

These models define the strict schemas for the double-entry ledger:
accounts, transfers between them, and the calibrations that anchor
every reconstructed balance.

DESIGN DECISION: Money is always Decimal, never float. The reconciliation
tolerance (0.01) is only meaningful with exact decimal arithmetic.

DESIGN DECISION: Instants are timezone-aware. Naive datetimes coming from
callers or storage are interpreted as UTC at the model boundary, so every
comparison inside the engines is between aware values.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


# Anchor instant used when an account has no calibration at all.
LEDGER_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC; leave aware ones untouched."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class AccountClass(str, Enum):
    """
    Real accounts hold a balance in one currency; nominal accounts
    (income/expense/equity categories) only classify money movements.

    Values read from storage that this code does not know about map to
    UNKNOWN instead of failing the whole load.
    """
    REAL = "real"
    NOMINAL = "nominal"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN


class AccountType(str, Enum):
    """
    Accounting type of an account.

    DESIGN DECISION: The set of types is closed in code but open in storage.
    Unrecognised stored values become UNKNOWN so the budget engine can never
    mistake them for expense accounts.
    """
    ASSET = "asset"
    LIABILITY = "liability"
    INCOME = "income"
    EXPENSE = "expense"
    EQUITY = "equity"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN


class TransactionNature(str, Enum):
    """Why a transfer happened."""
    REGULAR = "regular"
    UNEXPECTED = "unexpected"
    PERIODIC = "periodic"  # Generated by the periodic-task scheduler


class CalibrationSource(str, Enum):
    """Where a calibration came from."""
    MANUAL = "manual"
    IMPORT = "import"


class IssueStatus(str, Enum):
    """
    Reconciliation issue lifecycle.

    Issues are opened by the engine and closed by user action only.
    """
    OPEN = "open"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class CheckStatus(str, Enum):
    """Outcome of a single-account reconciliation check."""
    CHECKED = "checked"
    INSUFFICIENT_CALIBRATIONS = "insufficient_calibrations"  # Terminal, not an error
    ERROR = "error"


class ReconciliationState(str, Enum):
    """Current balance versus the latest calibration."""
    NO_CALIBRATION = "no_calibration"
    CONSISTENT = "consistent"
    HAS_DIFFERENCE = "has_difference"


# =============================================================================
# CORE LEDGER MODELS
# =============================================================================

class Account(BaseModel):
    """
    A node in the account forest.

    Groups organise the tree and never receive transfers directly.
    Every leaf real account carries exactly one currency.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=200)
    parent_id: Optional[UUID] = Field(
        default=None,
        description="Parent account (None for roots)"
    )
    account_class: AccountClass = Field(...)
    type: AccountType = Field(...)
    subtype: Optional[str] = Field(
        default=None,
        max_length=50,
        description="Finer classification, e.g. checking, credit_card"
    )
    is_group: bool = False
    is_system: bool = False
    is_active: bool = True
    currency: Optional[str] = Field(
        default=None,
        max_length=5,
        description="ISO-like currency code; only leaf real accounts have one"
    )

    @field_validator('account_class', mode='before')
    @classmethod
    def coerce_account_class(cls, v):
        if isinstance(v, str):
            return AccountClass(v.strip().lower())
        return v

    @field_validator('type', mode='before')
    @classmethod
    def coerce_account_type(cls, v):
        if isinstance(v, str):
            return AccountType(v.strip().lower())
        return v

    @field_validator('currency')
    @classmethod
    def normalize_currency(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip().upper()

    @property
    def is_expense(self) -> bool:
        return self.type == AccountType.EXPENSE

    @property
    def is_leaf_real(self) -> bool:
        return self.account_class == AccountClass.REAL and not self.is_group


class Transaction(BaseModel):
    """
    An immutable transfer from one account to another.

    `amount` applies to both sides unless `from_amount` / `to_amount`
    override it for a cross-currency transfer.
    """
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    id: UUID = Field(default_factory=uuid4)
    from_account_id: UUID = Field(...)
    to_account_id: UUID = Field(...)
    amount: Decimal = Field(
        ...,
        ge=0,
        description="Amount, in the from-account's currency unless overridden"
    )
    from_amount: Optional[Decimal] = Field(
        default=None,
        ge=0,
        description="Actual amount leaving the from-account"
    )
    to_amount: Optional[Decimal] = Field(
        default=None,
        ge=0,
        description="Actual amount arriving in the to-account"
    )
    date: datetime = Field(..., description="Instant of the transfer")
    nature: TransactionNature = TransactionNature.REGULAR
    is_opening: bool = Field(
        default=False,
        description="Synthetic equity transfer that seeds a starting balance"
    )
    description: Optional[str] = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator('date', 'created_at')
    @classmethod
    def make_aware(cls, v: datetime) -> datetime:
        return ensure_aware(v)

    @model_validator(mode='after')
    def validate_distinct_accounts(self) -> 'Transaction':
        if self.from_account_id == self.to_account_id:
            raise ValueError("A transaction cannot move money within a single account")
        return self

    @property
    def inflow_amount(self) -> Decimal:
        """Effect on the to-account."""
        return self.to_amount if self.to_amount is not None else self.amount

    @property
    def outflow_amount(self) -> Decimal:
        """Effect on the from-account."""
        return self.from_amount if self.from_amount is not None else self.amount


class Calibration(BaseModel):
    """
    A user-asserted balance of one account at one instant.

    CRITICAL: Calibrations are the only ground truth in the system.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    account_id: UUID = Field(...)
    balance: Decimal = Field(..., description="Confirmed balance")
    date: datetime = Field(..., description="Instant the balance was confirmed for")
    source: CalibrationSource = CalibrationSource.MANUAL
    is_opening: bool = False
    note: Optional[str] = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator('date', 'created_at')
    @classmethod
    def make_aware(cls, v: datetime) -> datetime:
        return ensure_aware(v)


class ReconciliationIssue(BaseModel):
    """
    A discrepancy between two adjacent calibrations and the ledger.

    expected_delta = end.balance - start.balance
    actual_delta   = inflows - outflows over (start.date, end.date]
    diff           = actual_delta - expected_delta
    """

    id: UUID = Field(default_factory=uuid4)
    account_id: UUID = Field(...)
    start_calibration_id: Optional[UUID] = None
    end_calibration_id: Optional[UUID] = None
    period_start: datetime = Field(...)
    period_end: datetime = Field(...)
    expected_delta: Decimal = Field(...)
    actual_delta: Decimal = Field(...)
    diff: Decimal = Field(...)
    status: IssueStatus = IssueStatus.OPEN
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @field_validator('period_start', 'period_end', 'created_at')
    @classmethod
    def make_aware(cls, v: datetime) -> datetime:
        return ensure_aware(v)

    @field_validator('resolved_at')
    @classmethod
    def make_optional_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_aware(v) if v is not None else None

    @property
    def pair_key(self) -> tuple[Optional[UUID], Optional[UUID]]:
        return (self.start_calibration_id, self.end_calibration_id)


# =============================================================================
# RESULT MODELS - What the engines hand back to callers
# =============================================================================

class BalanceReport(BaseModel):
    """
    How a balance was reconstructed.

    `direction` is "forward" when the anchor precedes the target and
    "backward" when a later calibration was projected back in time.
    """

    account_id: UUID
    target: datetime
    anchor_calibration_id: Optional[UUID] = None
    anchor_balance: Decimal = Decimal("0")
    anchor_date: datetime = LEDGER_EPOCH
    direction: str = Field(default="forward", pattern="^(forward|backward)$")
    inflow_total: Decimal = Decimal("0")
    outflow_total: Decimal = Decimal("0")
    inflow_count: int = 0
    outflow_count: int = 0
    balance: Decimal


class ReconciliationResult(BaseModel):
    """Outcome of checking one account."""

    account_id: UUID
    status: CheckStatus
    calibrations_found: int = 0
    pairs_checked: int = 0
    issues_found: int = Field(
        default=0,
        description="Open issues recorded for pairs whose drift exceeded the tolerance"
    )
    issues_created: int = Field(
        default=0,
        description="Issues newly inserted (the rest updated an open issue in place)"
    )
    issues_suppressed: int = Field(
        default=0,
        description="Drifting pairs not recorded because the user ignored their issue"
    )
    issues: list[ReconciliationIssue] = Field(default_factory=list)

    # Failure details (status == ERROR)
    stage: Optional[str] = None
    error: Optional[str] = None


class BatchReconciliationResult(BaseModel):
    """Aggregate of a batch run; one failing account never hides the others."""

    total_accounts: int = 0
    checked_accounts: int = 0
    total_issues_found: int = 0
    insufficient_calibrations: list[UUID] = Field(default_factory=list)
    failed_accounts: list[UUID] = Field(default_factory=list)
    timed_out: bool = False
    details: list[ReconciliationResult] = Field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_accounts) or self.timed_out


class ReconciliationStatusReport(BaseModel):
    """Latest calibration compared with the reconstructed balance right now."""

    account_id: UUID
    state: ReconciliationState
    calibration_balance: Optional[Decimal] = None
    current_balance: Optional[Decimal] = None
    diff: Optional[Decimal] = None
    last_calibration_date: Optional[datetime] = None
