"""
Budget Models for Calibrated Bookkeeping

A BudgetPlan declares a spending constraint; each plan round produces a
batch of BudgetPeriodRecords (12 by default) that the budget engine fills
in with actual spend and an indicator.

DESIGN DECISION: Period records snapshot the hard/soft limit they were
generated with. Changing a plan's limit never rewrites history.
"""

from datetime import date, datetime
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

from bookkeeping.models.ledger import ensure_aware, utcnow


# =============================================================================
# ENUMS
# =============================================================================

class PlanType(str, Enum):
    """What a plan constrains."""
    CATEGORY = "category"  # One expense subtree
    TOTAL = "total"        # All (or selected) expense subtrees


class PeriodType(str, Enum):
    """Length of one budget period."""
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class AccountFilterMode(str, Enum):
    """Which source accounts' transfers count towards spend."""
    ALL = "all"
    INCLUDE = "include"
    EXCLUDE = "exclude"


class PlanStatus(str, Enum):
    """Plan lifecycle."""
    ACTIVE = "active"
    EXPIRED = "expired"
    PAUSED = "paused"


class IndicatorStatus(str, Enum):
    """
    Health of one budget period.

    PENDING only exists until the first computation; classification
    itself is tri-state (star / green / red).
    """
    PENDING = "pending"
    STAR = "star"    # Within the soft limit
    GREEN = "green"  # Within the hard limit
    RED = "red"      # Over the hard limit


# =============================================================================
# PLAN AND PERIOD RECORDS
# =============================================================================

class BudgetPlan(BaseModel):
    """A declared spending constraint."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    plan_type: PlanType = Field(...)
    category_account_id: Optional[UUID] = Field(
        default=None,
        description="Root of the expense subtree (category plans)"
    )
    included_category_ids: list[UUID] = Field(
        default_factory=list,
        description="Expense subtree roots (total plans; empty = every expense account)"
    )
    period: PeriodType = PeriodType.MONTHLY
    hard_limit: Decimal = Field(..., ge=0)
    limit_currency: str = Field(default="CNY", min_length=3, max_length=5)
    soft_limit_enabled: bool = True
    status: PlanStatus = PlanStatus.ACTIVE
    account_filter_mode: AccountFilterMode = AccountFilterMode.ALL
    account_filter_ids: list[UUID] = Field(default_factory=list)
    start_date: date = Field(...)
    end_date: Optional[date] = Field(
        default=None,
        description="Last day of the final period of the current round"
    )
    round_number: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator('limit_currency')
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator('created_at', 'updated_at')
    @classmethod
    def make_aware(cls, v: datetime) -> datetime:
        return ensure_aware(v)

    @model_validator(mode='after')
    def validate_target(self) -> 'BudgetPlan':
        if self.plan_type == PlanType.CATEGORY and self.category_account_id is None:
            raise ValueError("Category plans require a category_account_id")
        return self


class BudgetPeriodRecord(BaseModel):
    """One period of one plan round."""

    id: UUID = Field(default_factory=uuid4)
    plan_id: UUID = Field(...)
    round_number: int = Field(..., ge=1)
    period_index: int = Field(..., ge=1, le=12)
    period_start: date = Field(...)
    period_end: date = Field(...)
    hard_limit: Decimal = Field(..., ge=0)
    soft_limit: Optional[Decimal] = None
    actual_amount: Optional[Decimal] = Field(
        default=None,
        description="None until the first computation"
    )
    indicator_status: IndicatorStatus = IndicatorStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator('created_at')
    @classmethod
    def make_aware(cls, v: datetime) -> datetime:
        return ensure_aware(v)

    @model_validator(mode='after')
    def validate_bounds(self) -> 'BudgetPeriodRecord':
        if self.period_end < self.period_start:
            raise ValueError("Period end cannot be before period start")
        return self

    def contains(self, day: date) -> bool:
        return self.period_start <= day <= self.period_end


class PeriodSlot(BaseModel):
    """A generated period boundary, before it becomes a record."""
    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=1)
    start: date
    end: date


# =============================================================================
# ENGINE RESULTS
# =============================================================================

class RecordRefreshOutcome(BaseModel):
    """Per-record result of a refresh pass."""

    record_id: UUID
    plan_id: UUID
    success: bool
    actual_amount: Optional[Decimal] = None
    soft_limit: Optional[Decimal] = None
    indicator_status: Optional[IndicatorStatus] = None
    stage: Optional[str] = None
    error: Optional[str] = None


class RefreshResult(BaseModel):
    """Aggregate of refreshing every period active on a given day."""

    today: date
    total_records: int = 0
    refreshed: int = 0
    failed: int = 0
    outcomes: list[RecordRefreshOutcome] = Field(default_factory=list)


class RecalculationItem(BaseModel):
    """Old versus freshly computed values of one record (nothing is written)."""

    plan_id: UUID
    record_id: UUID
    period_start: date
    period_end: date
    old_actual_amount: Optional[Decimal] = None
    old_indicator_status: IndicatorStatus
    new_actual_amount: Decimal
    new_indicator_status: IndicatorStatus

    @property
    def changed(self) -> bool:
        return (
            self.old_actual_amount != self.new_actual_amount
            or self.old_indicator_status != self.new_indicator_status
        )


class DashboardPlanEntry(BaseModel):
    plan: BudgetPlan
    current_record: Optional[BudgetPeriodRecord] = None


class DashboardSummary(BaseModel):
    """Active plans and their current periods, totals in one currency."""

    currency: str
    total_budget: Decimal = Decimal("0")
    total_actual: Decimal = Decimal("0")
    indicator_counts: dict[str, int] = Field(
        default_factory=lambda: {"red": 0, "green": 0, "star": 0, "pending": 0}
    )
    plans: list[DashboardPlanEntry] = Field(default_factory=list)
