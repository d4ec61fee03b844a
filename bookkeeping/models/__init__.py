"""
Data Models Package

This package contains all Pydantic models used in Calibrated Bookkeeping.
All data flowing through the engines must conform to these schemas.
"""

from bookkeeping.models.ledger import (
    LEDGER_EPOCH,
    Account,
    AccountClass,
    AccountType,
    BalanceReport,
    BatchReconciliationResult,
    Calibration,
    CalibrationSource,
    CheckStatus,
    IssueStatus,
    ReconciliationIssue,
    ReconciliationResult,
    ReconciliationState,
    ReconciliationStatusReport,
    Transaction,
    TransactionNature,
    ensure_aware,
    utcnow,
)
from bookkeeping.models.budget import (
    AccountFilterMode,
    BudgetPeriodRecord,
    BudgetPlan,
    DashboardPlanEntry,
    DashboardSummary,
    IndicatorStatus,
    PeriodSlot,
    PeriodType,
    PlanStatus,
    PlanType,
    RecalculationItem,
    RecordRefreshOutcome,
    RefreshResult,
)
from bookkeeping.models.validation import (
    LedgerValidationError,
    ValidationIssue,
    ValidationResult,
)
from bookkeeping.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "LEDGER_EPOCH",
    "Account",
    "AccountClass",
    "AccountType",
    "BalanceReport",
    "BatchReconciliationResult",
    "Calibration",
    "CalibrationSource",
    "CheckStatus",
    "IssueStatus",
    "ReconciliationIssue",
    "ReconciliationResult",
    "ReconciliationState",
    "ReconciliationStatusReport",
    "Transaction",
    "TransactionNature",
    "ensure_aware",
    "utcnow",
    # Budget models
    "AccountFilterMode",
    "BudgetPeriodRecord",
    "BudgetPlan",
    "DashboardPlanEntry",
    "DashboardSummary",
    "IndicatorStatus",
    "PeriodSlot",
    "PeriodType",
    "PlanStatus",
    "PlanType",
    "RecalculationItem",
    "RecordRefreshOutcome",
    "RefreshResult",
    # Validation models
    "LedgerValidationError",
    "ValidationIssue",
    "ValidationResult",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
