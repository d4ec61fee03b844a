"""
Audit Models for Calibrated Bookkeeping

Ledger writes, reconciliation runs and budget refreshes each leave an
AuditEvent behind, so an issue or an indicator can always be traced back to
the calibration, transfer or plan change that produced it.

DESIGN DECISION: The audit trail is append-only. Events are never updated
or deleted, not even when the entity they describe is.
"""

import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from bookkeeping.models.ledger import utcnow


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Ledger writes
    ACCOUNT_SAVED = "account_saved"
    TRANSACTION_RECORDED = "transaction_recorded"
    TRANSACTION_DELETED = "transaction_deleted"
    CALIBRATION_RECORDED = "calibration_recorded"
    CALIBRATION_REJECTED = "calibration_rejected"

    # Reconciliation
    RECONCILIATION_CHECKED = "reconciliation_checked"
    RECONCILIATION_ISSUE_DETECTED = "reconciliation_issue_detected"
    RECONCILIATION_FAILED = "reconciliation_failed"
    ISSUE_RESOLVED = "issue_resolved"
    ISSUE_IGNORED = "issue_ignored"

    # Budget
    BUDGET_PLAN_CREATED = "budget_plan_created"
    BUDGET_PLAN_UPDATED = "budget_plan_updated"
    BUDGET_PLAN_RESTARTED = "budget_plan_restarted"
    BUDGET_PERIOD_CHANGED = "budget_period_changed"
    BUDGET_PLAN_DELETED = "budget_plan_deleted"
    BUDGET_PERIODS_REFRESHED = "budget_periods_refreshed"
    BUDGET_REFRESH_FAILED = "budget_refresh_failed"

    # System events
    SYSTEM_ERROR = "system_error"
    STORAGE_ERROR = "storage_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """One entry of the audit trail."""

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Event id"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="Aware UTC instant the event was recorded"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="What happened"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Drives the local log level"
    )

    # Subject of the event
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'account', 'calibration', 'budget_plan')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="Id of the account, calibration, issue, plan or record"
    )

    # Batch runs share one correlation id
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="Shared by every event of one batch check or refresh pass"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="One-line summary shown in the audit sheet"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Event-specific values, stringified for storage"
    )

    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="False for engine-initiated events"
    )

    def to_log_dict(self) -> dict:
        """Flat, JSON-safe view for structlog."""
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_sheets_row(self) -> list:
        """
        Audit sheet row, columns:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         correlation_id, description, details_json, error_message, is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            str(self.entity_id) if self.entity_id else "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]


class AuditEventBuilder:
    """
    Factories for every event the engines and the facade emit.

    Usage:
        event = AuditEventBuilder.calibration_recorded(calibration_id, account_id, balance)
        event = AuditEventBuilder.reconciliation_failed(account_id, stage, message)
    """

    @staticmethod
    def account_saved(account_id: UUID, name: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCOUNT_SAVED,
            entity_type="account",
            entity_id=account_id,
            description=f"Account saved: {name}",
            details={"name": name},
            is_user_action=True,
        )

    @staticmethod
    def transaction_recorded(
        transaction_id: UUID,
        from_account_id: UUID,
        to_account_id: UUID,
        amount: Decimal,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_RECORDED,
            entity_type="transaction",
            entity_id=transaction_id,
            description=f"Transaction recorded: {amount}",
            details={
                "from_account_id": str(from_account_id),
                "to_account_id": str(to_account_id),
                "amount": str(amount),
            },
            is_user_action=True,
        )

    @staticmethod
    def transaction_deleted(transaction_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_DELETED,
            severity=AuditSeverity.WARNING,
            entity_type="transaction",
            entity_id=transaction_id,
            description="Transaction deleted",
            is_user_action=True,
        )

    @staticmethod
    def calibration_recorded(
        calibration_id: UUID,
        account_id: UUID,
        balance: Decimal,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CALIBRATION_RECORDED,
            entity_type="calibration",
            entity_id=calibration_id,
            description=f"Calibration recorded: {balance}",
            details={
                "account_id": str(account_id),
                "balance": str(balance),
            },
            is_user_action=True,
        )

    @staticmethod
    def calibration_rejected(account_id: UUID, issues: list[dict]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CALIBRATION_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="account",
            entity_id=account_id,
            description=f"Calibration rejected with {len(issues)} issues",
            details={"issues": issues},
            is_user_action=True,
        )

    @staticmethod
    def reconciliation_checked(
        account_id: UUID,
        pairs_checked: int,
        issues_found: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECONCILIATION_CHECKED,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Reconciliation checked {pairs_checked} pairs, {issues_found} issues",
            details={
                "pairs_checked": pairs_checked,
                "issues_found": issues_found,
            },
        )

    @staticmethod
    def reconciliation_issue_detected(
        issue_id: UUID,
        account_id: UUID,
        diff: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECONCILIATION_ISSUE_DETECTED,
            severity=AuditSeverity.WARNING,
            entity_type="reconciliation_issue",
            entity_id=issue_id,
            correlation_id=correlation_id,
            description=f"Ledger drift of {diff} detected",
            details={
                "account_id": str(account_id),
                "diff": str(diff),
            },
        )

    @staticmethod
    def reconciliation_failed(
        account_id: UUID,
        stage: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECONCILIATION_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Reconciliation failed at {stage}",
            details={"stage": stage},
            error_message=error_message,
        )

    @staticmethod
    def issue_closed(issue_id: UUID, status: str) -> AuditEvent:
        event_type = (
            AuditEventType.ISSUE_RESOLVED
            if status == "resolved"
            else AuditEventType.ISSUE_IGNORED
        )
        return AuditEvent(
            event_type=event_type,
            entity_type="reconciliation_issue",
            entity_id=issue_id,
            description=f"Reconciliation issue marked {status}",
            details={"status": status},
            is_user_action=True,
        )

    @staticmethod
    def budget_plan_changed(
        event_type: AuditEventType,
        plan_id: UUID,
        round_number: int,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            entity_type="budget_plan",
            entity_id=plan_id,
            description=f"{event_type.value.replace('_', ' ').capitalize()} (round {round_number})",
            details={"round_number": round_number, **(details or {})},
            is_user_action=True,
        )

    @staticmethod
    def budget_periods_refreshed(
        refreshed: int,
        failed: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BUDGET_PERIODS_REFRESHED,
            severity=AuditSeverity.WARNING if failed else AuditSeverity.INFO,
            entity_type="budget_period",
            correlation_id=correlation_id,
            description=f"Budget periods refreshed: {refreshed} ok, {failed} failed",
            details={"refreshed": refreshed, "failed": failed},
        )

    @staticmethod
    def budget_refresh_failed(
        record_id: UUID,
        stage: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BUDGET_REFRESH_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="budget_period",
            entity_id=record_id,
            correlation_id=correlation_id,
            description=f"Budget period refresh failed at {stage}",
            details={"stage": stage},
            error_message=error_message,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def storage_error(
        operation: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STORAGE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"Storage error during {operation}",
            error_message=error_message,
            details={"operation": operation},
            correlation_id=correlation_id,
        )
