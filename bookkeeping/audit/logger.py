"""
Audit Logger

structlog is configured once, here, for the whole package. Engines take
module loggers with structlog.get_logger(__name__).

DESIGN DECISION: Writing the audit trail is best effort. A failed append is
logged locally and reported as False; it never aborts the calibration,
check or refresh that produced the event.
"""

import logging
import sys
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from bookkeeping.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from bookkeeping.services.storage import AuditStorageInterface


# JSON lines through the stdlib root logger
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(level: str = "INFO") -> None:
    """Route structlog output through the stdlib root logger at the given level."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
    )


class AuditLogger:
    """Writes audit events to the local log and, when configured, to audit storage."""

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Args:
            storage: Where events are appended. None keeps them in the local log only.
        """
        self._storage = storage
        self._logger = structlog.get_logger(__name__)

    async def log(self, event: AuditEvent) -> bool:
        """
        Log one event locally at a level matching its severity, then append it
        to storage.

        Returns False only when the storage append failed.
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_calibration_recorded(
        self,
        calibration_id: UUID,
        account_id: UUID,
        balance: Decimal,
    ) -> None:
        await self.log(
            AuditEventBuilder.calibration_recorded(calibration_id, account_id, balance)
        )

    async def log_calibration_rejected(
        self,
        account_id: UUID,
        issues: list[dict],
    ) -> None:
        await self.log(AuditEventBuilder.calibration_rejected(account_id, issues))

    async def log_reconciliation_checked(
        self,
        account_id: UUID,
        pairs_checked: int,
        issues_found: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a completed single-account check."""
        await self.log(
            AuditEventBuilder.reconciliation_checked(
                account_id=account_id,
                pairs_checked=pairs_checked,
                issues_found=issues_found,
                correlation_id=correlation_id,
            )
        )

    async def log_reconciliation_failed(
        self,
        account_id: UUID,
        stage: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a check that stopped on a storage error."""
        await self.log(
            AuditEventBuilder.reconciliation_failed(
                account_id=account_id,
                stage=stage,
                error_message=error_message,
                correlation_id=correlation_id,
            )
        )

    async def log_budget_refresh_failed(
        self,
        record_id: UUID,
        stage: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(
            AuditEventBuilder.budget_refresh_failed(
                record_id=record_id,
                stage=stage,
                error_message=error_message,
                correlation_id=correlation_id,
            )
        )

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_storage_error(
        self,
        operation: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(
            AuditEventBuilder.storage_error(
                operation=operation,
                error_message=error_message,
                correlation_id=correlation_id,
            )
        )


def create_correlation_id() -> UUID:
    """One id per batch check or refresh pass, shared by every event it emits."""
    return uuid4()
