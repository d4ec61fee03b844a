"""Tests for the audit logger."""

import pytest
from decimal import Decimal
from uuid import uuid4

from bookkeeping.audit import AuditLogger, create_correlation_id
from bookkeeping.models.audit import AuditEventBuilder, AuditEventType, AuditSeverity
from bookkeeping.services.storage import InMemoryStorage


class FailingAuditStorage(InMemoryStorage):
    async def append_event(self, event):
        raise RuntimeError("audit sheet is read-only")


class TestAuditLogger:
    """Local logging plus best-effort persistence."""

    @pytest.mark.asyncio
    async def test_persists_event(self):
        storage = InMemoryStorage()
        audit = AuditLogger(storage)
        calibration_id, account_id = uuid4(), uuid4()

        await audit.log_calibration_recorded(calibration_id, account_id, Decimal("12.50"))

        events = await storage.get_events_by_entity("calibration", calibration_id)
        assert len(events) == 1
        assert events[0].event_type == AuditEventType.CALIBRATION_RECORDED
        assert events[0].details["balance"] == "12.50"

    @pytest.mark.asyncio
    async def test_storage_failure_is_swallowed(self):
        audit = AuditLogger(FailingAuditStorage())
        ok = await audit.log(AuditEventBuilder.transaction_deleted(uuid4()))
        assert ok is False

    @pytest.mark.asyncio
    async def test_without_storage(self):
        assert await AuditLogger().log(AuditEventBuilder.transaction_deleted(uuid4())) is True

    @pytest.mark.asyncio
    async def test_correlation_ties_batch_events(self):
        storage = InMemoryStorage()
        audit = AuditLogger(storage)
        correlation_id = create_correlation_id()

        await audit.log_reconciliation_checked(uuid4(), 2, 0, correlation_id)
        await audit.log_reconciliation_failed(uuid4(), "fetch_calibrations", "timeout", correlation_id)
        await audit.log_reconciliation_checked(uuid4(), 1, 1)

        events = await storage.get_events_by_correlation_id(correlation_id)
        assert len(events) == 2
        failed = next(e for e in events if e.event_type == AuditEventType.RECONCILIATION_FAILED)
        assert failed.severity == AuditSeverity.ERROR
        assert failed.details["stage"] == "fetch_calibrations"

    @pytest.mark.asyncio
    async def test_storage_error_event(self):
        storage = InMemoryStorage()
        await AuditLogger(storage).log_storage_error("list_issues", "quota exceeded")

        events = await storage.get_recent_events(limit=1)
        assert events[0].event_type == AuditEventType.STORAGE_ERROR
        assert events[0].error_message == "quota exceeded"
