"""Tests for the BookkeepingService facade."""

import pytest
from datetime import date
from decimal import Decimal

from conftest import at, transfer

from bookkeeping.audit import AuditLogger
from bookkeeping.models.audit import AuditEventType
from bookkeeping.models.budget import BudgetPlan, PlanType
from bookkeeping.models.ledger import Account, AccountClass, AccountType, CheckStatus
from bookkeeping.models.validation import LedgerValidationError
from bookkeeping.orchestrator import BookkeepingService, create_app_components


@pytest.fixture
def service(storage):
    return BookkeepingService(storage, storage, AuditLogger(storage))


class TestLedgerWrites:
    """Validation gate, audit trail and immediate reconciliation."""

    @pytest.mark.asyncio
    async def test_calibration_triggers_reconciliation(self, chart, storage, service):
        await service.record_calibration(chart.bank.id, Decimal("100"), at=at(2025, 1, 1))
        await service.record_transaction(transfer(chart.salary, chart.bank, "40", at(2025, 1, 5)))

        _, check = await service.record_calibration(chart.bank.id, Decimal("150"), at=at(2025, 1, 10))

        assert check.status == CheckStatus.CHECKED
        assert check.issues_found == 1
        assert check.issues[0].diff == Decimal("-10")
        assert len(await service.list_issues()) == 1

    @pytest.mark.asyncio
    async def test_first_calibration_is_insufficient(self, chart, service):
        calibration, check = await service.record_calibration(
            chart.bank.id, Decimal("100"), at=at(2025, 1, 1), is_opening=True
        )
        assert calibration.is_opening
        assert check.status == CheckStatus.INSUFFICIENT_CALIBRATIONS

    @pytest.mark.asyncio
    async def test_rejected_calibration_is_audited(self, chart, storage, service):
        await service.record_calibration(chart.bank.id, Decimal("100"), at=at(2025, 1, 1))

        with pytest.raises(LedgerValidationError) as exc_info:
            await service.record_calibration(chart.bank.id, Decimal("100"), at=at(2025, 1, 2))

        assert exc_info.value.result.errors[0].issue_type == "duplicate_balance"
        assert len(await storage.get_calibrations(chart.bank.id)) == 1
        events = await storage.get_recent_events()
        assert any(e.event_type == AuditEventType.CALIBRATION_REJECTED for e in events)

    @pytest.mark.asyncio
    async def test_invalid_account_not_saved(self, storage, service):
        account = Account(name="Cash", account_class=AccountClass.REAL, type=AccountType.ASSET)
        with pytest.raises(LedgerValidationError):
            await service.save_account(account)
        assert await storage.get_account(account.id) is None

    @pytest.mark.asyncio
    async def test_balance_after_writes(self, chart, service):
        await service.record_calibration(chart.card.id, Decimal("-200"), at=at(2025, 1, 1))
        await service.record_transaction(transfer(chart.card, chart.food, "50", at(2025, 1, 3)))
        await service.record_transaction(transfer(chart.bank, chart.card, "100", at(2025, 1, 4)))

        assert await service.balance_at(chart.card.id, at(2025, 1, 5)) == Decimal("-150")

    @pytest.mark.asyncio
    async def test_rates(self, service):
        with pytest.raises(ValueError):
            await service.set_rate("USD", "HKD", Decimal("0"))

        await service.set_rate("USD", "HKD", Decimal("7.8"))
        assert await service.convert(Decimal("10"), "USD", "HKD") == Decimal("78.0")


class TestBudgets:
    """Plans go through validation before the engine."""

    @pytest.mark.asyncio
    async def test_invalid_plan_rejected(self, chart, service):
        plan = BudgetPlan(
            plan_type=PlanType.CATEGORY,
            category_account_id=chart.bank.id,
            hard_limit=Decimal("100"),
            start_date=date(2025, 1, 1),
        )
        with pytest.raises(LedgerValidationError):
            await service.create_budget_plan(plan)

    @pytest.mark.asyncio
    async def test_plan_round_trip(self, chart, service):
        plan = await service.create_budget_plan(BudgetPlan(
            plan_type=PlanType.CATEGORY,
            category_account_id=chart.food.id,
            hard_limit=Decimal("100"),
            start_date=date(2025, 1, 1),
        ))
        await service.record_transaction(transfer(chart.bank, chart.organic, "30", at(2025, 1, 3)))

        result = await service.refresh_budget_periods(today=date(2025, 1, 4))
        assert result.refreshed == 1
        summary = await service.dashboard_summary(today=date(2025, 1, 4), currency="CNY")
        assert summary.total_actual == Decimal("30.00")
        assert summary.plans[0].plan.id == plan.id


class TestCreateAppComponents:
    """Backend selection."""

    def test_memory_backend(self):
        service = create_app_components(backend="memory")
        assert isinstance(service, BookkeepingService)
        assert isinstance(service.audit_logger, AuditLogger)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_app_components(backend="sqlite")

    @pytest.mark.asyncio
    async def test_memory_backend_shares_one_store(self):
        service = create_app_components(backend="memory")
        account = Account(
            name="Cash",
            account_class=AccountClass.REAL,
            type=AccountType.ASSET,
            currency="CNY",
        )
        await service.save_account(account)
        _, check = await service.record_calibration(account.id, Decimal("5"), at=at(2025, 1, 1))
        assert check.status == CheckStatus.INSUFFICIENT_CALIBRATIONS
        assert await service.balance_at(account.id, at(2025, 1, 2)) == Decimal("5")
