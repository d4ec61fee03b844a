"""Tests for the budget engine: plan lifecycle and period refresh."""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from conftest import at, transfer

from bookkeeping.audit import AuditLogger
from bookkeeping.budget import BudgetEngine
from bookkeeping.config import BudgetSettings
from bookkeeping.models.audit import AuditEventType
from bookkeeping.models.budget import (
    BudgetPlan,
    IndicatorStatus,
    PeriodType,
    PlanStatus,
    PlanType,
)
from bookkeeping.services.storage import DuplicateError, NotFoundError


@pytest.fixture
def engine(storage, ledger_settings, budget_settings):
    return BudgetEngine(
        storage,
        storage,
        audit_logger=AuditLogger(storage),
        ledger_settings=ledger_settings,
        budget_settings=budget_settings,
    )


def food_plan(chart, **kwargs) -> BudgetPlan:
    defaults = dict(
        plan_type=PlanType.CATEGORY,
        category_account_id=chart.food.id,
        hard_limit=Decimal("500"),
        start_date=date(2025, 1, 1),
    )
    defaults.update(kwargs)
    return BudgetPlan(**defaults)


class TestPlanLifecycle:
    """Creating, editing and restarting plans."""

    @pytest.mark.asyncio
    async def test_create_generates_first_round(self, chart, storage, engine):
        plan = await engine.create_plan(food_plan(chart))

        assert plan.round_number == 1
        assert plan.status == PlanStatus.ACTIVE
        assert plan.end_date == date(2025, 12, 31)

        records = await storage.get_period_records(plan.id)
        assert len(records) == 12
        assert all(r.indicator_status == IndicatorStatus.PENDING for r in records)
        assert all(r.actual_amount is None for r in records)
        assert all(r.hard_limit == Decimal("500") for r in records)

        events = await storage.get_recent_events()
        assert any(e.event_type == AuditEventType.BUDGET_PLAN_CREATED for e in events)

    @pytest.mark.asyncio
    async def test_default_limit_currency_from_settings(self, chart, storage, ledger_settings):
        engine = BudgetEngine(
            storage,
            storage,
            ledger_settings=ledger_settings,
            budget_settings=BudgetSettings(default_limit_currency="usd"),
        )

        implicit = await engine.create_plan(food_plan(chart))
        assert implicit.limit_currency == "USD"
        assert (await storage.get_budget_plan(implicit.id)).limit_currency == "USD"

        explicit = await engine.create_plan(
            food_plan(chart, category_account_id=chart.transport.id, limit_currency="JPY")
        )
        assert explicit.limit_currency == "JPY"

    @pytest.mark.asyncio
    async def test_only_one_total_plan(self, engine):
        await engine.create_plan(
            BudgetPlan(plan_type=PlanType.TOTAL, hard_limit=Decimal("3000"), start_date=date(2025, 1, 1))
        )
        with pytest.raises(DuplicateError):
            await engine.create_plan(
                BudgetPlan(plan_type=PlanType.TOTAL, hard_limit=Decimal("1"), start_date=date(2025, 1, 1))
            )

    @pytest.mark.asyncio
    async def test_one_active_plan_per_category(self, chart, engine):
        first = await engine.create_plan(food_plan(chart))
        with pytest.raises(DuplicateError):
            await engine.create_plan(food_plan(chart))

        await engine.set_plan_status(first.id, PlanStatus.PAUSED)
        second = await engine.create_plan(food_plan(chart))
        assert second.status == PlanStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_cannot_set_expired_directly(self, chart, engine):
        plan = await engine.create_plan(food_plan(chart))
        with pytest.raises(ValueError):
            await engine.set_plan_status(plan.id, PlanStatus.EXPIRED)

    @pytest.mark.asyncio
    async def test_update_hard_limit_rewrites_future_records_only(self, chart, storage, engine):
        plan = await engine.create_plan(food_plan(chart))
        updated = await engine.update_plan(plan.id, hard_limit=Decimal("300"), today=date(2025, 3, 10))

        assert updated.hard_limit == Decimal("300")
        records = await storage.get_period_records(plan.id)
        limits = {r.period_start.month: r.hard_limit for r in records}
        assert limits[1] == limits[2] == limits[3] == Decimal("500")
        assert limits[4] == limits[12] == Decimal("300")

    @pytest.mark.asyncio
    async def test_restart_adds_a_round(self, chart, storage, engine):
        plan = await engine.create_plan(food_plan(chart))
        restarted = await engine.restart(plan.id, new_start=date(2026, 1, 1), new_hard_limit=Decimal("800"))

        assert restarted.round_number == 2
        assert restarted.start_date == date(2026, 1, 1)
        assert restarted.end_date == date(2026, 12, 31)
        assert len(await storage.get_period_records(plan.id, 1)) == 12
        round_two = await storage.get_period_records(plan.id, 2)
        assert len(round_two) == 12
        assert all(r.hard_limit == Decimal("800") for r in round_two)

    @pytest.mark.asyncio
    async def test_restart_reactivates_expired_plan(self, chart, engine):
        plan = await engine.create_plan(food_plan(chart))
        assert await engine.expire_plans(today=date(2026, 1, 1)) == [plan.id]

        restarted = await engine.restart(plan.id, new_start=date(2026, 1, 1))
        assert restarted.status == PlanStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_change_period_type_replaces_current_round(self, chart, storage, engine):
        plan = await engine.create_plan(food_plan(chart))
        changed = await engine.change_period_type(plan.id, PeriodType.WEEKLY, date(2025, 2, 3))

        assert changed.period == PeriodType.WEEKLY
        assert changed.round_number == 2
        assert changed.end_date == date(2025, 4, 27)
        records = await storage.get_period_records(plan.id)
        assert len(records) == 12
        assert all(r.round_number == 2 for r in records)
        assert records[0].period_end == date(2025, 2, 9)

    @pytest.mark.asyncio
    async def test_expire_plans_leaves_running_plans(self, chart, engine):
        await engine.create_plan(food_plan(chart))
        assert await engine.expire_plans(today=date(2025, 12, 31)) == []

    @pytest.mark.asyncio
    async def test_delete_plan_removes_records(self, chart, storage, engine):
        plan = await engine.create_plan(food_plan(chart))
        assert await engine.delete_plan(plan.id)
        assert await storage.get_period_records(plan.id) == []
        with pytest.raises(NotFoundError):
            await engine.get_plan(plan.id)


class TestRefresh:
    """refresh_active_periods and friends."""

    @pytest.mark.asyncio
    async def test_refresh_writes_active_period_only(self, chart, storage, engine):
        plan = await engine.create_plan(food_plan(chart))
        await storage.add_transaction(transfer(chart.bank, chart.groceries, "200", at(2025, 1, 10)))

        result = await engine.refresh_active_periods(today=date(2025, 1, 15))

        assert result.total_records == 1
        assert result.refreshed == 1
        assert result.failed == 0
        records = await storage.get_period_records(plan.id)
        assert records[0].actual_amount == Decimal("200")
        assert records[0].soft_limit == Decimal("0")
        assert records[0].indicator_status == IndicatorStatus.GREEN
        assert all(r.indicator_status == IndicatorStatus.PENDING for r in records[1:])

    @pytest.mark.asyncio
    async def test_refresh_is_idempotent(self, chart, storage, engine):
        plan = await engine.create_plan(food_plan(chart))
        await storage.add_transaction(transfer(chart.bank, chart.food, "650", at(2025, 1, 10)))

        await engine.refresh_active_periods(today=date(2025, 1, 15))
        first = await storage.get_period_records(plan.id)
        await engine.refresh_active_periods(today=date(2025, 1, 15))
        second = await storage.get_period_records(plan.id)

        assert first == second
        assert second[0].indicator_status == IndicatorStatus.RED

    @pytest.mark.asyncio
    async def test_star_when_within_soft_limit(self, chart, storage, engine):
        await storage.add_transaction(transfer(chart.bank, chart.food, "300", at(2024, 12, 5)))
        await storage.add_transaction(transfer(chart.bank, chart.food, "300", at(2024, 11, 5)))
        await storage.add_transaction(transfer(chart.bank, chart.food, "300", at(2024, 10, 5)))
        await storage.add_transaction(transfer(chart.bank, chart.food, "100", at(2025, 1, 5)))
        plan = await engine.create_plan(food_plan(chart))

        await engine.refresh_active_periods(today=date(2025, 1, 20))
        record = (await storage.get_period_records(plan.id))[0]
        assert record.soft_limit == Decimal("300")
        assert record.indicator_status == IndicatorStatus.STAR

    @pytest.mark.asyncio
    async def test_record_keeps_hard_limit_snapshot(self, chart, storage, engine):
        plan = await engine.create_plan(food_plan(chart))
        await engine.update_plan(plan.id, hard_limit=Decimal("50"), today=date(2025, 1, 2))
        await storage.add_transaction(transfer(chart.bank, chart.food, "100", at(2025, 1, 10)))

        await engine.refresh_active_periods(today=date(2025, 1, 15))
        record = (await storage.get_period_records(plan.id))[0]
        assert record.hard_limit == Decimal("500")
        assert record.indicator_status == IndicatorStatus.GREEN

    @pytest.mark.asyncio
    async def test_failing_plan_does_not_stop_others(self, chart, storage, engine):
        healthy = await engine.create_plan(food_plan(chart))
        broken = await engine.create_plan(food_plan(chart, category_account_id=chart.transport.id))
        # Point the plan at an account that no longer exists
        await storage.save_budget_plan(broken.model_copy(update={"category_account_id": uuid4()}))
        await storage.add_transaction(transfer(chart.bank, chart.food, "40", at(2025, 1, 10)))

        result = await engine.refresh_active_periods(today=date(2025, 1, 15))

        assert result.total_records == 2
        assert result.refreshed == 1
        assert result.failed == 1
        failure = next(o for o in result.outcomes if not o.success)
        assert failure.plan_id == broken.id
        assert failure.stage == "compute_spend"
        healthy_record = (await storage.get_period_records(healthy.id))[0]
        assert healthy_record.actual_amount == Decimal("40")

        events = await storage.get_recent_events()
        assert any(e.event_type == AuditEventType.BUDGET_REFRESH_FAILED for e in events)

    @pytest.mark.asyncio
    async def test_refresh_unknown_record(self, engine):
        with pytest.raises(NotFoundError):
            await engine.refresh_record(uuid4())

    @pytest.mark.asyncio
    async def test_preview_does_not_write(self, chart, storage, engine):
        plan = await engine.create_plan(food_plan(chart))
        await storage.add_transaction(transfer(chart.bank, chart.food, "120", at(2025, 1, 10)))

        items = await engine.preview_recalculation(today=date(2025, 1, 15))

        assert len(items) == 1
        assert items[0].old_actual_amount is None
        assert items[0].new_actual_amount == Decimal("120")
        assert items[0].changed
        stored = (await storage.get_period_records(plan.id))[0]
        assert stored.actual_amount is None


class TestDashboard:
    """Current-period summary across plans."""

    @pytest.mark.asyncio
    async def test_totals_are_converted(self, chart, storage, engine):
        await engine.create_plan(food_plan(chart))
        await engine.create_plan(BudgetPlan(
            plan_type=PlanType.TOTAL,
            hard_limit=Decimal("100"),
            limit_currency="USD",
            start_date=date(2025, 1, 1),
        ))
        await storage.add_transaction(transfer(chart.bank, chart.food, "70", at(2025, 1, 10)))
        await engine.refresh_active_periods(today=date(2025, 1, 15))

        summary = await engine.dashboard_summary(today=date(2025, 1, 15), currency="CNY")

        assert summary.currency == "CNY"
        assert len(summary.plans) == 2
        assert summary.total_budget == Decimal("1200.00")
        # 70 CNY in the food plan, 10 USD (70 CNY / 7) in the total plan
        assert summary.total_actual == Decimal("140.00")
        assert summary.indicator_counts["green"] == 2

    @pytest.mark.asyncio
    async def test_plans_outside_their_round(self, chart, engine):
        await engine.create_plan(food_plan(chart))
        summary = await engine.dashboard_summary(today=date(2027, 1, 1), currency="CNY")
        assert summary.plans[0].current_record is None
        assert summary.total_budget == Decimal("0")
