"""
Budget Engine

Owns the plan lifecycle and keeps period records up to date.

Plan rounds:
- create_plan generates round 1 (periods_per_round records, all pending)
- restart bumps the round, regenerates records and reactivates the plan
- change_period_type bumps the round, DELETES the current round's records
  and regenerates them with the new period type (not reversible)

DESIGN DECISION: Period records snapshot hard_limit at generation time.
refresh_active_periods recomputes spend with the plan's LIVE filters and
currency but compares it with the record's own hard_limit, so editing a
plan never rewrites the verdict of past periods.

Refresh is idempotent: it only overwrites actual_amount, soft_limit and
indicator_status, and only for records whose window contains `today`.
One failing record is reported and never stops the others.
"""

import asyncio
from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from bookkeeping.audit.logger import AuditLogger, create_correlation_id
from bookkeeping.budget.aggregator import BudgetAggregator, classify
from bookkeeping.budget.periods import generate_periods, plan_end_date
from bookkeeping.config import BudgetSettings, LedgerSettings, get_settings
from bookkeeping.currency.converter import CurrencyConverter
from bookkeeping.errors import ConfigurationError
from bookkeeping.models.audit import AuditEventBuilder, AuditEventType
from bookkeeping.models.budget import (
    AccountFilterMode,
    BudgetPeriodRecord,
    BudgetPlan,
    DashboardPlanEntry,
    DashboardSummary,
    IndicatorStatus,
    PeriodType,
    PlanStatus,
    PlanType,
    RecalculationItem,
    RecordRefreshOutcome,
    RefreshResult,
)
from bookkeeping.models.ledger import utcnow
from bookkeeping.services.storage import (
    BudgetStorageInterface,
    DuplicateError,
    LedgerStorageInterface,
    NotFoundError,
    StorageError,
)


logger = structlog.get_logger(__name__)


class RecordRefreshError(Exception):
    """A single record could not be refreshed; carries the failing stage."""

    def __init__(self, stage: str, cause: Exception):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage}: {cause}")


class BudgetEngine:
    """Plan lifecycle, period refresh and dashboard summaries."""

    def __init__(
        self,
        ledger_storage: LedgerStorageInterface,
        budget_storage: BudgetStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        ledger_settings: Optional[LedgerSettings] = None,
        budget_settings: Optional[BudgetSettings] = None,
    ):
        self._ledger = ledger_storage
        self._budgets = budget_storage
        self._audit = audit_logger or AuditLogger()
        self._ledger_settings = ledger_settings or get_settings().ledger
        self._settings = budget_settings or get_settings().budget
        self._aggregator = BudgetAggregator(
            ledger_storage, self._ledger_settings, self._settings
        )

    @property
    def aggregator(self) -> BudgetAggregator:
        return self._aggregator

    async def compute_spend(
        self,
        plan: BudgetPlan,
        period_start: date,
        period_end: date,
        converter: Optional[CurrencyConverter] = None,
    ) -> Decimal:
        return await self._aggregator.spend(plan, period_start, period_end, converter)

    # =========================================================================
    # PLAN LIFECYCLE
    # =========================================================================

    def _build_round(
        self,
        plan_id: UUID,
        round_number: int,
        start_date: date,
        period: PeriodType,
        hard_limit: Decimal,
    ) -> list[BudgetPeriodRecord]:
        return [
            BudgetPeriodRecord(
                plan_id=plan_id,
                round_number=round_number,
                period_index=slot.index,
                period_start=slot.start,
                period_end=slot.end,
                hard_limit=hard_limit,
            )
            for slot in generate_periods(start_date, period, self._settings.periods_per_round)
        ]

    async def get_plan(self, plan_id: UUID) -> BudgetPlan:
        plan = await self._budgets.get_budget_plan(plan_id)
        if plan is None:
            raise NotFoundError(f"Budget plan not found: {plan_id}")
        return plan

    async def _check_unique(self, plan: BudgetPlan) -> None:
        """One non-expired total plan; one active plan per category."""
        for other in await self._budgets.list_budget_plans(plan_type=plan.plan_type):
            if other.id == plan.id:
                continue
            if plan.plan_type == PlanType.TOTAL and other.status != PlanStatus.EXPIRED:
                raise DuplicateError(f"A total budget plan already exists: {other.id}")
            if (
                plan.plan_type == PlanType.CATEGORY
                and other.status == PlanStatus.ACTIVE
                and other.category_account_id == plan.category_account_id
            ):
                raise DuplicateError(
                    f"An active plan already targets category {plan.category_account_id}"
                )

    async def create_plan(self, plan: BudgetPlan) -> BudgetPlan:
        """
        Store a new plan and generate its first round of period records.

        A plan built without an explicit limit currency takes the configured
        default.

        Raises:
            DuplicateError: The plan clashes with an existing one
        """
        await self._check_unique(plan)

        if "limit_currency" not in plan.model_fields_set:
            plan = plan.model_copy(update={
                "limit_currency": self._settings.default_limit_currency.upper()
            })

        plan = plan.model_copy(update={
            "status": PlanStatus.ACTIVE,
            "round_number": 1,
            "end_date": plan_end_date(
                plan.start_date, plan.period, self._settings.periods_per_round
            ),
        })
        await self._budgets.save_budget_plan(plan)
        await self._budgets.add_period_records(
            self._build_round(plan.id, 1, plan.start_date, plan.period, plan.hard_limit)
        )

        logger.info("budget_plan_created", plan_id=str(plan.id), plan_type=plan.plan_type.value)
        await self._audit.log(
            AuditEventBuilder.budget_plan_changed(
                AuditEventType.BUDGET_PLAN_CREATED,
                plan.id,
                plan.round_number,
                {"plan_type": plan.plan_type.value, "hard_limit": str(plan.hard_limit)},
            )
        )
        return plan

    async def update_plan(
        self,
        plan_id: UUID,
        hard_limit: Optional[Decimal] = None,
        soft_limit_enabled: Optional[bool] = None,
        account_filter_mode: Optional[AccountFilterMode] = None,
        account_filter_ids: Optional[list[UUID]] = None,
        included_category_ids: Optional[list[UUID]] = None,
        limit_currency: Optional[str] = None,
        today: Optional[date] = None,
    ) -> BudgetPlan:
        """
        Edit a plan in place.

        A new hard limit is also written into every record of the plan whose
        period starts on or after `today`; earlier records keep their snapshot.
        """
        plan = await self.get_plan(plan_id)
        changes = {
            name: value
            for name, value in {
                "hard_limit": hard_limit,
                "soft_limit_enabled": soft_limit_enabled,
                "account_filter_mode": account_filter_mode,
                "account_filter_ids": account_filter_ids,
                "included_category_ids": included_category_ids,
                "limit_currency": limit_currency,
            }.items()
            if value is not None
        }
        if not changes:
            return plan

        updated = BudgetPlan.model_validate(
            {**plan.model_dump(), **changes, "updated_at": utcnow()}
        )
        await self._budgets.save_budget_plan(updated)

        rewritten = 0
        if hard_limit is not None:
            today = today or date.today()
            for record in await self._budgets.get_period_records(plan_id):
                if record.period_start >= today:
                    await self._budgets.update_period_record(
                        record.model_copy(update={"hard_limit": updated.hard_limit})
                    )
                    rewritten += 1

        await self._audit.log(
            AuditEventBuilder.budget_plan_changed(
                AuditEventType.BUDGET_PLAN_UPDATED,
                plan_id,
                updated.round_number,
                {"fields": sorted(changes), "records_rewritten": rewritten},
            )
        )
        return updated

    async def set_plan_status(self, plan_id: UUID, status: PlanStatus) -> BudgetPlan:
        """Pause or resume a plan. Expiry is handled by expire_plans."""
        if status not in (PlanStatus.ACTIVE, PlanStatus.PAUSED):
            raise ValueError(f"Plans can only be set active or paused, not {status.value}")

        plan = await self.get_plan(plan_id)
        if status == PlanStatus.ACTIVE:
            await self._check_unique(plan.model_copy(update={"status": status}))
        plan = plan.model_copy(update={"status": status, "updated_at": utcnow()})
        await self._budgets.save_budget_plan(plan)
        await self._audit.log(
            AuditEventBuilder.budget_plan_changed(
                AuditEventType.BUDGET_PLAN_UPDATED,
                plan_id,
                plan.round_number,
                {"status": status.value},
            )
        )
        return plan

    async def delete_plan(self, plan_id: UUID) -> bool:
        """Delete a plan and every one of its period records."""
        plan = await self.get_plan(plan_id)
        deleted = await self._budgets.delete_budget_plan(plan_id)
        if deleted:
            await self._audit.log(
                AuditEventBuilder.budget_plan_changed(
                    AuditEventType.BUDGET_PLAN_DELETED, plan_id, plan.round_number
                )
            )
        return deleted

    async def expire_plans(self, today: Optional[date] = None) -> list[UUID]:
        """Mark active plans whose end date has passed as expired."""
        today = today or date.today()
        expired = []
        for plan in await self._budgets.list_budget_plans(status=PlanStatus.ACTIVE):
            if plan.end_date is not None and plan.end_date < today:
                await self._budgets.save_budget_plan(
                    plan.model_copy(update={"status": PlanStatus.EXPIRED, "updated_at": utcnow()})
                )
                expired.append(plan.id)
        if expired:
            logger.info("budget_plans_expired", count=len(expired), today=today.isoformat())
        return expired

    async def restart(
        self,
        plan_id: UUID,
        new_start: Optional[date] = None,
        new_hard_limit: Optional[Decimal] = None,
    ) -> BudgetPlan:
        """
        Start a new round: bump round_number, regenerate period records and
        reactivate the plan. Records of earlier rounds are kept.
        """
        plan = await self.get_plan(plan_id)
        start = new_start or date.today()
        hard_limit = new_hard_limit if new_hard_limit is not None else plan.hard_limit
        round_number = plan.round_number + 1

        restarted = BudgetPlan.model_validate({
            **plan.model_dump(),
            "hard_limit": hard_limit,
            "start_date": start,
            "end_date": plan_end_date(start, plan.period, self._settings.periods_per_round),
            "round_number": round_number,
            "status": PlanStatus.ACTIVE,
            "updated_at": utcnow(),
        })
        await self._check_unique(restarted)
        await self._budgets.save_budget_plan(restarted)
        await self._budgets.add_period_records(
            self._build_round(plan_id, round_number, start, plan.period, hard_limit)
        )

        await self._audit.log(
            AuditEventBuilder.budget_plan_changed(
                AuditEventType.BUDGET_PLAN_RESTARTED,
                plan_id,
                round_number,
                {"start_date": start.isoformat(), "hard_limit": str(hard_limit)},
            )
        )
        return restarted

    async def change_period_type(
        self,
        plan_id: UUID,
        new_period: PeriodType,
        new_start: date,
    ) -> BudgetPlan:
        """
        Switch a plan between weekly and monthly periods.

        Deletes the current round's records before generating the next
        round. This cannot be undone.
        """
        plan = await self.get_plan(plan_id)
        round_number = plan.round_number + 1

        changed = plan.model_copy(update={
            "period": new_period,
            "start_date": new_start,
            "end_date": plan_end_date(new_start, new_period, self._settings.periods_per_round),
            "round_number": round_number,
            "updated_at": utcnow(),
        })
        await self._budgets.save_budget_plan(changed)
        removed = await self._budgets.delete_period_records(plan_id, plan.round_number)
        await self._budgets.add_period_records(
            self._build_round(plan_id, round_number, new_start, new_period, plan.hard_limit)
        )

        logger.warning(
            "budget_period_type_changed",
            plan_id=str(plan_id),
            old_period=plan.period.value,
            new_period=new_period.value,
            records_removed=removed,
        )
        await self._audit.log(
            AuditEventBuilder.budget_plan_changed(
                AuditEventType.BUDGET_PERIOD_CHANGED,
                plan_id,
                round_number,
                {"period": new_period.value, "records_removed": removed},
            )
        )
        return changed

    # =========================================================================
    # PERIOD REFRESH
    # =========================================================================

    async def _compute(
        self,
        record: BudgetPeriodRecord,
        plan: BudgetPlan,
        converter: CurrencyConverter,
    ) -> tuple[Decimal, Optional[Decimal], IndicatorStatus]:
        stage = "compute_spend"
        try:
            actual = await self._aggregator.spend(
                plan, record.period_start, record.period_end, converter
            )
            stage = "soft_limit"
            soft_limit = await self._aggregator.soft_limit(plan, record.period_start, converter)
        except (StorageError, ConfigurationError) as e:
            raise RecordRefreshError(stage, e)
        return actual, soft_limit, classify(actual, record.hard_limit, soft_limit)

    async def _refresh_one(
        self,
        record: BudgetPeriodRecord,
        plans: dict[UUID, Optional[BudgetPlan]],
        converter: CurrencyConverter,
    ) -> RecordRefreshOutcome:
        if record.plan_id not in plans:
            try:
                plans[record.plan_id] = await self._budgets.get_budget_plan(record.plan_id)
            except StorageError as e:
                raise RecordRefreshError("load_plan", e)
        plan = plans[record.plan_id]
        if plan is None:
            raise RecordRefreshError(
                "load_plan", NotFoundError(f"Budget plan not found: {record.plan_id}")
            )

        actual, soft_limit, status = await self._compute(record, plan, converter)
        try:
            await self._budgets.update_period_record(record.model_copy(update={
                "actual_amount": actual,
                "soft_limit": soft_limit,
                "indicator_status": status,
            }))
        except StorageError as e:
            raise RecordRefreshError("write_back", e)

        logger.debug(
            "budget_period_refreshed",
            record_id=str(record.id),
            plan_id=str(plan.id),
            actual_amount=str(actual),
            soft_limit=str(soft_limit) if soft_limit is not None else None,
            indicator_status=status.value,
        )
        return RecordRefreshOutcome(
            record_id=record.id,
            plan_id=plan.id,
            success=True,
            actual_amount=actual,
            soft_limit=soft_limit,
            indicator_status=status,
        )

    async def refresh_record(self, record_id: UUID) -> RecordRefreshOutcome:
        """
        Recompute one record. Fails closed.

        Raises:
            NotFoundError: The record or its plan does not exist
            RecordRefreshError: Computing or storing the new values failed
        """
        record = await self._budgets.get_period_record(record_id)
        if record is None:
            raise NotFoundError(f"Period record not found: {record_id}")
        return await self._refresh_one(record, {}, CurrencyConverter(self._ledger))

    async def refresh_active_periods(self, today: Optional[date] = None) -> RefreshResult:
        """
        Recompute every record whose period contains `today`.

        Records are processed in parallel with a shared converter (one rate
        memo per pass). Failures are reported per record.
        """
        today = today or date.today()
        correlation_id = create_correlation_id()
        records = await self._budgets.get_active_period_records(today)
        converter = CurrencyConverter(self._ledger)
        plans: dict[UUID, Optional[BudgetPlan]] = {}
        semaphore = asyncio.Semaphore(self._ledger_settings.batch_concurrency)

        async def run_one(record: BudgetPeriodRecord) -> RecordRefreshOutcome:
            async with semaphore:
                try:
                    return await self._refresh_one(record, plans, converter)
                except RecordRefreshError as e:
                    stage, message = e.stage, str(e.cause)
                except Exception as e:
                    stage, message = "unexpected", str(e)
            logger.error(
                "budget_period_refresh_failed",
                record_id=str(record.id),
                plan_id=str(record.plan_id),
                stage=stage,
                error=message,
            )
            await self._audit.log_budget_refresh_failed(
                record.id, stage, message, correlation_id
            )
            return RecordRefreshOutcome(
                record_id=record.id,
                plan_id=record.plan_id,
                success=False,
                stage=stage,
                error=message,
            )

        outcomes = await asyncio.gather(*(run_one(record) for record in records))

        result = RefreshResult(
            today=today,
            total_records=len(records),
            refreshed=sum(1 for o in outcomes if o.success),
            failed=sum(1 for o in outcomes if not o.success),
            outcomes=list(outcomes),
        )
        await self._audit.log(
            AuditEventBuilder.budget_periods_refreshed(
                result.refreshed, result.failed, correlation_id
            )
        )
        return result

    async def preview_recalculation(self, today: Optional[date] = None) -> list[RecalculationItem]:
        """Old versus freshly computed values for every active record. Nothing is written."""
        today = today or date.today()
        converter = CurrencyConverter(self._ledger)
        items = []
        for record in await self._budgets.get_active_period_records(today):
            plan = await self._budgets.get_budget_plan(record.plan_id)
            if plan is None:
                continue
            try:
                actual, _, status = await self._compute(record, plan, converter)
            except RecordRefreshError as e:
                logger.warning(
                    "budget_preview_skipped",
                    record_id=str(record.id),
                    stage=e.stage,
                    error=str(e.cause),
                )
                continue
            items.append(RecalculationItem(
                plan_id=plan.id,
                record_id=record.id,
                period_start=record.period_start,
                period_end=record.period_end,
                old_actual_amount=record.actual_amount,
                old_indicator_status=record.indicator_status,
                new_actual_amount=actual,
                new_indicator_status=status,
            ))
        return items

    # =========================================================================
    # DASHBOARD
    # =========================================================================

    async def dashboard_summary(
        self,
        today: Optional[date] = None,
        currency: Optional[str] = None,
    ) -> DashboardSummary:
        """
        Active plans with the record covering `today` in their current round.

        Budget and actual totals are converted into `currency` (the ledger's
        default currency when omitted). Records never computed count as 0.
        """
        today = today or date.today()
        currency = (currency or self._ledger_settings.default_currency).upper()
        converter = CurrencyConverter(self._ledger)
        summary = DashboardSummary(currency=currency)

        for plan in await self._budgets.list_budget_plans(status=PlanStatus.ACTIVE):
            records = await self._budgets.get_period_records(plan.id, plan.round_number)
            current = next((r for r in records if r.contains(today)), None)
            summary.plans.append(DashboardPlanEntry(plan=plan, current_record=current))
            if current is None:
                continue

            summary.total_budget += await converter.convert(
                current.hard_limit, plan.limit_currency, currency
            )
            summary.total_actual += await converter.convert(
                current.actual_amount or Decimal("0"), plan.limit_currency, currency
            )
            summary.indicator_counts[current.indicator_status.value] += 1

        summary.total_budget = self._aggregator.quantize(summary.total_budget)
        summary.total_actual = self._aggregator.quantize(summary.total_actual)
        return summary
