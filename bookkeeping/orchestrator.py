"""
Main Orchestrator for Calibrated Bookkeeping

This module ties together all the components and exposes the outward
operations of the ledger:
1. Balances (balance_at, explain_balance, project_balance)
2. Reconciliation (single account, batch, issue management)
3. Budgets (spend, period refresh, plan lifecycle, dashboard)
4. Ledger writes (accounts, transactions, calibrations, rates)

DESIGN DECISION: The orchestrator enforces the boundaries:
- No write reaches the store without passing validation
- Every recorded calibration is immediately reconciled
- Every write is audited

The engines themselves stay storage-agnostic and side-effect free apart
from the issue and period-record writes they own.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

import structlog

from bookkeeping.audit import AuditLogger, configure_logging
from bookkeeping.balance import BalanceCalculator
from bookkeeping.budget import BudgetEngine
from bookkeeping.config import get_settings
from bookkeeping.currency import CurrencyConverter
from bookkeeping.models.audit import AuditEventBuilder
from bookkeeping.models.budget import (
    AccountFilterMode,
    BudgetPlan,
    DashboardSummary,
    PeriodType,
    PlanStatus,
    RecalculationItem,
    RefreshResult,
)
from bookkeeping.models.ledger import (
    Account,
    BalanceReport,
    BatchReconciliationResult,
    Calibration,
    CalibrationSource,
    IssueStatus,
    ReconciliationIssue,
    ReconciliationResult,
    ReconciliationStatusReport,
    Transaction,
    utcnow,
)
from bookkeeping.reconciliation import ReconciliationEngine
from bookkeeping.services.storage import (
    BudgetStorageInterface,
    GoogleSheetsAuditStorage,
    GoogleSheetsBudgetStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
    InMemoryStorage,
    LedgerStorageInterface,
)
from bookkeeping.validation import LedgerValidator


logger = structlog.get_logger(__name__)


class BookkeepingService:
    """
    Facade over the balance calculator, reconciliation engine and budget engine.

    Single-entity operations raise. Batch operations (check_reconciliation_batch,
    refresh_budget_periods) return per-item outcomes.
    """

    def __init__(
        self,
        ledger_storage: LedgerStorageInterface,
        budget_storage: BudgetStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._ledger = ledger_storage
        self._budgets = budget_storage
        self._audit = audit_logger or AuditLogger()

        self.balances = BalanceCalculator(ledger_storage)
        self.reconciliation = ReconciliationEngine(ledger_storage, self._audit)
        self.budget = BudgetEngine(ledger_storage, budget_storage, self._audit)
        self.validator = LedgerValidator(ledger_storage)

    @property
    def audit_logger(self) -> AuditLogger:
        return self._audit

    # =========================================================================
    # BALANCES
    # =========================================================================

    async def balance_at(self, account_id: UUID, instant: datetime) -> Decimal:
        return await self.balances.balance_at(account_id, instant)

    async def explain_balance(self, account_id: UUID, instant: datetime) -> BalanceReport:
        return await self.balances.explain_balance(account_id, instant)

    async def project_balance(self, account_id: UUID, instant: datetime) -> BalanceReport:
        return await self.balances.project_balance(account_id, instant)

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def check_reconciliation(
        self,
        account_id: UUID,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> ReconciliationResult:
        return await self.reconciliation.check(account_id, start_date, end_date)

    async def check_reconciliation_batch(
        self,
        account_ids: Iterable[UUID],
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> BatchReconciliationResult:
        return await self.reconciliation.check_batch(account_ids, start_date, end_date, timeout)

    async def reconciliation_status(
        self,
        account_id: UUID,
        now: Optional[datetime] = None,
    ) -> ReconciliationStatusReport:
        return await self.reconciliation.reconciliation_status(account_id, now)

    async def list_issues(
        self,
        status: Optional[IssueStatus] = None,
        account_id: Optional[UUID] = None,
    ) -> list[ReconciliationIssue]:
        return await self.reconciliation.list_issues(status, account_id)

    async def resolve_issue(self, issue_id: UUID) -> ReconciliationIssue:
        return await self.reconciliation.resolve_issue(issue_id)

    async def ignore_issue(self, issue_id: UUID) -> ReconciliationIssue:
        return await self.reconciliation.ignore_issue(issue_id)

    async def regenerate_issues(
        self,
        account_ids: Optional[Iterable[UUID]] = None,
    ) -> BatchReconciliationResult:
        return await self.reconciliation.regenerate_issues(account_ids)

    # =========================================================================
    # LEDGER WRITES
    # =========================================================================

    async def save_account(self, account: Account) -> Account:
        """
        Validate and store an account.

        Raises:
            LedgerValidationError: The account breaks a ledger invariant
        """
        self.validator.raise_for_errors(await self.validator.validate_account(account))
        await self._ledger.save_account(account)
        await self._audit.log(AuditEventBuilder.account_saved(account.id, account.name))
        return account

    async def record_transaction(self, transaction: Transaction) -> Transaction:
        self.validator.raise_for_errors(
            await self.validator.validate_transaction(transaction)
        )
        await self._ledger.add_transaction(transaction)
        await self._audit.log(
            AuditEventBuilder.transaction_recorded(
                transaction.id,
                transaction.from_account_id,
                transaction.to_account_id,
                transaction.amount,
            )
        )
        return transaction

    async def delete_transaction(self, transaction_id: UUID) -> bool:
        deleted = await self._ledger.delete_transaction(transaction_id)
        if deleted:
            await self._audit.log(AuditEventBuilder.transaction_deleted(transaction_id))
        return deleted

    async def record_calibration(
        self,
        account_id: UUID,
        balance: Decimal,
        at: Optional[datetime] = None,
        source: CalibrationSource = CalibrationSource.MANUAL,
        is_opening: bool = False,
        note: Optional[str] = None,
    ) -> tuple[Calibration, ReconciliationResult]:
        """
        Store a calibration and immediately reconcile its account.

        Raises:
            LedgerValidationError: Unknown account, or the balance repeats
                the latest calibration
        """
        calibration = Calibration(
            account_id=account_id,
            balance=balance,
            date=at or utcnow(),
            source=source,
            is_opening=is_opening,
            note=note,
        )
        result = await self.validator.validate_calibration(calibration)
        if not result.is_valid:
            await self._audit.log_calibration_rejected(
                account_id, [issue.model_dump() for issue in result.issues]
            )
            self.validator.raise_for_errors(result)

        await self._ledger.add_calibration(calibration)
        await self._audit.log_calibration_recorded(calibration.id, account_id, balance)

        check = await self.reconciliation.check(account_id)
        return calibration, check

    async def set_rate(self, from_currency: str, to_currency: str, rate: Decimal) -> bool:
        if rate <= 0:
            raise ValueError(f"Exchange rates must be positive, got {rate}")
        return await self._ledger.set_rate(from_currency, to_currency, rate)

    async def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Decimal:
        return await CurrencyConverter(self._ledger).convert(amount, from_currency, to_currency)

    # =========================================================================
    # BUDGETS
    # =========================================================================

    async def compute_spend(
        self,
        plan: BudgetPlan,
        period_start: date,
        period_end: date,
    ) -> Decimal:
        return await self.budget.compute_spend(plan, period_start, period_end)

    async def refresh_budget_periods(self, today: Optional[date] = None) -> RefreshResult:
        return await self.budget.refresh_active_periods(today)

    async def create_budget_plan(self, plan: BudgetPlan) -> BudgetPlan:
        self.validator.raise_for_errors(await self.validator.validate_budget_plan(plan))
        return await self.budget.create_plan(plan)

    async def update_budget_plan(
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
        return await self.budget.update_plan(
            plan_id,
            hard_limit=hard_limit,
            soft_limit_enabled=soft_limit_enabled,
            account_filter_mode=account_filter_mode,
            account_filter_ids=account_filter_ids,
            included_category_ids=included_category_ids,
            limit_currency=limit_currency,
            today=today,
        )

    async def set_budget_plan_status(self, plan_id: UUID, status: PlanStatus) -> BudgetPlan:
        return await self.budget.set_plan_status(plan_id, status)

    async def delete_budget_plan(self, plan_id: UUID) -> bool:
        return await self.budget.delete_plan(plan_id)

    async def expire_budget_plans(self, today: Optional[date] = None) -> list[UUID]:
        return await self.budget.expire_plans(today)

    async def restart_budget_plan(
        self,
        plan_id: UUID,
        new_start: Optional[date] = None,
        new_hard_limit: Optional[Decimal] = None,
    ) -> BudgetPlan:
        return await self.budget.restart(plan_id, new_start, new_hard_limit)

    async def change_budget_period_type(
        self,
        plan_id: UUID,
        new_period: PeriodType,
        new_start: date,
    ) -> BudgetPlan:
        return await self.budget.change_period_type(plan_id, new_period, new_start)

    async def preview_budget_recalculation(
        self,
        today: Optional[date] = None,
    ) -> list[RecalculationItem]:
        return await self.budget.preview_recalculation(today)

    async def dashboard_summary(
        self,
        today: Optional[date] = None,
        currency: Optional[str] = None,
    ) -> DashboardSummary:
        return await self.budget.dashboard_summary(today, currency)


def create_app_components(
    backend: Optional[str] = None,
) -> BookkeepingService:
    """
    Factory function to create all application components.

    Args:
        backend: "google_sheets" or "memory". Defaults to the configured
                 storage_backend setting.

    Returns:
        A BookkeepingService wired to the chosen storage
    """
    app_settings = get_settings().app
    configure_logging(app_settings.log_level)
    backend = backend or app_settings.storage_backend

    if backend == "memory":
        storage = InMemoryStorage()
        return BookkeepingService(
            ledger_storage=storage,
            budget_storage=storage,
            audit_logger=AuditLogger(storage),
        )

    if backend != "google_sheets":
        raise ValueError(f"Unknown storage backend: {backend}")

    sheets_client = GoogleSheetsClient()
    logger.info("storage_backend_selected", backend=backend)
    return BookkeepingService(
        ledger_storage=GoogleSheetsLedgerStorage(sheets_client),
        budget_storage=GoogleSheetsBudgetStorage(sheets_client),
        audit_logger=AuditLogger(GoogleSheetsAuditStorage(sheets_client)),
    )
