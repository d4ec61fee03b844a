"""
In-Memory Storage Implementation

Implements every storage interface over plain dictionaries. Used by the
test-suite, by the CLI's demo mode, and as the reference for what each
query must return.

Returned models are copies, so callers can never mutate stored state
behind the store's back.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

from bookkeeping.models.audit import AuditEvent
from bookkeeping.models.budget import (
    BudgetPeriodRecord,
    BudgetPlan,
    PlanStatus,
    PlanType,
)
from bookkeeping.models.ledger import (
    Account,
    Calibration,
    IssueStatus,
    ReconciliationIssue,
    Transaction,
    ensure_aware,
)
from bookkeeping.services.storage.interface import (
    AuditStorageInterface,
    BudgetStorageInterface,
    DuplicateError,
    LedgerStorageInterface,
    NotFoundError,
)


def _in_flow_range(
    moment: datetime,
    after: Optional[datetime],
    until: Optional[datetime],
) -> bool:
    if after is not None and moment <= ensure_aware(after):
        return False
    if until is not None and moment > ensure_aware(until):
        return False
    return True


class InMemoryStorage(
    LedgerStorageInterface,
    BudgetStorageInterface,
    AuditStorageInterface,
):
    """Dictionary-backed ledger, budget and audit storage."""

    def __init__(
        self,
        accounts: Optional[Iterable[Account]] = None,
        transactions: Optional[Iterable[Transaction]] = None,
        calibrations: Optional[Iterable[Calibration]] = None,
        rates: Optional[dict[tuple[str, str], Decimal]] = None,
    ):
        self._accounts: dict[UUID, Account] = {}
        self._transactions: dict[UUID, Transaction] = {}
        self._calibrations: dict[UUID, Calibration] = {}
        self._rates: dict[tuple[str, str], Decimal] = {}
        self._issues: dict[UUID, ReconciliationIssue] = {}
        self._plans: dict[UUID, BudgetPlan] = {}
        self._records: dict[UUID, BudgetPeriodRecord] = {}
        self._events: list[AuditEvent] = []

        for account in accounts or []:
            self._accounts[account.id] = account
        for transaction in transactions or []:
            self._transactions[transaction.id] = transaction
        for calibration in calibrations or []:
            self._calibrations[calibration.id] = calibration
        for (from_currency, to_currency), rate in (rates or {}).items():
            self._rates[(from_currency.upper(), to_currency.upper())] = Decimal(rate)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_accounts(self) -> list[Account]:
        return [account.model_copy() for account in self._accounts.values()]

    async def get_account(self, account_id: UUID) -> Optional[Account]:
        account = self._accounts.get(account_id)
        return account.model_copy() if account else None

    async def save_account(self, account: Account) -> bool:
        self._accounts[account.id] = account.model_copy()
        return True

    # ------------------------------------------------------------------
    # Calibrations
    # ------------------------------------------------------------------

    def _account_calibrations(self, account_id: UUID) -> list[Calibration]:
        calibrations = [
            c for c in self._calibrations.values() if c.account_id == account_id
        ]
        calibrations.sort(key=lambda c: (c.date, c.created_at))
        return calibrations

    async def get_calibrations(
        self,
        account_id: UUID,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> list[Calibration]:
        result = []
        for calibration in self._account_calibrations(account_id):
            if date_from is not None and calibration.date < ensure_aware(date_from):
                continue
            if date_to is not None and calibration.date > ensure_aware(date_to):
                continue
            result.append(calibration.model_copy())
        return result

    async def get_latest_calibration(
        self,
        account_id: UUID,
        at_or_before: Optional[datetime] = None,
    ) -> Optional[Calibration]:
        candidates = [
            c for c in self._account_calibrations(account_id)
            if at_or_before is None or c.date <= ensure_aware(at_or_before)
        ]
        return candidates[-1].model_copy() if candidates else None

    async def get_next_calibration(
        self,
        account_id: UUID,
        after: datetime,
    ) -> Optional[Calibration]:
        for calibration in self._account_calibrations(account_id):
            if calibration.date > ensure_aware(after):
                return calibration.model_copy()
        return None

    async def add_calibration(self, calibration: Calibration) -> bool:
        if calibration.id in self._calibrations:
            raise DuplicateError(f"Calibration already exists: {calibration.id}")
        self._calibrations[calibration.id] = calibration.model_copy()
        return True

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def get_inflows(
        self,
        account_id: UUID,
        after: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[Transaction]:
        return [
            tx for tx in self._transactions.values()
            if tx.to_account_id == account_id and _in_flow_range(tx.date, after, until)
        ]

    async def get_outflows(
        self,
        account_id: UUID,
        after: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[Transaction]:
        return [
            tx for tx in self._transactions.values()
            if tx.from_account_id == account_id and _in_flow_range(tx.date, after, until)
        ]

    async def get_transactions_into(
        self,
        account_ids: Iterable[UUID],
        start: datetime,
        end: datetime,
    ) -> list[Transaction]:
        wanted = set(account_ids)
        start, end = ensure_aware(start), ensure_aware(end)
        result = [
            tx for tx in self._transactions.values()
            if tx.to_account_id in wanted and start <= tx.date < end
        ]
        result.sort(key=lambda tx: tx.date)
        return result

    async def account_has_transactions(self, account_id: UUID) -> bool:
        return any(
            account_id in (tx.from_account_id, tx.to_account_id)
            for tx in self._transactions.values()
        )

    async def add_transaction(self, transaction: Transaction) -> bool:
        if transaction.id in self._transactions:
            raise DuplicateError(f"Transaction already exists: {transaction.id}")
        self._transactions[transaction.id] = transaction
        return True

    async def delete_transaction(self, transaction_id: UUID) -> bool:
        return self._transactions.pop(transaction_id, None) is not None

    # ------------------------------------------------------------------
    # Currency rates
    # ------------------------------------------------------------------

    async def get_rate(self, from_currency: str, to_currency: str) -> Optional[Decimal]:
        return self._rates.get((from_currency.upper(), to_currency.upper()))

    async def set_rate(self, from_currency: str, to_currency: str, rate: Decimal) -> bool:
        self._rates[(from_currency.upper(), to_currency.upper())] = Decimal(rate)
        return True

    # ------------------------------------------------------------------
    # Reconciliation issues
    # ------------------------------------------------------------------

    async def add_reconciliation_issue(self, issue: ReconciliationIssue) -> bool:
        if issue.id in self._issues:
            raise DuplicateError(f"Reconciliation issue already exists: {issue.id}")
        self._issues[issue.id] = issue.model_copy()
        return True

    async def update_reconciliation_issue(self, issue: ReconciliationIssue) -> bool:
        if issue.id not in self._issues:
            raise NotFoundError(f"Reconciliation issue not found: {issue.id}")
        self._issues[issue.id] = issue.model_copy()
        return True

    async def get_reconciliation_issue(self, issue_id: UUID) -> Optional[ReconciliationIssue]:
        issue = self._issues.get(issue_id)
        return issue.model_copy() if issue else None

    async def get_reconciliation_issues(
        self,
        status: Optional[IssueStatus] = None,
        account_id: Optional[UUID] = None,
    ) -> list[ReconciliationIssue]:
        issues = [
            issue.model_copy() for issue in self._issues.values()
            if (status is None or issue.status == status)
            and (account_id is None or issue.account_id == account_id)
        ]
        issues.sort(key=lambda i: i.created_at, reverse=True)
        return issues

    # ------------------------------------------------------------------
    # Budget plans and period records
    # ------------------------------------------------------------------

    async def get_budget_plan(self, plan_id: UUID) -> Optional[BudgetPlan]:
        plan = self._plans.get(plan_id)
        return plan.model_copy(deep=True) if plan else None

    async def list_budget_plans(
        self,
        plan_type: Optional[PlanType] = None,
        status: Optional[PlanStatus] = None,
    ) -> list[BudgetPlan]:
        plans = [
            plan.model_copy(deep=True) for plan in self._plans.values()
            if (plan_type is None or plan.plan_type == plan_type)
            and (status is None or plan.status == status)
        ]
        plans.sort(key=lambda p: p.created_at, reverse=True)
        return plans

    async def save_budget_plan(self, plan: BudgetPlan) -> bool:
        self._plans[plan.id] = plan.model_copy(deep=True)
        return True

    async def delete_budget_plan(self, plan_id: UUID) -> bool:
        if self._plans.pop(plan_id, None) is None:
            return False
        for record_id in [r.id for r in self._records.values() if r.plan_id == plan_id]:
            del self._records[record_id]
        return True

    async def add_period_records(self, records: list[BudgetPeriodRecord]) -> bool:
        existing = {
            (r.plan_id, r.round_number, r.period_index) for r in self._records.values()
        }
        for record in records:
            key = (record.plan_id, record.round_number, record.period_index)
            if key in existing:
                raise DuplicateError(
                    f"Period record already exists: plan {record.plan_id} "
                    f"round {record.round_number} period {record.period_index}"
                )
            existing.add(key)
        for record in records:
            self._records[record.id] = record.model_copy()
        return True

    async def get_period_records(
        self,
        plan_id: UUID,
        round_number: Optional[int] = None,
    ) -> list[BudgetPeriodRecord]:
        records = [
            r.model_copy() for r in self._records.values()
            if r.plan_id == plan_id
            and (round_number is None or r.round_number == round_number)
        ]
        records.sort(key=lambda r: (r.round_number, r.period_index))
        return records

    async def get_period_record(self, record_id: UUID) -> Optional[BudgetPeriodRecord]:
        record = self._records.get(record_id)
        return record.model_copy() if record else None

    async def get_active_period_records(self, today: date) -> list[BudgetPeriodRecord]:
        records = [r.model_copy() for r in self._records.values() if r.contains(today)]
        records.sort(key=lambda r: (str(r.plan_id), r.round_number, r.period_index))
        return records

    async def update_period_record(self, record: BudgetPeriodRecord) -> bool:
        if record.id not in self._records:
            raise NotFoundError(f"Period record not found: {record.id}")
        self._records[record.id] = record.model_copy()
        return True

    async def delete_period_records(self, plan_id: UUID, round_number: int) -> int:
        doomed = [
            r.id for r in self._records.values()
            if r.plan_id == plan_id and r.round_number == round_number
        ]
        for record_id in doomed:
            del self._records[record_id]
        return len(doomed)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._events if e.correlation_id == correlation_id]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        events = [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        return sorted(self._events, key=lambda e: e.timestamp, reverse=True)[:limit]
