"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap Google Sheets for a real database later
2. Use in-memory storage for testing
3. Add caching layers transparently
4. Keep the engines decoupled from storage implementation

The engines never need a cross-row transaction: every read is a
point-in-time query and every write is an insert or an idempotent update
of a single row. The interface only exposes the query shapes the engines
actually need.

Date range conventions:
- Ledger flows use (after, until]: the lower bound is exclusive because
  the anchor calibration already reflects a transfer dated at its instant.
- Budget spend uses [start, end): calendar periods converted to instants.
"""

from abc import ABC, abstractmethod
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
)


class LedgerStorageInterface(ABC):
    """
    Abstract interface for the ledger store.

    Any storage implementation (Google Sheets, PostgreSQL, etc.)
    must implement these methods.
    """

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_accounts(self) -> list[Account]:
        """
        Return the whole account forest (every node, active or not).

        Raises:
            StorageError: If the query fails
        """
        pass

    @abstractmethod
    async def get_account(self, account_id: UUID) -> Optional[Account]:
        """Return one account, or None if it does not exist."""
        pass

    @abstractmethod
    async def save_account(self, account: Account) -> bool:
        """Insert or replace an account."""
        pass

    # ------------------------------------------------------------------
    # Calibrations
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_calibrations(
        self,
        account_id: UUID,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> list[Calibration]:
        """
        Calibrations of an account ordered ascending by date.

        Args:
            account_id: Account to query
            date_from: Inclusive lower bound, if any
            date_to: Inclusive upper bound, if any
        """
        pass

    @abstractmethod
    async def get_latest_calibration(
        self,
        account_id: UUID,
        at_or_before: Optional[datetime] = None,
    ) -> Optional[Calibration]:
        """Most recent calibration dated at or before the instant (or ever)."""
        pass

    @abstractmethod
    async def get_next_calibration(
        self,
        account_id: UUID,
        after: datetime,
    ) -> Optional[Calibration]:
        """Earliest calibration dated strictly after the instant."""
        pass

    @abstractmethod
    async def add_calibration(self, calibration: Calibration) -> bool:
        """Append a calibration."""
        pass

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_inflows(
        self,
        account_id: UUID,
        after: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[Transaction]:
        """
        Transactions whose to_account is the account, dated in (after, until].

        A None bound is unbounded on that side.
        """
        pass

    @abstractmethod
    async def get_outflows(
        self,
        account_id: UUID,
        after: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[Transaction]:
        """Transactions whose from_account is the account, dated in (after, until]."""
        pass

    @abstractmethod
    async def get_transactions_into(
        self,
        account_ids: Iterable[UUID],
        start: datetime,
        end: datetime,
    ) -> list[Transaction]:
        """Transactions whose to_account is in the set, dated in [start, end)."""
        pass

    @abstractmethod
    async def account_has_transactions(self, account_id: UUID) -> bool:
        """True if any transaction touches the account on either side."""
        pass

    @abstractmethod
    async def add_transaction(self, transaction: Transaction) -> bool:
        """Append a transaction. Transactions are never updated."""
        pass

    @abstractmethod
    async def delete_transaction(self, transaction_id: UUID) -> bool:
        """
        Delete a transaction (e.g. import rollback).

        Returns:
            True if a transaction was deleted
        """
        pass

    # ------------------------------------------------------------------
    # Currency rates
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_rate(self, from_currency: str, to_currency: str) -> Optional[Decimal]:
        """Configured from->to multiplier, or None when not configured."""
        pass

    @abstractmethod
    async def set_rate(self, from_currency: str, to_currency: str, rate: Decimal) -> bool:
        """Insert or replace a rate."""
        pass

    # ------------------------------------------------------------------
    # Reconciliation issues
    # ------------------------------------------------------------------

    @abstractmethod
    async def add_reconciliation_issue(self, issue: ReconciliationIssue) -> bool:
        """Append an issue."""
        pass

    @abstractmethod
    async def update_reconciliation_issue(self, issue: ReconciliationIssue) -> bool:
        """
        Replace an existing issue.

        Raises:
            NotFoundError: If the issue doesn't exist
        """
        pass

    @abstractmethod
    async def get_reconciliation_issue(self, issue_id: UUID) -> Optional[ReconciliationIssue]:
        pass

    @abstractmethod
    async def get_reconciliation_issues(
        self,
        status: Optional[IssueStatus] = None,
        account_id: Optional[UUID] = None,
    ) -> list[ReconciliationIssue]:
        """Issues matching the filters, newest first."""
        pass


class BudgetStorageInterface(ABC):
    """
    Abstract interface for budget plans and their period records.
    """

    @abstractmethod
    async def get_budget_plan(self, plan_id: UUID) -> Optional[BudgetPlan]:
        pass

    @abstractmethod
    async def list_budget_plans(
        self,
        plan_type: Optional[PlanType] = None,
        status: Optional[PlanStatus] = None,
    ) -> list[BudgetPlan]:
        """Plans matching the filters, newest first."""
        pass

    @abstractmethod
    async def save_budget_plan(self, plan: BudgetPlan) -> bool:
        """Insert or replace a plan."""
        pass

    @abstractmethod
    async def delete_budget_plan(self, plan_id: UUID) -> bool:
        """Delete a plan together with all of its period records."""
        pass

    @abstractmethod
    async def add_period_records(self, records: list[BudgetPeriodRecord]) -> bool:
        """
        Insert a batch of period records.

        Raises:
            DuplicateError: If (plan_id, round_number, period_index) already exists
        """
        pass

    @abstractmethod
    async def get_period_records(
        self,
        plan_id: UUID,
        round_number: Optional[int] = None,
    ) -> list[BudgetPeriodRecord]:
        """Records of a plan ordered by (round_number, period_index)."""
        pass

    @abstractmethod
    async def get_period_record(self, record_id: UUID) -> Optional[BudgetPeriodRecord]:
        pass

    @abstractmethod
    async def get_active_period_records(self, today: date) -> list[BudgetPeriodRecord]:
        """Records with period_start <= today <= period_end."""
        pass

    @abstractmethod
    async def update_period_record(self, record: BudgetPeriodRecord) -> bool:
        """
        Replace an existing record.

        Raises:
            NotFoundError: If the record doesn't exist
        """
        pass

    @abstractmethod
    async def delete_period_records(self, plan_id: UUID, round_number: int) -> int:
        """Delete one round's records. Returns how many were deleted."""
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Events sharing a correlation ID, in chronological order."""
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """Events about one entity, in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """The most recent events, newest first."""
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
