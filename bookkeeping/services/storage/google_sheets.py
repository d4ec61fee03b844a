"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is used as the initial storage backend because:
1. Users can inspect their ledger directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)
4. Easy to export/migrate later

TRADEOFFS:
- Not suitable for high-volume data (we're fine for personal use)
- No transactions (the engines never need one: inserts and single-row updates only)
- Limited query capabilities (we filter in Python)

The implementation follows the abstract interfaces, so we can swap
to PostgreSQL/SQLite later without changing the engines.
"""

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional, TypeVar
from uuid import UUID

import gspread
from google.oauth2.service_account import Credentials
from tenacity import retry, stop_after_attempt, wait_exponential

from bookkeeping.config import get_settings
from bookkeeping.models.audit import AuditEvent, AuditEventType, AuditSeverity
from bookkeeping.models.budget import (
    AccountFilterMode,
    BudgetPeriodRecord,
    BudgetPlan,
    IndicatorStatus,
    PeriodType,
    PlanStatus,
    PlanType,
)
from bookkeeping.models.ledger import (
    Account,
    Calibration,
    CalibrationSource,
    IssueStatus,
    ReconciliationIssue,
    Transaction,
    TransactionNature,
    ensure_aware,
    utcnow,
)
from bookkeeping.services.storage.interface import (
    AuditStorageInterface,
    BudgetStorageInterface,
    ConnectionError,
    DuplicateError,
    LedgerStorageInterface,
    NotFoundError,
    StorageError,
)


T = TypeVar("T")

ACCOUNT_COLUMNS = [
    "id", "name", "parent_id", "account_class", "type", "subtype",
    "is_group", "is_system", "is_active", "currency",
]

TRANSACTION_COLUMNS = [
    "id", "date", "from_account_id", "to_account_id", "amount",
    "from_amount", "to_amount", "nature", "is_opening", "description", "created_at",
]

CALIBRATION_COLUMNS = [
    "id", "account_id", "balance", "date", "source", "is_opening", "note", "created_at",
]

ISSUE_COLUMNS = [
    "id", "account_id", "start_calibration_id", "end_calibration_id",
    "period_start", "period_end", "expected_delta", "actual_delta", "diff",
    "status", "created_at", "resolved_at",
]

RATE_COLUMNS = ["from_currency", "to_currency", "rate", "updated_at"]

PLAN_COLUMNS = [
    "id", "plan_type", "category_account_id", "included_category_ids", "period",
    "hard_limit", "limit_currency", "soft_limit_enabled", "status",
    "account_filter_mode", "account_filter_ids", "start_date", "end_date",
    "round_number", "created_at", "updated_at",
]

PERIOD_COLUMNS = [
    "id", "plan_id", "round_number", "period_index", "period_start", "period_end",
    "hard_limit", "soft_limit", "actual_amount", "indicator_status", "created_at",
]

AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
]


# =============================================================================
# CELL HELPERS
# =============================================================================

def _cell(row: list, index: int, default: str = "") -> str:
    """Handle missing columns gracefully."""
    try:
        return row[index] if row[index] else default
    except IndexError:
        return default


def _opt(value: str, parse: Callable[[str], T]) -> Optional[T]:
    return parse(value) if value else None


def _bool(value: str) -> bool:
    return value.strip().lower() == "true"


def _dt(value: str) -> datetime:
    return ensure_aware(datetime.fromisoformat(value))


def _uuid_list(value: str) -> list[UUID]:
    return [UUID(part) for part in value.split(",") if part.strip()]


def _join_uuids(values: Iterable[UUID]) -> str:
    return ",".join(str(v) for v in values)


def _str_or_empty(value) -> str:
    return "" if value is None else str(value)


# =============================================================================
# CLIENT
# =============================================================================

class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    Worksheets are created with their header row on first use.
    """

    def __init__(self):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_sheet(self, title: str, columns: list[str], rows: int = 1000) -> gspread.Worksheet:
        """Get or create a worksheet with the given header."""
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        return sheet

    def read_rows(self, title: str, columns: list[str]) -> list[list[str]]:
        """All non-empty data rows (header excluded)."""
        rows = self.get_sheet(title, columns).get_all_values()[1:]
        return [row for row in rows if row and row[0]]

    def find_row_index(self, title: str, columns: list[str], key: str) -> Optional[int]:
        """1-based sheet row number of the row whose first cell equals key."""
        rows = self.get_sheet(title, columns).get_all_values()
        for idx, row in enumerate(rows[1:], start=2):  # Row 1 is the header
            if row and row[0] == key:
                return idx
        return None

    def replace_row(self, title: str, columns: list[str], index: int, values: list) -> None:
        sheet = self.get_sheet(title, columns)
        end_column = gspread.utils.rowcol_to_a1(index, len(values))
        sheet.update(f"A{index}:{end_column}", [values], value_input_option="RAW")


# =============================================================================
# LEDGER STORAGE
# =============================================================================

class GoogleSheetsLedgerStorage(LedgerStorageInterface):
    """
    Google Sheets implementation of the ledger store.

    One worksheet per table; every query reads the sheet and filters in Python.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()
        self._settings = get_settings().google_sheets

    # --- row conversion ---------------------------------------------------

    @staticmethod
    def _account_to_row(account: Account) -> list:
        return [
            str(account.id),
            account.name,
            _str_or_empty(account.parent_id),
            account.account_class.value,
            account.type.value,
            account.subtype or "",
            str(account.is_group),
            str(account.is_system),
            str(account.is_active),
            account.currency or "",
        ]

    @staticmethod
    def _row_to_account(row: list) -> Account:
        return Account(
            id=UUID(_cell(row, 0)),
            name=_cell(row, 1),
            parent_id=_opt(_cell(row, 2), UUID),
            account_class=_cell(row, 3),
            type=_cell(row, 4),
            subtype=_cell(row, 5) or None,
            is_group=_bool(_cell(row, 6)),
            is_system=_bool(_cell(row, 7)),
            is_active=_bool(_cell(row, 8, "True")),
            currency=_cell(row, 9) or None,
        )

    @staticmethod
    def _transaction_to_row(tx: Transaction) -> list:
        return [
            str(tx.id),
            tx.date.isoformat(),
            str(tx.from_account_id),
            str(tx.to_account_id),
            str(tx.amount),
            _str_or_empty(tx.from_amount),
            _str_or_empty(tx.to_amount),
            tx.nature.value,
            str(tx.is_opening),
            tx.description or "",
            tx.created_at.isoformat(),
        ]

    @staticmethod
    def _row_to_transaction(row: list) -> Transaction:
        return Transaction(
            id=UUID(_cell(row, 0)),
            date=_dt(_cell(row, 1)),
            from_account_id=UUID(_cell(row, 2)),
            to_account_id=UUID(_cell(row, 3)),
            amount=Decimal(_cell(row, 4)),
            from_amount=_opt(_cell(row, 5), Decimal),
            to_amount=_opt(_cell(row, 6), Decimal),
            nature=TransactionNature(_cell(row, 7, "regular")),
            is_opening=_bool(_cell(row, 8)),
            description=_cell(row, 9) or None,
            created_at=_dt(_cell(row, 10, _cell(row, 1))),
        )

    @staticmethod
    def _calibration_to_row(cal: Calibration) -> list:
        return [
            str(cal.id),
            str(cal.account_id),
            str(cal.balance),
            cal.date.isoformat(),
            cal.source.value,
            str(cal.is_opening),
            cal.note or "",
            cal.created_at.isoformat(),
        ]

    @staticmethod
    def _row_to_calibration(row: list) -> Calibration:
        return Calibration(
            id=UUID(_cell(row, 0)),
            account_id=UUID(_cell(row, 1)),
            balance=Decimal(_cell(row, 2)),
            date=_dt(_cell(row, 3)),
            source=CalibrationSource(_cell(row, 4, "manual")),
            is_opening=_bool(_cell(row, 5)),
            note=_cell(row, 6) or None,
            created_at=_dt(_cell(row, 7, _cell(row, 3))),
        )

    @staticmethod
    def _issue_to_row(issue: ReconciliationIssue) -> list:
        return [
            str(issue.id),
            str(issue.account_id),
            _str_or_empty(issue.start_calibration_id),
            _str_or_empty(issue.end_calibration_id),
            issue.period_start.isoformat(),
            issue.period_end.isoformat(),
            str(issue.expected_delta),
            str(issue.actual_delta),
            str(issue.diff),
            issue.status.value,
            issue.created_at.isoformat(),
            issue.resolved_at.isoformat() if issue.resolved_at else "",
        ]

    @staticmethod
    def _row_to_issue(row: list) -> ReconciliationIssue:
        return ReconciliationIssue(
            id=UUID(_cell(row, 0)),
            account_id=UUID(_cell(row, 1)),
            start_calibration_id=_opt(_cell(row, 2), UUID),
            end_calibration_id=_opt(_cell(row, 3), UUID),
            period_start=_dt(_cell(row, 4)),
            period_end=_dt(_cell(row, 5)),
            expected_delta=Decimal(_cell(row, 6)),
            actual_delta=Decimal(_cell(row, 7)),
            diff=Decimal(_cell(row, 8)),
            status=IssueStatus(_cell(row, 9, "open")),
            created_at=_dt(_cell(row, 10)),
            resolved_at=_opt(_cell(row, 11), _dt),
        )

    # --- reads --------------------------------------------------------------

    def _load(self, title: str, columns: list[str], convert: Callable[[list], T]) -> list[T]:
        try:
            return [convert(row) for row in self._client.read_rows(title, columns)]
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to read {title}: {e}")

    def _all_transactions(self) -> list[Transaction]:
        return self._load(
            self._settings.transactions_sheet_name,
            TRANSACTION_COLUMNS,
            self._row_to_transaction,
        )

    def _all_calibrations(self, account_id: UUID) -> list[Calibration]:
        calibrations = [
            c for c in self._load(
                self._settings.calibrations_sheet_name,
                CALIBRATION_COLUMNS,
                self._row_to_calibration,
            )
            if c.account_id == account_id
        ]
        calibrations.sort(key=lambda c: (c.date, c.created_at))
        return calibrations

    # --- writes -------------------------------------------------------------

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _append(self, title: str, columns: list[str], row: list) -> None:
        try:
            self._client.get_sheet(title, columns).append_row(row, value_input_option="RAW")
        except Exception as e:
            raise StorageError(f"Failed to append to {title}: {e}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _upsert(self, title: str, columns: list[str], key: str, row: list) -> bool:
        """Replace the row keyed by `key`; append when absent. Returns True if replaced."""
        try:
            index = self._client.find_row_index(title, columns, key)
            if index is None:
                self._client.get_sheet(title, columns).append_row(row, value_input_option="RAW")
                return False
            self._client.replace_row(title, columns, index, row)
            return True
        except Exception as e:
            raise StorageError(f"Failed to write {title}: {e}")

    # --- accounts -----------------------------------------------------------

    async def get_accounts(self) -> list[Account]:
        return self._load(
            self._settings.accounts_sheet_name, ACCOUNT_COLUMNS, self._row_to_account
        )

    async def get_account(self, account_id: UUID) -> Optional[Account]:
        for account in await self.get_accounts():
            if account.id == account_id:
                return account
        return None

    async def save_account(self, account: Account) -> bool:
        self._upsert(
            self._settings.accounts_sheet_name,
            ACCOUNT_COLUMNS,
            str(account.id),
            self._account_to_row(account),
        )
        return True

    # --- calibrations -------------------------------------------------------

    async def get_calibrations(
        self,
        account_id: UUID,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> list[Calibration]:
        return [
            c for c in self._all_calibrations(account_id)
            if (date_from is None or c.date >= ensure_aware(date_from))
            and (date_to is None or c.date <= ensure_aware(date_to))
        ]

    async def get_latest_calibration(
        self,
        account_id: UUID,
        at_or_before: Optional[datetime] = None,
    ) -> Optional[Calibration]:
        candidates = await self.get_calibrations(account_id, date_to=at_or_before)
        return candidates[-1] if candidates else None

    async def get_next_calibration(
        self,
        account_id: UUID,
        after: datetime,
    ) -> Optional[Calibration]:
        for calibration in self._all_calibrations(account_id):
            if calibration.date > ensure_aware(after):
                return calibration
        return None

    async def add_calibration(self, calibration: Calibration) -> bool:
        self._append(
            self._settings.calibrations_sheet_name,
            CALIBRATION_COLUMNS,
            self._calibration_to_row(calibration),
        )
        return True

    # --- transactions -------------------------------------------------------

    @staticmethod
    def _within(moment: datetime, after: Optional[datetime], until: Optional[datetime]) -> bool:
        return (after is None or moment > ensure_aware(after)) and (
            until is None or moment <= ensure_aware(until)
        )

    async def get_inflows(
        self,
        account_id: UUID,
        after: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[Transaction]:
        return [
            tx for tx in self._all_transactions()
            if tx.to_account_id == account_id and self._within(tx.date, after, until)
        ]

    async def get_outflows(
        self,
        account_id: UUID,
        after: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[Transaction]:
        return [
            tx for tx in self._all_transactions()
            if tx.from_account_id == account_id and self._within(tx.date, after, until)
        ]

    async def get_transactions_into(
        self,
        account_ids: Iterable[UUID],
        start: datetime,
        end: datetime,
    ) -> list[Transaction]:
        wanted = set(account_ids)
        start, end = ensure_aware(start), ensure_aware(end)
        return [
            tx for tx in self._all_transactions()
            if tx.to_account_id in wanted and start <= tx.date < end
        ]

    async def account_has_transactions(self, account_id: UUID) -> bool:
        return any(
            account_id in (tx.from_account_id, tx.to_account_id)
            for tx in self._all_transactions()
        )

    async def add_transaction(self, transaction: Transaction) -> bool:
        self._append(
            self._settings.transactions_sheet_name,
            TRANSACTION_COLUMNS,
            self._transaction_to_row(transaction),
        )
        return True

    async def delete_transaction(self, transaction_id: UUID) -> bool:
        try:
            title = self._settings.transactions_sheet_name
            index = self._client.find_row_index(title, TRANSACTION_COLUMNS, str(transaction_id))
            if index is None:
                return False
            self._client.get_sheet(title, TRANSACTION_COLUMNS).delete_rows(index)
            return True
        except Exception as e:
            raise StorageError(f"Failed to delete transaction: {e}")

    # --- currency rates -----------------------------------------------------

    async def get_rate(self, from_currency: str, to_currency: str) -> Optional[Decimal]:
        try:
            rows = self._client.read_rows(self._settings.rates_sheet_name, RATE_COLUMNS)
        except Exception as e:
            raise StorageError(f"Failed to read currency rates: {e}")
        for row in rows:
            if (
                _cell(row, 0).upper() == from_currency.upper()
                and _cell(row, 1).upper() == to_currency.upper()
                and _cell(row, 2)
            ):
                return Decimal(_cell(row, 2))
        return None

    async def set_rate(self, from_currency: str, to_currency: str, rate: Decimal) -> bool:
        title = self._settings.rates_sheet_name
        row = [from_currency.upper(), to_currency.upper(), str(rate), utcnow().isoformat()]
        try:
            rows = self._client.get_sheet(title, RATE_COLUMNS).get_all_values()
            for idx, existing in enumerate(rows[1:], start=2):
                if (
                    _cell(existing, 0).upper() == row[0]
                    and _cell(existing, 1).upper() == row[1]
                ):
                    self._client.replace_row(title, RATE_COLUMNS, idx, row)
                    return True
            self._client.get_sheet(title, RATE_COLUMNS).append_row(row, value_input_option="RAW")
            return True
        except Exception as e:
            raise StorageError(f"Failed to save currency rate: {e}")

    # --- reconciliation issues ----------------------------------------------

    async def add_reconciliation_issue(self, issue: ReconciliationIssue) -> bool:
        self._append(
            self._settings.issues_sheet_name,
            ISSUE_COLUMNS,
            self._issue_to_row(issue),
        )
        return True

    async def update_reconciliation_issue(self, issue: ReconciliationIssue) -> bool:
        title = self._settings.issues_sheet_name
        try:
            index = self._client.find_row_index(title, ISSUE_COLUMNS, str(issue.id))
            if index is None:
                raise NotFoundError(f"Reconciliation issue not found: {issue.id}")
            self._client.replace_row(title, ISSUE_COLUMNS, index, self._issue_to_row(issue))
            return True
        except NotFoundError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to update reconciliation issue: {e}")

    async def get_reconciliation_issue(self, issue_id: UUID) -> Optional[ReconciliationIssue]:
        for issue in await self.get_reconciliation_issues():
            if issue.id == issue_id:
                return issue
        return None

    async def get_reconciliation_issues(
        self,
        status: Optional[IssueStatus] = None,
        account_id: Optional[UUID] = None,
    ) -> list[ReconciliationIssue]:
        issues = [
            issue for issue in self._load(
                self._settings.issues_sheet_name, ISSUE_COLUMNS, self._row_to_issue
            )
            if (status is None or issue.status == status)
            and (account_id is None or issue.account_id == account_id)
        ]
        issues.sort(key=lambda i: i.created_at, reverse=True)
        return issues


# =============================================================================
# BUDGET STORAGE
# =============================================================================

class GoogleSheetsBudgetStorage(BudgetStorageInterface):
    """
    Google Sheets implementation of budget plan storage.

    ID lists are stored comma-separated in a single cell.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()
        self._settings = get_settings().google_sheets

    @staticmethod
    def _plan_to_row(plan: BudgetPlan) -> list:
        return [
            str(plan.id),
            plan.plan_type.value,
            _str_or_empty(plan.category_account_id),
            _join_uuids(plan.included_category_ids),
            plan.period.value,
            str(plan.hard_limit),
            plan.limit_currency,
            str(plan.soft_limit_enabled),
            plan.status.value,
            plan.account_filter_mode.value,
            _join_uuids(plan.account_filter_ids),
            plan.start_date.isoformat(),
            plan.end_date.isoformat() if plan.end_date else "",
            str(plan.round_number),
            plan.created_at.isoformat(),
            plan.updated_at.isoformat(),
        ]

    @staticmethod
    def _row_to_plan(row: list) -> BudgetPlan:
        return BudgetPlan(
            id=UUID(_cell(row, 0)),
            plan_type=PlanType(_cell(row, 1)),
            category_account_id=_opt(_cell(row, 2), UUID),
            included_category_ids=_uuid_list(_cell(row, 3)),
            period=PeriodType(_cell(row, 4, "monthly")),
            hard_limit=Decimal(_cell(row, 5)),
            limit_currency=_cell(row, 6, "CNY"),
            soft_limit_enabled=_bool(_cell(row, 7, "True")),
            status=PlanStatus(_cell(row, 8, "active")),
            account_filter_mode=AccountFilterMode(_cell(row, 9, "all")),
            account_filter_ids=_uuid_list(_cell(row, 10)),
            start_date=date.fromisoformat(_cell(row, 11)),
            end_date=_opt(_cell(row, 12), date.fromisoformat),
            round_number=int(_cell(row, 13, "1")),
            created_at=_dt(_cell(row, 14)),
            updated_at=_dt(_cell(row, 15, _cell(row, 14))),
        )

    @staticmethod
    def _record_to_row(record: BudgetPeriodRecord) -> list:
        return [
            str(record.id),
            str(record.plan_id),
            str(record.round_number),
            str(record.period_index),
            record.period_start.isoformat(),
            record.period_end.isoformat(),
            str(record.hard_limit),
            _str_or_empty(record.soft_limit),
            _str_or_empty(record.actual_amount),
            record.indicator_status.value,
            record.created_at.isoformat(),
        ]

    @staticmethod
    def _row_to_record(row: list) -> BudgetPeriodRecord:
        return BudgetPeriodRecord(
            id=UUID(_cell(row, 0)),
            plan_id=UUID(_cell(row, 1)),
            round_number=int(_cell(row, 2)),
            period_index=int(_cell(row, 3)),
            period_start=date.fromisoformat(_cell(row, 4)),
            period_end=date.fromisoformat(_cell(row, 5)),
            hard_limit=Decimal(_cell(row, 6)),
            soft_limit=_opt(_cell(row, 7), Decimal),
            actual_amount=_opt(_cell(row, 8), Decimal),
            indicator_status=IndicatorStatus(_cell(row, 9, "pending")),
            created_at=_dt(_cell(row, 10)),
        )

    def _plans(self) -> list[BudgetPlan]:
        try:
            rows = self._client.read_rows(self._settings.budget_plans_sheet_name, PLAN_COLUMNS)
            return [self._row_to_plan(row) for row in rows]
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to read budget plans: {e}")

    def _records(self) -> list[BudgetPeriodRecord]:
        try:
            rows = self._client.read_rows(self._settings.budget_periods_sheet_name, PERIOD_COLUMNS)
            return [self._row_to_record(row) for row in rows]
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to read budget periods: {e}")

    async def get_budget_plan(self, plan_id: UUID) -> Optional[BudgetPlan]:
        for plan in self._plans():
            if plan.id == plan_id:
                return plan
        return None

    async def list_budget_plans(
        self,
        plan_type: Optional[PlanType] = None,
        status: Optional[PlanStatus] = None,
    ) -> list[BudgetPlan]:
        plans = [
            plan for plan in self._plans()
            if (plan_type is None or plan.plan_type == plan_type)
            and (status is None or plan.status == status)
        ]
        plans.sort(key=lambda p: p.created_at, reverse=True)
        return plans

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def save_budget_plan(self, plan: BudgetPlan) -> bool:
        title = self._settings.budget_plans_sheet_name
        try:
            index = self._client.find_row_index(title, PLAN_COLUMNS, str(plan.id))
            if index is None:
                self._client.get_sheet(title, PLAN_COLUMNS).append_row(
                    self._plan_to_row(plan), value_input_option="RAW"
                )
            else:
                self._client.replace_row(title, PLAN_COLUMNS, index, self._plan_to_row(plan))
            return True
        except Exception as e:
            raise StorageError(f"Failed to save budget plan: {e}")

    async def delete_budget_plan(self, plan_id: UUID) -> bool:
        try:
            title = self._settings.budget_plans_sheet_name
            index = self._client.find_row_index(title, PLAN_COLUMNS, str(plan_id))
            if index is None:
                return False
            self._client.get_sheet(title, PLAN_COLUMNS).delete_rows(index)
        except Exception as e:
            raise StorageError(f"Failed to delete budget plan: {e}")
        for round_number in {r.round_number for r in self._records() if r.plan_id == plan_id}:
            await self.delete_period_records(plan_id, round_number)
        return True

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def add_period_records(self, records: list[BudgetPeriodRecord]) -> bool:
        existing = {(r.plan_id, r.round_number, r.period_index) for r in self._records()}
        for record in records:
            if (record.plan_id, record.round_number, record.period_index) in existing:
                raise DuplicateError(
                    f"Period record already exists: plan {record.plan_id} "
                    f"round {record.round_number} period {record.period_index}"
                )
        try:
            sheet = self._client.get_sheet(
                self._settings.budget_periods_sheet_name, PERIOD_COLUMNS
            )
            sheet.append_rows(
                [self._record_to_row(r) for r in records],
                value_input_option="RAW",
            )
            return True
        except Exception as e:
            raise StorageError(f"Failed to save budget periods: {e}")

    async def get_period_records(
        self,
        plan_id: UUID,
        round_number: Optional[int] = None,
    ) -> list[BudgetPeriodRecord]:
        records = [
            r for r in self._records()
            if r.plan_id == plan_id
            and (round_number is None or r.round_number == round_number)
        ]
        records.sort(key=lambda r: (r.round_number, r.period_index))
        return records

    async def get_period_record(self, record_id: UUID) -> Optional[BudgetPeriodRecord]:
        for record in self._records():
            if record.id == record_id:
                return record
        return None

    async def get_active_period_records(self, today: date) -> list[BudgetPeriodRecord]:
        return [r for r in self._records() if r.contains(today)]

    async def update_period_record(self, record: BudgetPeriodRecord) -> bool:
        title = self._settings.budget_periods_sheet_name
        try:
            index = self._client.find_row_index(title, PERIOD_COLUMNS, str(record.id))
            if index is None:
                raise NotFoundError(f"Period record not found: {record.id}")
            self._client.replace_row(title, PERIOD_COLUMNS, index, self._record_to_row(record))
            return True
        except NotFoundError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to update budget period: {e}")

    async def delete_period_records(self, plan_id: UUID, round_number: int) -> int:
        title = self._settings.budget_periods_sheet_name
        try:
            sheet = self._client.get_sheet(title, PERIOD_COLUMNS)
            rows = sheet.get_all_values()
            doomed = [
                idx for idx, row in enumerate(rows[1:], start=2)
                if _cell(row, 1) == str(plan_id) and _cell(row, 2) == str(round_number)
            ]
            # Bottom-up so earlier indices stay valid
            for idx in reversed(doomed):
                sheet.delete_rows(idx)
            return len(doomed)
        except Exception as e:
            raise StorageError(f"Failed to delete budget periods: {e}")


# =============================================================================
# AUDIT STORAGE
# =============================================================================

class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()
        self._settings = get_settings().google_sheets

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        return AuditEvent(
            event_id=UUID(_cell(row, 0)),
            timestamp=_dt(_cell(row, 1)),
            event_type=AuditEventType(_cell(row, 2)),
            severity=AuditSeverity(_cell(row, 3)),
            entity_type=_cell(row, 4) or None,
            entity_id=_opt(_cell(row, 5), UUID),
            correlation_id=_opt(_cell(row, 6), UUID),
            description=_cell(row, 7),
            details=json.loads(_cell(row, 8)) if _cell(row, 8) else {},
            error_message=_cell(row, 9) or None,
            is_user_action=_bool(_cell(row, 10)),
        )

    def _events(self) -> list[AuditEvent]:
        try:
            rows = self._client.read_rows(self._settings.audit_sheet_name, AUDIT_COLUMNS)
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")
        events = []
        for row in rows:
            try:
                events.append(self._row_to_event(row))
            except ValueError:
                continue  # Skip malformed rows
        return events

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            sheet = self._client.get_sheet(
                self._settings.audit_sheet_name, AUDIT_COLUMNS, rows=5000
            )
            sheet.append_row(event.to_sheets_row(), value_input_option="RAW")
            return True
        except Exception as e:
            raise StorageError(f"Failed to write audit event: {e}")

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._events() if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        events = [
            e for e in self._events()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = self._events()
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
