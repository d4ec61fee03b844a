"""
Tests for Calibrated Bookkeeping models

Test strategy:
1. Unit tests for individual components (models, validators, engines)
2. Engine tests run against the in-memory store
3. No real API calls in tests
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

from pydantic import ValidationError

from bookkeeping.models.ledger import (
    Account,
    AccountClass,
    AccountType,
    BatchReconciliationResult,
    Calibration,
    ReconciliationIssue,
    Transaction,
)
from bookkeeping.models.budget import (
    BudgetPeriodRecord,
    BudgetPlan,
    IndicatorStatus,
    PlanType,
    RecalculationItem,
)
from bookkeeping.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)


class TestLedgerModels:
    """Tests for ledger Pydantic models."""

    def test_account_currency_is_normalized(self):
        """Currency codes are stripped and upper-cased; blank means none."""
        account = Account(
            name="  Bank  ",
            account_class="real",
            type="asset",
            currency=" cny ",
        )
        assert account.name == "Bank"
        assert account.currency == "CNY"

        nominal = Account(name="Food", account_class="nominal", type="expense", currency="  ")
        assert nominal.currency is None

    def test_unknown_stored_values_fall_back(self):
        """Unrecognised class/type values never fail a load."""
        account = Account(name="Odd", account_class="Virtual", type="crypto")
        assert account.account_class == AccountClass.UNKNOWN
        assert account.type == AccountType.UNKNOWN
        assert not account.is_expense

    def test_type_values_are_case_insensitive(self):
        account = Account(name="Food", account_class="NOMINAL", type="Expense")
        assert account.is_expense

    def test_leaf_real(self):
        assert Account(name="A", account_class="real", type="asset", currency="USD").is_leaf_real
        assert not Account(name="G", account_class="real", type="asset", is_group=True).is_leaf_real

    def test_transaction_rejects_same_account(self):
        account_id = uuid4()
        with pytest.raises(ValidationError):
            Transaction(
                from_account_id=account_id,
                to_account_id=account_id,
                amount=Decimal("1"),
                date=datetime(2025, 1, 1, tzinfo=timezone.utc),
            )

    def test_transaction_rejects_negative_amount(self):
        with pytest.raises(ValidationError):
            Transaction(
                from_account_id=uuid4(),
                to_account_id=uuid4(),
                amount=Decimal("-1"),
                date=datetime(2025, 1, 1, tzinfo=timezone.utc),
            )

    def test_naive_dates_become_utc(self):
        tx = Transaction(
            from_account_id=uuid4(),
            to_account_id=uuid4(),
            amount=Decimal("1"),
            date=datetime(2025, 1, 1, 8, 30),
        )
        assert tx.date.tzinfo is not None
        assert tx.date == datetime(2025, 1, 1, 8, 30, tzinfo=timezone.utc)

    def test_side_amounts_take_precedence(self):
        """to_amount/from_amount override amount per side, even when zero."""
        tx = Transaction(
            from_account_id=uuid4(),
            to_account_id=uuid4(),
            amount=Decimal("100"),
            from_amount=Decimal("14"),
            to_amount=Decimal("0"),
            date=datetime(2025, 1, 1, tzinfo=timezone.utc),
        )
        assert tx.outflow_amount == Decimal("14")
        assert tx.inflow_amount == Decimal("0")

        plain = tx.model_copy(update={"from_amount": None, "to_amount": None})
        assert plain.outflow_amount == plain.inflow_amount == Decimal("100")

    def test_transaction_is_immutable(self):
        tx = Transaction(
            from_account_id=uuid4(),
            to_account_id=uuid4(),
            amount=Decimal("1"),
            date=datetime(2025, 1, 1, tzinfo=timezone.utc),
        )
        with pytest.raises(ValidationError):
            tx.amount = Decimal("2")

    def test_calibration_allows_negative_balance(self):
        """Liabilities calibrate below zero."""
        cal = Calibration(account_id=uuid4(), balance=Decimal("-250.50"), date=datetime(2025, 1, 1))
        assert cal.balance == Decimal("-250.50")

    def test_issue_pair_key(self):
        start, end = uuid4(), uuid4()
        issue = ReconciliationIssue(
            account_id=uuid4(),
            start_calibration_id=start,
            end_calibration_id=end,
            period_start=datetime(2025, 1, 1),
            period_end=datetime(2025, 1, 10),
            expected_delta=Decimal("50"),
            actual_delta=Decimal("40"),
            diff=Decimal("-10"),
        )
        assert issue.pair_key == (start, end)

    def test_batch_failures(self):
        assert not BatchReconciliationResult().has_failures
        assert BatchReconciliationResult(timed_out=True).has_failures
        assert BatchReconciliationResult(failed_accounts=[uuid4()]).has_failures


class TestBudgetModels:
    """Tests for budget plan and period models."""

    def test_category_plan_requires_category(self):
        with pytest.raises(ValidationError):
            BudgetPlan(
                plan_type=PlanType.CATEGORY,
                hard_limit=Decimal("100"),
                start_date=date(2025, 1, 1),
            )

    def test_total_plan_without_categories(self):
        plan = BudgetPlan(
            plan_type=PlanType.TOTAL,
            hard_limit=Decimal("100"),
            limit_currency="usd",
            start_date=date(2025, 1, 1),
        )
        assert plan.included_category_ids == []
        assert plan.limit_currency == "USD"
        assert plan.round_number == 1

    def test_period_record_bounds(self):
        with pytest.raises(ValidationError):
            BudgetPeriodRecord(
                plan_id=uuid4(),
                round_number=1,
                period_index=1,
                period_start=date(2025, 2, 1),
                period_end=date(2025, 1, 31),
                hard_limit=Decimal("100"),
            )

    def test_period_record_contains_is_inclusive(self):
        record = BudgetPeriodRecord(
            plan_id=uuid4(),
            round_number=1,
            period_index=1,
            period_start=date(2025, 1, 1),
            period_end=date(2025, 1, 7),
            hard_limit=Decimal("100"),
        )
        assert record.contains(date(2025, 1, 1))
        assert record.contains(date(2025, 1, 7))
        assert not record.contains(date(2025, 1, 8))
        assert record.indicator_status == IndicatorStatus.PENDING
        assert record.actual_amount is None

    def test_period_index_range(self):
        with pytest.raises(ValidationError):
            BudgetPeriodRecord(
                plan_id=uuid4(),
                round_number=1,
                period_index=13,
                period_start=date(2025, 1, 1),
                period_end=date(2025, 1, 7),
                hard_limit=Decimal("100"),
            )

    def test_recalculation_item_changed(self):
        item = RecalculationItem(
            plan_id=uuid4(),
            record_id=uuid4(),
            period_start=date(2025, 1, 1),
            period_end=date(2025, 1, 31),
            old_actual_amount=Decimal("10.00"),
            old_indicator_status=IndicatorStatus.GREEN,
            new_actual_amount=Decimal("10.00"),
            new_indicator_status=IndicatorStatus.GREEN,
        )
        assert not item.changed
        assert item.model_copy(update={"new_actual_amount": Decimal("11")}).changed


class TestAuditModels:
    """Tests for audit event models."""

    def test_audit_event_creation(self):
        event = AuditEvent(
            event_type=AuditEventType.CALIBRATION_RECORDED,
            description="Calibration recorded",
        )
        assert event.event_id is not None
        assert event.severity == AuditSeverity.INFO
        assert event.timestamp.tzinfo is not None

    def test_to_sheets_row(self):
        event = AuditEventBuilder.reconciliation_failed(
            account_id=uuid4(),
            stage="sum_transactions",
            error_message="boom",
        )
        row = event.to_sheets_row()
        assert len(row) == 11
        assert row[2] == "reconciliation_failed"
        assert row[3] == "error"
        assert '"stage": "sum_transactions"' in row[8]
        assert row[9] == "boom"

    def test_to_log_dict(self):
        issue_id = uuid4()
        event = AuditEventBuilder.reconciliation_issue_detected(
            issue_id, uuid4(), Decimal("-10")
        )
        log_dict = event.to_log_dict()
        assert log_dict["entity_id"] == str(issue_id)
        assert log_dict["severity"] == "warning"
        assert log_dict["details"]["diff"] == "-10"

    def test_issue_closed_event_type(self):
        assert AuditEventBuilder.issue_closed(uuid4(), "resolved").event_type == AuditEventType.ISSUE_RESOLVED
        assert AuditEventBuilder.issue_closed(uuid4(), "ignored").event_type == AuditEventType.ISSUE_IGNORED

    def test_budget_plan_changed_description(self):
        event = AuditEventBuilder.budget_plan_changed(
            AuditEventType.BUDGET_PLAN_RESTARTED, uuid4(), 2
        )
        assert event.description == "Budget plan restarted (round 2)"
        assert event.details["round_number"] == 2
