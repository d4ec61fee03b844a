"""Tests for calibration-anchored balance reconstruction."""

import pytest
from decimal import Decimal

from conftest import at, calibration, transfer

from bookkeeping.balance import BalanceCalculator
from bookkeeping.models.ledger import LEDGER_EPOCH
from bookkeeping.services.storage import InMemoryStorage, StorageError


class BrokenStorage(InMemoryStorage):
    async def get_inflows(self, account_id, after=None, until=None):
        raise StorageError("store unavailable")


class TestBalanceAt:
    """balance_at semantics."""

    @pytest.mark.asyncio
    async def test_without_calibration_sums_whole_history(self, chart, storage):
        await storage.add_transaction(transfer(chart.salary, chart.bank, "1000", at(2025, 1, 1)))
        await storage.add_transaction(transfer(chart.bank, chart.food, "120.50", at(2025, 1, 5)))
        await storage.add_transaction(transfer(chart.bank, chart.transport, "30", at(2025, 2, 1)))

        calculator = BalanceCalculator(storage)
        assert await calculator.balance_at(chart.bank.id, at(2025, 1, 31)) == Decimal("879.50")
        assert await calculator.balance_at(chart.bank.id, at(2025, 3, 1)) == Decimal("849.50")
        assert await calculator.balance_at(chart.bank.id, at(2024, 12, 31)) == Decimal("0")

    @pytest.mark.asyncio
    async def test_calibration_without_later_transactions_is_constant(self, chart, storage):
        await storage.add_transaction(transfer(chart.salary, chart.bank, "1000", at(2025, 1, 1)))
        await storage.add_calibration(calibration(chart.bank, "420", at(2025, 1, 10)))

        calculator = BalanceCalculator(storage)
        for target in (at(2025, 1, 10), at(2025, 6, 1), at(2030, 1, 1)):
            assert await calculator.balance_at(chart.bank.id, target) == Decimal("420")

    @pytest.mark.asyncio
    async def test_anchor_boundary_is_exclusive(self, chart, storage):
        """A transfer dated exactly at the anchor is already reflected in it."""
        await storage.add_calibration(calibration(chart.bank, "500", at(2025, 1, 10)))
        await storage.add_transaction(transfer(chart.salary, chart.bank, "100", at(2025, 1, 10)))

        calculator = BalanceCalculator(storage)
        assert await calculator.balance_at(chart.bank.id, at(2025, 1, 20)) == Decimal("500")

    @pytest.mark.asyncio
    async def test_target_boundary_is_inclusive(self, chart, storage):
        await storage.add_calibration(calibration(chart.bank, "500", at(2025, 1, 10)))
        await storage.add_transaction(transfer(chart.bank, chart.food, "25", at(2025, 1, 15)))

        calculator = BalanceCalculator(storage)
        assert await calculator.balance_at(chart.bank.id, at(2025, 1, 15)) == Decimal("475")
        assert await calculator.balance_at(chart.bank.id, at(2025, 1, 15, 11, 59)) == Decimal("500")

    @pytest.mark.asyncio
    async def test_nearest_preceding_calibration_is_used(self, chart, storage):
        await storage.add_calibration(calibration(chart.bank, "100", at(2025, 1, 1)))
        await storage.add_calibration(calibration(chart.bank, "300", at(2025, 2, 1)))
        await storage.add_transaction(transfer(chart.salary, chart.bank, "50", at(2025, 1, 15)))
        await storage.add_transaction(transfer(chart.salary, chart.bank, "7", at(2025, 2, 5)))

        calculator = BalanceCalculator(storage)
        assert await calculator.balance_at(chart.bank.id, at(2025, 1, 20)) == Decimal("150")
        assert await calculator.balance_at(chart.bank.id, at(2025, 2, 10)) == Decimal("307")

    @pytest.mark.asyncio
    async def test_side_specific_amounts(self, chart, storage):
        """USD leaves the wallet, CNY arrives in the bank."""
        await storage.add_transaction(
            transfer(chart.wallet_usd, chart.bank, "100", at(2025, 1, 2),
                     from_amount="100", to_amount="710")
        )
        calculator = BalanceCalculator(storage)
        assert await calculator.balance_at(chart.bank.id, at(2025, 1, 3)) == Decimal("710")
        assert await calculator.balance_at(chart.wallet_usd.id, at(2025, 1, 3)) == Decimal("-100")

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, chart):
        calculator = BalanceCalculator(BrokenStorage(accounts=chart.all))
        with pytest.raises(StorageError):
            await calculator.balance_at(chart.bank.id, at(2025, 1, 1))


class TestExplainAndProject:
    """Balance reports and backward projection."""

    @pytest.mark.asyncio
    async def test_explain_without_anchor(self, chart, storage):
        await storage.add_transaction(transfer(chart.salary, chart.bank, "10", at(2025, 1, 1)))
        report = await BalanceCalculator(storage).explain_balance(chart.bank.id, at(2025, 1, 2))
        assert report.anchor_calibration_id is None
        assert report.anchor_date == LEDGER_EPOCH
        assert report.anchor_balance == Decimal("0")
        assert report.inflow_count == 1
        assert report.balance == Decimal("10")

    @pytest.mark.asyncio
    async def test_explain_reports_totals(self, chart, storage):
        cal = calibration(chart.bank, "200", at(2025, 1, 1))
        await storage.add_calibration(cal)
        await storage.add_transaction(transfer(chart.salary, chart.bank, "50", at(2025, 1, 2)))
        await storage.add_transaction(transfer(chart.bank, chart.food, "20", at(2025, 1, 3)))
        await storage.add_transaction(transfer(chart.bank, chart.transport, "5", at(2025, 1, 4)))

        report = await BalanceCalculator(storage).explain_balance(chart.bank.id, at(2025, 1, 5))
        assert report.anchor_calibration_id == cal.id
        assert report.direction == "forward"
        assert report.inflow_total == Decimal("50")
        assert report.outflow_total == Decimal("25")
        assert report.outflow_count == 2
        assert report.balance == Decimal("225")

    @pytest.mark.asyncio
    async def test_project_backwards_from_later_calibration(self, chart, storage):
        cal = calibration(chart.bank, "1000", at(2025, 3, 1))
        await storage.add_calibration(cal)
        await storage.add_transaction(transfer(chart.salary, chart.bank, "300", at(2025, 2, 1)))
        await storage.add_transaction(transfer(chart.bank, chart.food, "80", at(2025, 2, 10)))
        await storage.add_transaction(transfer(chart.salary, chart.bank, "999", at(2025, 1, 1)))

        calculator = BalanceCalculator(storage)
        report = await calculator.project_balance(chart.bank.id, at(2025, 1, 15))
        assert report.direction == "backward"
        assert report.anchor_calibration_id == cal.id
        assert report.balance == Decimal("780")

        # balance_at keeps the zero-anchored forward semantics
        assert await calculator.balance_at(chart.bank.id, at(2025, 1, 15)) == Decimal("999")

    @pytest.mark.asyncio
    async def test_project_matches_forward_when_anchor_precedes(self, chart, storage):
        await storage.add_calibration(calibration(chart.bank, "100", at(2025, 1, 1)))
        await storage.add_transaction(transfer(chart.salary, chart.bank, "5", at(2025, 1, 2)))

        calculator = BalanceCalculator(storage)
        projected = await calculator.project_balance(chart.bank.id, at(2025, 1, 3))
        assert projected.direction == "forward"
        assert projected.balance == await calculator.balance_at(chart.bank.id, at(2025, 1, 3))

    @pytest.mark.asyncio
    async def test_project_without_any_calibration(self, chart, storage):
        await storage.add_transaction(transfer(chart.salary, chart.bank, "5", at(2025, 1, 2)))
        report = await BalanceCalculator(storage).project_balance(chart.bank.id, at(2025, 1, 3))
        assert report.direction == "forward"
        assert report.balance == Decimal("5")
