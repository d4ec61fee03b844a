"""Balance reconstruction package."""

from bookkeeping.balance.calculator import BalanceCalculator, sum_inflows, sum_outflows

__all__ = ["BalanceCalculator", "sum_inflows", "sum_outflows"]
