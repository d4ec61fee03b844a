"""Budget aggregation and period engine."""

from bookkeeping.budget.aggregator import (
    BudgetAggregator,
    classify,
    expand_descendants,
    resolve_target_accounts,
)
from bookkeeping.budget.engine import BudgetEngine, RecordRefreshError
from bookkeeping.budget.periods import (
    generate_periods,
    period_bounds,
    plan_end_date,
    previous_periods,
)

__all__ = [
    "BudgetAggregator",
    "BudgetEngine",
    "RecordRefreshError",
    "classify",
    "expand_descendants",
    "generate_periods",
    "period_bounds",
    "plan_end_date",
    "previous_periods",
    "resolve_target_accounts",
]
