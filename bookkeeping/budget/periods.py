"""
Budget period schedules.

Weekly:  period i = [start + 7*(i-1) days, start + 7*(i-1) + 6 days]
Monthly: period i = [start + (i-1) months, start + i months - 1 day]

DESIGN DECISION: Monthly boundaries are always computed from the round's
start date, never by chaining from the previous period. relativedelta
clamps to the end of short months (Jan 31 + 1 month = Feb 28), and because
every boundary is derived from the same anchor the periods stay contiguous
without drifting towards the start of the month.
"""

from datetime import date, timedelta

from dateutil.relativedelta import relativedelta

from bookkeeping.models.budget import PeriodSlot, PeriodType


ONE_DAY = timedelta(days=1)


def period_bounds(start_date: date, period_type: PeriodType, index: int) -> tuple[date, date]:
    """Start and end (both inclusive) of the 1-based `index`-th period."""
    if index < 1:
        raise ValueError(f"Period index must be >= 1, got {index}")

    if period_type == PeriodType.WEEKLY:
        start = start_date + timedelta(days=7 * (index - 1))
        return start, start + timedelta(days=6)

    start = start_date + relativedelta(months=index - 1)
    end = start_date + relativedelta(months=index) - ONE_DAY
    return start, end


def generate_periods(
    start_date: date,
    period_type: PeriodType,
    count: int = 12,
) -> list[PeriodSlot]:
    """The `count` consecutive periods of a plan round, indexed from 1."""
    if count < 1:
        raise ValueError(f"Period count must be >= 1, got {count}")

    slots = []
    for index in range(1, count + 1):
        start, end = period_bounds(start_date, period_type, index)
        slots.append(PeriodSlot(index=index, start=start, end=end))
    return slots


def plan_end_date(start_date: date, period_type: PeriodType, count: int = 12) -> date:
    """Last day of the final period of a round."""
    return period_bounds(start_date, period_type, count)[1]


def previous_periods(
    period_start: date,
    period_type: PeriodType,
    lookback: int,
) -> list[tuple[date, date]]:
    """
    The `lookback` natural periods immediately before `period_start`,
    most recent first.

    Monthly plans look at whole calendar months (1st to last day) before
    the month containing `period_start`. Weekly plans look at the 7-day
    windows ending the day before `period_start`.
    """
    windows = []
    if period_type == PeriodType.WEEKLY:
        for k in range(1, lookback + 1):
            start = period_start - timedelta(days=7 * k)
            windows.append((start, start + timedelta(days=6)))
        return windows

    month_start = period_start.replace(day=1)
    for k in range(1, lookback + 1):
        start = month_start - relativedelta(months=k)
        end = start + relativedelta(months=1) - ONE_DAY
        windows.append((start, end))
    return windows
