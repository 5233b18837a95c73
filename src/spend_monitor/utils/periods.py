"""
Calendar windows used by cost queries and alert baselines.

All windows are half-open: ``(start, end)`` covers ``start <= day < end``.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..analysis.trends import TrendPoint
    from ..providers.base import TimeGranularity


def utc_today() -> date:
    """Current calendar date in UTC, the date all billing windows are keyed on."""
    return datetime.now(timezone.utc).date()


def month_start(day: date) -> date:
    return day.replace(day=1)


def add_months(day: date, months: int) -> date:
    """Shift a first-of-month date by ``months`` months."""
    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def month_to_date_window(today: date) -> tuple[date, date]:
    """Current billing period up to and including ``today``."""
    return month_start(today), today + timedelta(days=1)


def prior_month_window(today: date) -> tuple[date, date]:
    """The full calendar month before ``today``'s month."""
    current = month_start(today)
    return add_months(current, -1), current


def prior_month_to_date_window(today: date) -> tuple[date, date]:
    """The same number of elapsed days at the start of the prior month.

    Capped at the end of the prior month, so on the 31st against a 30-day
    month this is the full prior month.
    """
    start, cap = prior_month_window(today)
    elapsed = (today - month_start(today)).days + 1
    return start, min(start + timedelta(days=elapsed), cap)


def previous_day_window(today: date) -> tuple[date, date]:
    return today - timedelta(days=1), today


def trailing_week_windows(today: date) -> tuple[tuple[date, date], tuple[date, date]]:
    """Return ``(this_week, last_week)``: the 7 days ending yesterday and the 7 before."""
    this_week = (today - timedelta(days=7), today)
    last_week = (today - timedelta(days=14), today - timedelta(days=7))
    return this_week, last_week


def iter_buckets(start: date, end: date, granularity: "TimeGranularity") -> list[date]:
    """List the bucket dates covering ``[start, end)``: days, or month starts."""
    from ..providers.base import TimeGranularity

    buckets = []
    if granularity == TimeGranularity.MONTHLY:
        current = month_start(start)
        while current < end:
            buckets.append(current)
            current = add_months(current, 1)
    else:
        current = start
        while current < end:
            buckets.append(current)
            current += timedelta(days=1)
    return buckets


def zero_fill(
    points: list["TrendPoint"],
    start: date,
    end: date,
    granularity: "TimeGranularity",
) -> list["TrendPoint"]:
    """
    Produce one point per bucket in ``[start, end)``, summing duplicates and
    inserting zero-cost points for missing buckets.

    Points outside the window are dropped. Monthly points are keyed by the
    first day of their month.
    """
    from ..analysis.trends import TrendPoint
    from ..providers.base import TimeGranularity

    totals: dict[date, Decimal] = {}
    for point in points:
        key = month_start(point.date) if granularity == TimeGranularity.MONTHLY else point.date
        totals[key] = totals.get(key, Decimal("0")) + point.cost

    return [
        TrendPoint(date=bucket, cost=totals.get(bucket, Decimal("0")))
        for bucket in iter_buckets(start, end, granularity)
    ]
