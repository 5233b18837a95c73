"""
Trend statistics over daily cost series.

Backs the trend statistics query exposed by the cost service.
"""

import logging
import datetime
from datetime import date
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class TrendPoint(BaseModel):
    """Cost of a single day (or month bucket)."""

    model_config = ConfigDict(frozen=True)

    date: datetime.date
    cost: Decimal = Field(..., ge=0)


class TrendStats(BaseModel):
    """Summary statistics for a trend series."""

    average_daily: Decimal = Decimal("0")
    max_daily: Decimal = Decimal("0")
    min_daily: Decimal = Decimal("0")
    growth_rate: float = Field(0.0, description="(last - first) / first, 0 when first is 0")
    volatility: float = Field(0.0, description="Population std dev over mean, 0 when mean is 0")
    highest_day: Optional[date] = None
    lowest_day: Optional[date] = None
    days: int = 0

    def to_dict(self):
        return self.model_dump(mode="json")


class TrendAnalyzer:
    """Computes summary statistics for a cost series."""

    def analyze(self, series: List[TrendPoint]) -> TrendStats:
        """
        Analyze a date-ordered cost series.

        Args:
            series: Points in strictly increasing date order, already
                zero-filled by the caller if gaps matter

        Returns:
            TrendStats; an empty series yields all zeros

        Raises:
            ValueError: If dates are not strictly increasing
        """
        for previous, current in zip(series, series[1:]):
            if current.date <= previous.date:
                raise ValueError(
                    f"Trend series must be strictly increasing by date: "
                    f"{current.date} follows {previous.date}"
                )

        if not series:
            return TrendStats()

        costs = [point.cost for point in series]
        count = len(costs)
        mean = sum(costs, Decimal("0")) / count

        # First occurrence wins, so ties resolve to the earliest date
        highest = series[0]
        lowest = series[0]
        for point in series[1:]:
            if point.cost > highest.cost:
                highest = point
            if point.cost < lowest.cost:
                lowest = point

        first, last = costs[0], costs[-1]
        growth_rate = float((last - first) / first) if first > 0 else 0.0

        if mean > 0:
            variance = sum((cost - mean) ** 2 for cost in costs) / count
            volatility = float(variance.sqrt() / mean)
        else:
            volatility = 0.0

        return TrendStats(
            average_daily=mean,
            max_daily=highest.cost,
            min_daily=lowest.cost,
            growth_rate=growth_rate,
            volatility=volatility,
            highest_day=highest.date,
            lowest_day=lowest.date,
            days=count,
        )
