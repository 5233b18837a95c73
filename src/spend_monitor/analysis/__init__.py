"""Cost trend analysis."""

from .trends import TrendAnalyzer, TrendPoint, TrendStats

__all__ = ["TrendAnalyzer", "TrendPoint", "TrendStats"]
