"""Revenue and recurring-revenue aggregation."""

from .aggregator import MetricsAggregator, WindowAnchors, monthly_amount
from .models import MetricsResult, MRRBreakdownEntry, MRRSummary, RawCounts, Totals

__all__ = [
    "MetricsAggregator",
    "MetricsResult",
    "MRRBreakdownEntry",
    "MRRSummary",
    "RawCounts",
    "Totals",
    "WindowAnchors",
    "monthly_amount",
]
