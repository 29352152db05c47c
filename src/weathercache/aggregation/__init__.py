"""Aggregation of sub-daily weather readings.

This module provides:
- aggregate_daily: One DailySummary per calendar date
- compute_trend: Increasing/decreasing/stable direction for a metric
- summarize_period: Range statistics and condition distribution
"""

from .daily import (
    DEFAULT_FORECAST_DAYS,
    AggregationError,
    aggregate_daily,
    dominant_value,
    readings_to_frame,
    sort_readings,
    summaries_to_frame,
    summarize_period,
)
from .models import (
    DailySummary,
    PeriodStatistics,
    Reading,
    TrendDirection,
    TrendMetric,
    TrendResult,
)
from .trend import TREND_THRESHOLDS, compute_trend

__all__ = [
    "AggregationError",
    "DEFAULT_FORECAST_DAYS",
    "DailySummary",
    "PeriodStatistics",
    "Reading",
    "TREND_THRESHOLDS",
    "TrendDirection",
    "TrendMetric",
    "TrendResult",
    "aggregate_daily",
    "compute_trend",
    "dominant_value",
    "readings_to_frame",
    "sort_readings",
    "summaries_to_frame",
    "summarize_period",
]
