"""Trend direction over a daily or sub-daily series.

The series is split into an early and a late half (integer division; for odd
lengths the middle point belongs to neither half). The metric is averaged
over each half and the difference is compared with a per-metric threshold.
"""

import logging
from typing import Optional, Sequence

import numpy as np

from weathercache.aggregation.daily import AggregationError, sort_readings
from weathercache.aggregation.models import (
    DailySummary,
    Reading,
    TrendDirection,
    TrendMetric,
    TrendResult,
)

logger = logging.getLogger(__name__)

# Minimum change between half averages before a trend is reported
TEMPERATURE_TREND_THRESHOLD = 2.0  # degrees
HUMIDITY_TREND_THRESHOLD = 5.0  # percentage points
PRESSURE_TREND_THRESHOLD = 3.0  # hPa
PRECIPITATION_TREND_THRESHOLD = 1.0  # mm

TREND_THRESHOLDS: dict[TrendMetric, float] = {
    TrendMetric.TEMPERATURE: TEMPERATURE_TREND_THRESHOLD,
    TrendMetric.HUMIDITY: HUMIDITY_TREND_THRESHOLD,
    TrendMetric.PRESSURE: PRESSURE_TREND_THRESHOLD,
    TrendMetric.PRECIPITATION: PRECIPITATION_TREND_THRESHOLD,
}


def _summary_value(summary: DailySummary, metric: TrendMetric) -> Optional[float]:
    if metric is TrendMetric.TEMPERATURE:
        return summary.temp_avg
    if metric is TrendMetric.HUMIDITY:
        return summary.humidity_avg
    if metric is TrendMetric.PRESSURE:
        return summary.pressure_avg
    return summary.total_precipitation


def _reading_value(reading: Reading, metric: TrendMetric) -> Optional[float]:
    if metric is TrendMetric.TEMPERATURE:
        return reading.temperature
    if metric is TrendMetric.HUMIDITY:
        return reading.humidity
    if metric is TrendMetric.PRESSURE:
        return reading.pressure
    return (reading.rain_volume or 0.0) + (reading.snow_volume or 0.0)


def metric_values(
    series: Sequence[DailySummary] | Sequence[Reading],
    metric: TrendMetric,
) -> np.ndarray:
    """Metric values in chronological order, NaN where a point lacks the metric.

    Raises:
        AggregationError: If the series mixes types or holds something else
    """
    series = list(series)
    if not series:
        return np.array([], dtype=float)

    if all(isinstance(item, DailySummary) for item in series):
        ordered = sorted(series, key=lambda s: s.date)
        values = [_summary_value(s, metric) for s in ordered]
    elif all(isinstance(item, Reading) for item in series):
        values = [_reading_value(r, metric) for r in sort_readings(series)]
    else:
        raise AggregationError("Trend series must be all DailySummary or all Reading")

    return np.array([np.nan if v is None else v for v in values], dtype=float)


def _half_mean(values: np.ndarray) -> Optional[float]:
    present = values[~np.isnan(values)]
    if present.size == 0:
        return None
    return float(present.mean())


def compute_trend(
    series: Sequence[DailySummary] | Sequence[Reading],
    metric: TrendMetric | str = TrendMetric.TEMPERATURE,
    threshold: Optional[float] = None,
) -> TrendResult:
    """Classify a series as increasing, decreasing or stable for one metric.

    Args:
        series: DailySummaries or Readings (any order; sorted chronologically)
        metric: temperature, humidity, pressure or precipitation
        threshold: Override of the metric's TREND_THRESHOLDS entry

    Returns:
        TrendResult; series with fewer than two points are always stable

    Example:
        >>> compute_trend(aggregate_daily(readings), "temperature").direction
        <TrendDirection.INCREASING: 'increasing'>
    """
    metric = TrendMetric(metric)
    threshold = TREND_THRESHOLDS[metric] if threshold is None else threshold
    if threshold < 0:
        raise ValueError(f"threshold must be non-negative, got {threshold}")

    values = metric_values(series, metric)
    n = len(values)
    if n < 2:
        return TrendResult(
            direction=TrendDirection.STABLE, metric=metric, threshold=threshold, points=n
        )

    half = n // 2
    first_avg = _half_mean(values[:half])
    second_avg = _half_mean(values[n - half:])

    result = TrendResult(
        direction=TrendDirection.STABLE,
        metric=metric,
        first_half_avg=first_avg,
        second_half_avg=second_avg,
        threshold=threshold,
        points=n,
    )
    if first_avg is None or second_avg is None:
        logger.debug(f"Not enough {metric.value} values for a trend over {n} points")
        return result

    if result.delta > threshold:
        result.direction = TrendDirection.INCREASING
    elif result.delta < -threshold:
        result.direction = TrendDirection.DECREASING

    logger.debug(
        f"{metric.value} trend over {n} points: {first_avg:.2f} -> {second_avg:.2f} "
        f"({result.direction.value})"
    )
    return result
