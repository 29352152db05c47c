"""Daily aggregation of sub-daily weather readings.

Readings are grouped by their own calendar date and each group is reduced to
a DailySummary:

- Temperature: min / max / mean
- Humidity, pressure, wind speed: mean over the readings that report them
- Precipitation probability: max
- Rain / snow volume: sum, missing values count as 0 mm
- Dominant condition: most frequent ``condition_main``; ties go to the value
  that reaches the winning count first, scanning in time order

Input order does not matter: readings are always sorted by timestamp before
grouping, and a day limit is applied only after the days are sorted.
"""

import logging
import math
import numbers
from dataclasses import asdict
from datetime import datetime
from typing import Hashable, Iterable, Optional, Sequence

import pandas as pd

from weathercache.aggregation.models import DailySummary, PeriodStatistics, Reading

logger = logging.getLogger(__name__)

# Forecast views show at most this many days
DEFAULT_FORECAST_DAYS = 5

_NUMERIC_COLUMNS = [
    "temperature",
    "feels_like",
    "humidity",
    "pressure",
    "wind_speed",
    "wind_direction",
    "visibility",
    "cloudiness",
    "precipitation_probability",
    "rain_volume",
    "snow_volume",
]


class AggregationError(ValueError):
    """Readings cannot be aggregated (wrong type, missing or unsortable timestamps)."""


def _validate(readings: Sequence) -> None:
    for i, reading in enumerate(readings):
        if not isinstance(reading, Reading):
            raise AggregationError(
                f"Item {i} is {type(reading).__name__}, expected Reading"
            )
        if not isinstance(reading.timestamp, datetime):
            raise AggregationError(f"Reading {i} has no valid timestamp: {reading.timestamp!r}")
        temperature = reading.temperature
        if not isinstance(temperature, numbers.Real) or math.isnan(temperature):
            raise AggregationError(f"Reading {i} at {reading.timestamp} has no temperature")
        if not reading.condition_main:
            raise AggregationError(f"Reading {i} at {reading.timestamp} has no condition")
        for name in ("rain_volume", "snow_volume"):
            value = getattr(reading, name)
            if value is None:
                continue
            if not isinstance(value, numbers.Real) or math.isnan(value):
                raise AggregationError(f"Reading {i} has non-numeric {name}: {value!r}")
            if value < 0:
                raise AggregationError(f"Reading {i} has negative {name}: {value}")
        probability = reading.precipitation_probability
        if probability is not None and not 0 <= probability <= 100:
            raise AggregationError(
                f"Reading {i} has precipitation_probability outside 0-100: {probability}"
            )


def sort_readings(readings: Iterable[Reading]) -> list[Reading]:
    """Validate readings and return them sorted by timestamp (stable).

    Raises:
        AggregationError: If an item is not a valid Reading or timestamps
            cannot be compared (e.g. naive mixed with timezone-aware)
    """
    readings = list(readings)
    _validate(readings)
    try:
        return sorted(readings, key=lambda r: r.timestamp)
    except TypeError as e:
        raise AggregationError(f"Reading timestamps are not mutually comparable: {e}") from e


def readings_to_frame(readings: Iterable[Reading]) -> pd.DataFrame:
    """Build a time-sorted DataFrame of readings with a ``date`` column.

    Numeric columns are floats with NaN for missing values.
    """
    ordered = sort_readings(readings)
    columns = list(Reading.__dataclass_fields__) + ["date"]
    if not ordered:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame([asdict(r) for r in ordered])
    df["date"] = [r.local_date for r in ordered]
    for col in _NUMERIC_COLUMNS:
        df[col] = pd.to_numeric(df[col], errors="coerce").astype(float)
    return df


def dominant_value(values: Sequence[Hashable]) -> Optional[Hashable]:
    """Most frequent value; ties go to the value that reaches the max count first.

    Values are scanned in order with running counts, so for
    Rain, Clear, Clear, Rain the winner is Clear (count 2 at the third item).

    Example:
        >>> dominant_value(["Rain", "Clear", "Clear", "Rain"])
        'Clear'
    """
    values = list(values)
    if not values:
        return None

    totals: dict = {}
    for value in values:
        totals[value] = totals.get(value, 0) + 1
    max_count = max(totals.values())

    running: dict = {}
    for value in values:
        running[value] = running.get(value, 0) + 1
        if running[value] == max_count:
            return value
    return None


def _optional(value) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    return float(value)


def _optional_str(value) -> Optional[str]:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    return str(value)


def _summarize_day(day, group: pd.DataFrame) -> DailySummary:
    temps = group["temperature"]
    temp_min = float(temps.min())
    temp_max = float(temps.max())
    # float mean can drift past the extremes when all values are equal
    temp_avg = min(max(float(temps.mean()), temp_min), temp_max)

    conditions = group["condition_main"].tolist()
    dominant = dominant_value(conditions)
    representative = group[group["condition_main"] == dominant].iloc[0]

    return DailySummary(
        date=day,
        temp_min=temp_min,
        temp_max=temp_max,
        temp_avg=temp_avg,
        humidity_avg=_optional(group["humidity"].mean()),
        pressure_avg=_optional(group["pressure"].mean()),
        wind_speed_avg=_optional(group["wind_speed"].mean()),
        dominant_condition=dominant,
        representative_description=_optional_str(representative["condition_description"]),
        representative_icon=_optional_str(representative["condition_icon"]),
        max_precipitation_probability=float(
            group["precipitation_probability"].fillna(0.0).max()
        ),
        total_rain_volume=float(group["rain_volume"].fillna(0.0).sum()),
        total_snow_volume=float(group["snow_volume"].fillna(0.0).sum()),
        reading_count=len(group),
    )


def aggregate_daily(
    readings: Iterable[Reading],
    days: Optional[int] = None,
) -> list[DailySummary]:
    """Reduce sub-daily readings to one DailySummary per calendar date.

    Args:
        readings: Readings for one location, in any order
        days: Keep only the first N days (after sorting by date)

    Returns:
        DailySummaries sorted by date ascending; empty for empty input

    Raises:
        AggregationError: If the readings are malformed or unsortable
        ValueError: If days is negative

    Example:
        >>> summaries = aggregate_daily(readings, days=DEFAULT_FORECAST_DAYS)
        >>> summaries[0].dominant_condition
        'Clouds'
    """
    if days is not None and days < 0:
        raise ValueError(f"days must be non-negative, got {days}")

    df = readings_to_frame(readings)
    if df.empty:
        logger.debug("No readings passed to aggregate_daily")
        return []

    summaries = [
        _summarize_day(day, group)
        for day, group in df.groupby("date", sort=True)
    ]
    if days is not None:
        summaries = summaries[:days]

    logger.info(f"Aggregated {len(df)} readings into {len(summaries)} daily summaries")
    return summaries


def summaries_to_frame(summaries: Iterable[DailySummary]) -> pd.DataFrame:
    """DataFrame view of daily summaries, indexed by date."""
    rows = [asdict(s) for s in summaries]
    if not rows:
        return pd.DataFrame(columns=list(DailySummary.__dataclass_fields__)).set_index("date")
    return pd.DataFrame(rows).set_index("date").sort_index()


def summarize_period(readings: Iterable[Reading]) -> Optional[PeriodStatistics]:
    """Temperature range, precipitation totals and condition counts over a period.

    Returns:
        PeriodStatistics, or None for empty input
    """
    ordered = sort_readings(readings)
    if not ordered:
        return None
    df = readings_to_frame(ordered)

    distribution: dict[str, int] = {}
    for condition in df["condition_main"]:
        distribution[condition] = distribution.get(condition, 0) + 1

    temps = df["temperature"]
    return PeriodStatistics(
        start=ordered[0].timestamp,
        end=ordered[-1].timestamp,
        reading_count=len(df),
        temp_avg=min(max(float(temps.mean()), float(temps.min())), float(temps.max())),
        temp_min=float(temps.min()),
        temp_max=float(temps.max()),
        total_rain_volume=float(df["rain_volume"].fillna(0.0).sum()),
        total_snow_volume=float(df["snow_volume"].fillna(0.0).sum()),
        max_precipitation_probability=float(df["precipitation_probability"].fillna(0.0).max()),
        condition_distribution=distribution,
    )
