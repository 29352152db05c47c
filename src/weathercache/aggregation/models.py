"""Data models for weather aggregation."""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class Reading:
    """One sub-daily observation or forecast step (e.g. a 3-hour slot).

    Units follow the upstream provider: temperatures in degrees, pressure in
    hPa, wind speed in m/s, visibility in metres, volumes in mm.
    """

    timestamp: datetime
    temperature: float
    condition_main: str
    feels_like: Optional[float] = None
    humidity: Optional[float] = None
    pressure: Optional[float] = None
    wind_speed: Optional[float] = None
    wind_direction: Optional[float] = None
    visibility: Optional[float] = None
    cloudiness: Optional[float] = None
    condition_description: Optional[str] = None
    condition_icon: Optional[str] = None
    precipitation_probability: Optional[float] = None  # 0-100
    rain_volume: Optional[float] = None
    snow_volume: Optional[float] = None

    @property
    def local_date(self) -> date:
        """Calendar date in the reading's own timezone."""
        return self.timestamp.date()


@dataclass
class DailySummary:
    """Reduction of one calendar day of readings."""

    date: date
    temp_min: float
    temp_max: float
    temp_avg: float
    humidity_avg: Optional[float]
    pressure_avg: Optional[float]
    wind_speed_avg: Optional[float]
    dominant_condition: str
    representative_description: Optional[str]
    representative_icon: Optional[str]
    max_precipitation_probability: float
    total_rain_volume: float
    total_snow_volume: float
    reading_count: int = 0

    @property
    def total_precipitation(self) -> float:
        """Rain plus snow volume in mm."""
        return self.total_rain_volume + self.total_snow_volume

    @property
    def day_of_week(self) -> str:
        return self.date.strftime("%A").upper()


class TrendDirection(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class TrendMetric(str, Enum):
    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    PRESSURE = "pressure"
    PRECIPITATION = "precipitation"


@dataclass
class TrendResult:
    """Direction of change between the early and late halves of a series."""

    direction: TrendDirection
    metric: TrendMetric
    first_half_avg: Optional[float] = None
    second_half_avg: Optional[float] = None
    threshold: float = 0.0
    points: int = 0

    @property
    def delta(self) -> float:
        """second_half_avg - first_half_avg (0.0 when undefined)."""
        if self.first_half_avg is None or self.second_half_avg is None:
            return 0.0
        return self.second_half_avg - self.first_half_avg


@dataclass
class PeriodStatistics:
    """Summary statistics over an arbitrary range of readings."""

    start: datetime
    end: datetime
    reading_count: int
    temp_avg: float
    temp_min: float
    temp_max: float
    total_rain_volume: float
    total_snow_volume: float
    max_precipitation_probability: float
    condition_distribution: dict[str, int] = field(default_factory=dict)
