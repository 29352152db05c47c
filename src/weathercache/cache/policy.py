"""Expiration rules for cached weather data.

All decisions about *what* may live in the cache and for how long are made
here, independent of how entries are stored:

- DEFAULT_TTLS is the registry of weather data types and their lifetimes
- LONG_LIVED_CLASSES lists non-weather categories with a TTL ceiling
- is_expired is the one expiry predicate; CacheStore.get applies the same
  comparison in SQL so lazy reads and cleanup sweeps never disagree
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Optional

from weathercache.cache.models import CacheClass, CacheEntry, DataType

logger = logging.getLogger(__name__)

# Historical observations never change once past, so they live a full day
DEFAULT_TTLS: dict[DataType, timedelta] = {
    DataType.CURRENT: timedelta(minutes=15),
    DataType.FORECAST: timedelta(minutes=15),
    DataType.HOURLY: timedelta(minutes=15),
    DataType.AIR_QUALITY: timedelta(minutes=30),
    DataType.HISTORICAL: timedelta(hours=24),
}

LOCATION_CLASS = CacheClass("location", max_ttl=timedelta(days=1))
ANALYTICS_CLASS = CacheClass("analytics", max_ttl=timedelta(days=7))
USER_PREFS_CLASS = CacheClass("user_prefs", max_ttl=timedelta(days=30))

LONG_LIVED_CLASSES: tuple[CacheClass, ...] = (
    LOCATION_CLASS,
    ANALYTICS_CLASS,
    USER_PREFS_CLASS,
)

_WHITESPACE = re.compile(r"\s+")


def is_expired(entry: CacheEntry, now: datetime) -> bool:
    """True when the entry's lifetime is over (``expires_at <= now``).

    Entries without an expiry read as expired.
    """
    if entry.expires_at is None:
        return True
    return entry.expires_at <= now


class CachePolicy:
    """Per-type TTLs, recapping, and orphan/malformed detection.

    Example:
        >>> policy = CachePolicy()
        >>> policy.ttl_for(DataType.AIR_QUALITY)
        datetime.timedelta(seconds=1800)
        >>> policy.is_orphan("tmp:abc")
        True
    """

    def __init__(
        self,
        ttls: Optional[dict[DataType, timedelta]] = None,
        long_lived: Optional[tuple[CacheClass, ...]] = None,
    ):
        """Initialize policy.

        Args:
            ttls: Per-type TTL overrides, merged over DEFAULT_TTLS
            long_lived: Long-lived classes (defaults to LONG_LIVED_CLASSES)
        """
        self.ttls = dict(DEFAULT_TTLS)
        if ttls:
            self.ttls.update(ttls)
        for data_type, ttl in self.ttls.items():
            if ttl <= timedelta(0):
                raise ValueError(f"TTL for {data_type.value} must be positive, got {ttl}")

        self.long_lived = tuple(long_lived) if long_lived is not None else LONG_LIVED_CLASSES
        self._classes_by_prefix = {c.prefix: c for c in self.long_lived}

    # -------------------------------------------------------------------------
    # TTLs and prefixes
    # -------------------------------------------------------------------------

    def ttl_for(self, data_type: DataType | str) -> timedelta:
        """Default TTL for a data type.

        Raises:
            ValueError: If data_type is not a registered DataType
        """
        return self.ttls[self.parse_data_type(data_type)]

    def parse_data_type(self, data_type: DataType | str) -> DataType:
        """Resolve a DataType from its value.

        Raises:
            ValueError: If the value is not registered
        """
        try:
            resolved = DataType(data_type)
        except ValueError:
            raise ValueError(
                f"Unknown data type: {data_type!r}. "
                f"Must be one of {[t.value for t in self.ttls]}"
            ) from None
        if resolved not in self.ttls:
            raise ValueError(f"Data type {resolved.value} has no TTL registered")
        return resolved

    @property
    def data_type_prefixes(self) -> list[str]:
        return [data_type.prefix for data_type in self.ttls]

    @property
    def recognized_prefixes(self) -> list[str]:
        """Every prefix a legitimate key may start with."""
        return self.data_type_prefixes + list(self._classes_by_prefix)

    def class_for_key(self, key: str) -> Optional[CacheClass]:
        """Long-lived class owning key, if any."""
        for prefix, cache_class in self._classes_by_prefix.items():
            if key.startswith(prefix):
                return cache_class
        return None

    def is_orphan(self, key: str) -> bool:
        """True when key starts with none of the recognized prefixes."""
        return not any(key.startswith(prefix) for prefix in self.recognized_prefixes)

    def _recognized_type_names(self) -> set[str]:
        return {t.value for t in self.ttls} | {c.name for c in self.long_lived}

    # -------------------------------------------------------------------------
    # Entry checks
    # -------------------------------------------------------------------------

    def is_expired(self, entry: CacheEntry, now: datetime) -> bool:
        return is_expired(entry, now)

    def is_malformed(self, entry: CacheEntry) -> bool:
        """True when the row lacks metadata needed to serve or expire it."""
        return self.malformed_reason(entry) is not None

    def malformed_reason(self, entry: CacheEntry) -> Optional[str]:
        """Explain why an entry is malformed, or None if it is well formed."""
        if entry.payload is None:
            return "missing payload"
        if entry.cached_at is None or entry.expires_at is None:
            return "missing timestamps"
        if entry.expires_at <= entry.cached_at:
            return "expires_at not after cached_at"
        if entry.data_type is None:
            return "missing data type"
        if entry.data_type not in self._recognized_type_names():
            return f"unknown data type {entry.data_type!r}"
        return None

    def should_delete_on_sight(self, entry: CacheEntry) -> bool:
        """Orphans and malformed rows are removed regardless of expiry."""
        return self.is_orphan(entry.key) or self.is_malformed(entry)

    def recap_deadline(self, entry: CacheEntry, now: datetime) -> Optional[datetime]:
        """Latest expiry allowed for a long-lived entry, if it must be recapped.

        Returns:
            ``now + max_ttl`` when the entry's remaining TTL exceeds its class
            maximum, otherwise None
        """
        cache_class = self.class_for_key(entry.key)
        if cache_class is None or entry.expires_at is None:
            return None
        if entry.expires_at - now > cache_class.max_ttl:
            return now + cache_class.max_ttl
        return None


def make_key(data_type: DataType | str, location: str) -> str:
    """Build a cache key from a data type and a city name.

    Example:
        >>> make_key(DataType.CURRENT, "New York")
        'current:new_york'
    """
    prefix = DataType(data_type).prefix
    normalized = _WHITESPACE.sub("_", location.strip().lower())
    if not normalized:
        raise ValueError("location must not be empty")
    return f"{prefix}{normalized}"


def make_coordinate_key(data_type: DataType | str, lat: float, lon: float) -> str:
    """Build a cache key from a data type and coordinates (4 decimals).

    Example:
        >>> make_coordinate_key(DataType.FORECAST, 40.71278, -74.00597)
        'forecast:40.7128,-74.0060'
    """
    if not -90 <= lat <= 90 or not -180 <= lon <= 180:
        raise ValueError(f"Invalid coordinates: ({lat}, {lon})")
    return f"{DataType(data_type).prefix}{lat:.4f},{lon:.4f}"
