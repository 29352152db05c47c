"""Data models for cache layer."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

# Keys look like "<prefix>:<location>", e.g. "forecast:40.7128,-74.0060"
KEY_SEPARATOR = ":"


class DataType(str, Enum):
    """Weather payload categories. The value is also the key prefix."""

    CURRENT = "current"
    FORECAST = "forecast"
    HOURLY = "hourly"
    AIR_QUALITY = "air_quality"
    HISTORICAL = "historical"

    @property
    def prefix(self) -> str:
        return f"{self.value}{KEY_SEPARATOR}"


@dataclass(frozen=True)
class CacheClass:
    """Long-lived, non-weather cache category with a TTL ceiling.

    Writers may set generous TTLs on these entries; sweeps cap the remaining
    lifetime at ``max_ttl``.
    """

    name: str
    max_ttl: timedelta

    @property
    def prefix(self) -> str:
        return f"{self.name}{KEY_SEPARATOR}"


@dataclass
class CacheEntry:
    """One row of the cache store.

    Metadata fields are Optional because rows read back during cleanup may be
    malformed; CachePolicy.is_malformed decides whether a row is usable.
    """

    key: str
    payload: Optional[str]
    data_type: Optional[str]
    location_id: Optional[str]
    cached_at: Optional[datetime]
    expires_at: Optional[datetime]
    access_count: int = 0

    @property
    def prefix(self) -> Optional[str]:
        """Key prefix including the separator, or None if the key has none."""
        head, sep, _ = self.key.partition(KEY_SEPARATOR)
        return f"{head}{sep}" if sep else None

    @property
    def ttl(self) -> Optional[timedelta]:
        """TTL the entry was written with."""
        if self.cached_at is None or self.expires_at is None:
            return None
        return self.expires_at - self.cached_at

    def remaining_ttl(self, now: datetime) -> Optional[timedelta]:
        """Time left before the entry expires (negative once expired)."""
        if self.expires_at is None:
            return None
        return self.expires_at - now


@dataclass
class CacheResult:
    """Outcome of a façade lookup."""

    hit: bool
    payload: Any = None
    metadata: Optional[CacheEntry] = None

    @classmethod
    def miss(cls) -> "CacheResult":
        return cls(hit=False)


@dataclass
class UsageStats:
    """Rolling hit/miss counters kept by the store since the last reset."""

    hits: int = 0
    misses: int = 0
    since: Optional[datetime] = None
    hits_by_prefix: dict[str, int] = field(default_factory=dict)
    misses_by_prefix: dict[str, int] = field(default_factory=dict)

    @property
    def lookups(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Fraction of lookups served from cache (0.0 when nothing was looked up)."""
        if self.lookups == 0:
            return 0.0
        return self.hits / self.lookups


@dataclass
class CacheStats:
    """Point-in-time cache statistics."""

    total_entries: int
    valid_entries: int
    expired_entries: int
    hits: int
    misses: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        if lookups == 0:
            return 0.0
        return self.hits / lookups

    def __str__(self) -> str:
        return (
            f"CacheStats(total={self.total_entries}, valid={self.valid_entries}, "
            f"expired={self.expired_entries}, hit_rate={self.hit_rate:.1%})"
        )


@dataclass
class Census:
    """Full keyspace census emitted by the deep sweep."""

    taken_at: datetime
    counts_by_prefix: dict[str, int]
    total_entries: int
    total_payload_bytes: int
    orphan_entries: int = 0

    def __str__(self) -> str:
        per_prefix = ", ".join(
            f"{prefix.rstrip(KEY_SEPARATOR)}={count}"
            for prefix, count in sorted(self.counts_by_prefix.items())
        )
        return (
            f"Cache census - total: {self.total_entries}, "
            f"bytes: {self.total_payload_bytes}, orphans: {self.orphan_entries}"
            + (f", {per_prefix}" if per_prefix else "")
        )
