"""Weather response caching layer.

Provides TTL-based caching of upstream weather payloads in DuckDB, the
expiration policy, and the scheduled cleanup tiers.

Scheduled cleanup can be run in-process via CleanupScheduler.start(), or as:
    python -m weathercache.cache.cleanup --serve
"""

from weathercache.cache.cleanup import (
    CacheCleaner,
    CleanupScheduler,
    SweepReport,
    SweepTier,
    get_cache_status,
    next_daily_run,
)
from weathercache.cache.database import CacheStore
from weathercache.cache.errors import CacheError, MalformedEntry, StoreUnavailable
from weathercache.cache.models import (
    CacheClass,
    CacheEntry,
    CacheResult,
    CacheStats,
    Census,
    DataType,
    UsageStats,
)
from weathercache.cache.policy import (
    DEFAULT_TTLS,
    LONG_LIVED_CLASSES,
    CachePolicy,
    is_expired,
    make_coordinate_key,
    make_key,
)
from weathercache.cache.service import WeatherCacheService

__all__ = [
    "CacheClass",
    "CacheCleaner",
    "CacheEntry",
    "CacheError",
    "CachePolicy",
    "CacheResult",
    "CacheStats",
    "CacheStore",
    "Census",
    "CleanupScheduler",
    "DEFAULT_TTLS",
    "DataType",
    "LONG_LIVED_CLASSES",
    "MalformedEntry",
    "StoreUnavailable",
    "SweepReport",
    "SweepTier",
    "UsageStats",
    "WeatherCacheService",
    "get_cache_status",
    "is_expired",
    "make_coordinate_key",
    "make_key",
    "next_daily_run",
]
