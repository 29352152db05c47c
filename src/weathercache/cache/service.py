"""Retrieval façade: the entry point weather-fetching services call.

Typical use from a fetching service:

    result = service.fetch_or_miss(key, DataType.FORECAST)
    if not result.hit:
        payload = provider.fetch(...)          # caller's own upstream call
        service.store(key, payload, DataType.FORECAST, location_id)

The façade never talks to an upstream provider itself.
"""

import json
import logging
from datetime import timedelta
from typing import Any, Optional

from weathercache.cache.database import CacheStore
from weathercache.cache.errors import MalformedEntry, StoreUnavailable
from weathercache.cache.models import CacheClass, CacheEntry, CacheResult, CacheStats, DataType
from weathercache.cache.policy import CachePolicy

logger = logging.getLogger(__name__)


def encode_payload(payload: Any) -> str:
    """Serialize a payload for storage (JSON; datetimes and dates as ISO strings)."""
    return json.dumps(payload, default=_json_default, separators=(",", ":"))


def decode_payload(entry: CacheEntry) -> Any:
    """Deserialize a stored payload.

    Raises:
        MalformedEntry: If the payload is missing or not valid JSON
    """
    if entry.payload is None:
        raise MalformedEntry(entry.key, "missing payload")
    try:
        return json.loads(entry.payload)
    except (TypeError, ValueError) as e:
        raise MalformedEntry(entry.key, "payload is not valid JSON", cause=e) from e


def _json_default(value):
    if hasattr(value, "isoformat"):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class WeatherCacheService:
    """Cache-or-miss lookups and policy-driven stores.

    Storage failures never escape: a failed lookup is a miss, a failed write
    is logged and skipped, so the caller's fetch-then-store path carries on.

    Example:
        >>> service = WeatherCacheService(CacheStore(":memory:"))
        >>> service.fetch_or_miss("current:denver", DataType.CURRENT).hit
        False
        >>> _ = service.store("current:denver", {"temp": 4.5}, DataType.CURRENT, "denver")
        >>> service.fetch_or_miss("current:denver", DataType.CURRENT).payload
        {'temp': 4.5}
    """

    def __init__(self, store: CacheStore, policy: Optional[CachePolicy] = None):
        """Initialize service.

        Args:
            store: CacheStore holding the entries
            policy: CachePolicy supplying TTLs (defaults to CachePolicy())
        """
        self.cache_store = store
        self.policy = policy or CachePolicy()

    def fetch_or_miss(self, key: str, data_type: DataType | str) -> CacheResult:
        """Return the cached payload for key if it is still valid.

        Args:
            key: Cache key
            data_type: Expected data type of the entry

        Returns:
            CacheResult with hit=True and the decoded payload, or a miss
        """
        data_type = self.policy.parse_data_type(data_type)

        try:
            entry = self.cache_store.get(key, data_type)
        except StoreUnavailable as e:
            logger.warning(f"Cache unavailable, treating {key} as a miss: {e}")
            self._record(key, hit=False)
            return CacheResult.miss()

        if entry is None:
            logger.debug(f"Cache MISS for {key}")
            self._record(key, hit=False)
            return CacheResult.miss()

        try:
            if self.policy.is_malformed(entry):
                raise MalformedEntry(key, self.policy.malformed_reason(entry))
            payload = decode_payload(entry)
        except MalformedEntry as e:
            logger.warning(f"{e}; dropping entry")
            self._drop(key)
            self._record(key, hit=False)
            return CacheResult.miss()

        logger.debug(f"Cache HIT for {key} (access_count={entry.access_count})")
        self._record(key, hit=True)
        return CacheResult(hit=True, payload=payload, metadata=entry)

    def store(
        self,
        key: str,
        payload: Any,
        data_type: DataType | str,
        location_id: Optional[str],
    ) -> Optional[CacheEntry]:
        """Cache a freshly fetched payload with the policy TTL for its type.

        Args:
            key: Cache key, expected to start with the data type prefix
            payload: JSON-serializable payload
            data_type: DataType of the payload
            location_id: Owning location

        Returns:
            The stored CacheEntry, or None if the store is unavailable

        Raises:
            ValueError: If data_type is unknown or key has the wrong prefix
        """
        data_type = self.policy.parse_data_type(data_type)
        if not key.startswith(data_type.prefix):
            raise ValueError(f"Key {key!r} does not start with {data_type.prefix!r}")

        ttl = self.policy.ttl_for(data_type)
        return self._put(key, payload, data_type, location_id, ttl)

    def store_long_lived(
        self,
        key: str,
        payload: Any,
        cache_class: CacheClass,
        ttl: timedelta,
        location_id: Optional[str] = None,
    ) -> Optional[CacheEntry]:
        """Cache a location/analytics/user-settings payload.

        The TTL is stored as given; sweeps cap it at the class maximum.
        """
        if cache_class not in self.policy.long_lived:
            raise ValueError(f"Unknown cache class: {cache_class.name}")
        if not key.startswith(cache_class.prefix):
            raise ValueError(f"Key {key!r} does not start with {cache_class.prefix!r}")
        return self._put(key, payload, cache_class.name, location_id, ttl)

    def _put(self, key, payload, type_name, location_id, ttl) -> Optional[CacheEntry]:
        encoded = encode_payload(payload)
        try:
            entry = self.cache_store.put(key, encoded, type_name, location_id, ttl)
        except StoreUnavailable as e:
            logger.warning(f"Cache unavailable, not storing {key}: {e}")
            return None
        logger.info(f"Cached {key} until {entry.expires_at}")
        return entry

    def invalidate(self, key: str) -> int:
        """Drop a single key."""
        return self._drop(key)

    def invalidate_location(self, location_id: str) -> int:
        """Delete every cache entry belonging to a location.

        Returns:
            Number of entries deleted (0 if the store is unavailable)
        """
        try:
            deleted = self.cache_store.delete_location(location_id)
        except StoreUnavailable as e:
            logger.warning(f"Cache unavailable, could not invalidate {location_id}: {e}")
            return 0
        logger.info(f"Invalidated {deleted} cache entries for location {location_id}")
        return deleted

    def get_stats(self) -> Optional[CacheStats]:
        """Entry counts plus hit/miss counters since the last daily reset."""
        try:
            total, valid, expired = self.cache_store.count_entries()
        except StoreUnavailable as e:
            logger.warning(f"Cache unavailable, no stats: {e}")
            return None
        usage = self.cache_store.usage_stats()
        return CacheStats(
            total_entries=total,
            valid_entries=valid,
            expired_entries=expired,
            hits=usage.hits,
            misses=usage.misses,
        )

    def _drop(self, key: str) -> int:
        try:
            return self.cache_store.delete(key)
        except StoreUnavailable as e:
            logger.warning(f"Cache unavailable, could not delete {key}: {e}")
            return 0

    def _record(self, key: str, hit: bool) -> None:
        self.cache_store.record_lookup(key, hit)
