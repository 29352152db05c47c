"""Tests for cache expiration policy."""

from datetime import datetime, timedelta

import pytest

from weathercache.cache.models import CacheClass, CacheEntry, DataType
from weathercache.cache.policy import (
    DEFAULT_TTLS,
    LOCATION_CLASS,
    USER_PREFS_CLASS,
    CachePolicy,
    is_expired,
    make_coordinate_key,
    make_key,
)

NOW = datetime(2025, 1, 1, 12, 0)


def _entry(key="current:denver", data_type="current", cached_at=NOW,
           ttl=timedelta(minutes=15), payload="{}"):
    return CacheEntry(
        key=key,
        payload=payload,
        data_type=data_type,
        location_id="denver",
        cached_at=cached_at,
        expires_at=cached_at + ttl if cached_at is not None and ttl is not None else None,
    )


@pytest.fixture
def policy():
    return CachePolicy()


class TestTTLs:
    """Tests for per-type TTLs."""

    def test_default_ttls(self, policy):
        """Weather types have their registered lifetimes."""
        assert policy.ttl_for(DataType.CURRENT) == timedelta(minutes=15)
        assert policy.ttl_for(DataType.FORECAST) == timedelta(minutes=15)
        assert policy.ttl_for(DataType.HOURLY) == timedelta(minutes=15)
        assert policy.ttl_for(DataType.AIR_QUALITY) == timedelta(minutes=30)
        assert policy.ttl_for(DataType.HISTORICAL) == timedelta(hours=24)

    def test_ttl_for_accepts_string(self, policy):
        assert policy.ttl_for("air_quality") == timedelta(minutes=30)

    def test_unknown_type_raises(self, policy):
        """Unregistered data types are rejected."""
        with pytest.raises(ValueError, match="Unknown data type"):
            policy.ttl_for("radar")

    def test_override_ttl(self):
        """Overrides merge over the defaults."""
        policy = CachePolicy(ttls={DataType.CURRENT: timedelta(minutes=5)})

        assert policy.ttl_for(DataType.CURRENT) == timedelta(minutes=5)
        assert policy.ttl_for(DataType.FORECAST) == DEFAULT_TTLS[DataType.FORECAST]

    def test_non_positive_override_rejected(self):
        with pytest.raises(ValueError):
            CachePolicy(ttls={DataType.CURRENT: timedelta(0)})


class TestPrefixes:
    """Tests for prefix recognition and orphan detection."""

    def test_recognized_prefixes(self, policy):
        """Weather and long-lived prefixes are all recognized."""
        prefixes = policy.recognized_prefixes

        for data_type in DataType:
            assert data_type.prefix in prefixes
        assert "location:" in prefixes
        assert "analytics:" in prefixes
        assert "user_prefs:" in prefixes

    @pytest.mark.parametrize("key", ["tmp:abc", "abc", "", "currentdenver", "CURRENT:denver"])
    def test_orphans(self, policy, key):
        """Keys without a recognized prefix are orphans."""
        assert policy.is_orphan(key)

    @pytest.mark.parametrize("key", ["current:denver", "air_quality:1,2", "user_prefs:42"])
    def test_not_orphans(self, policy, key):
        assert not policy.is_orphan(key)

    def test_class_for_key(self, policy):
        assert policy.class_for_key("location:denver") == LOCATION_CLASS
        assert policy.class_for_key("user_prefs:42") == USER_PREFS_CLASS
        assert policy.class_for_key("current:denver") is None


class TestExpiry:
    """Tests for the expiry predicate."""

    def test_expiry_boundary(self):
        """Expired exactly at expires_at, not a moment before."""
        entry = _entry()

        assert not is_expired(entry, NOW + timedelta(minutes=14, seconds=59))
        assert is_expired(entry, NOW + timedelta(minutes=15))
        assert is_expired(entry, NOW + timedelta(hours=1))

    def test_missing_expiry_is_expired(self, policy):
        entry = _entry(ttl=None)
        assert policy.is_expired(entry, NOW)


class TestMalformed:
    """Tests for malformed entry detection."""

    def test_well_formed(self, policy):
        assert not policy.is_malformed(_entry())
        assert not policy.is_malformed(_entry("location:denver", "location", ttl=timedelta(days=3)))

    def test_missing_payload(self, policy):
        assert policy.malformed_reason(_entry(payload=None)) == "missing payload"

    def test_missing_timestamps(self, policy):
        assert policy.is_malformed(_entry(cached_at=None))
        assert policy.is_malformed(_entry(ttl=None))

    def test_non_positive_lifetime(self, policy):
        """expires_at must be strictly after cached_at."""
        assert policy.is_malformed(_entry(ttl=timedelta(0)))

    def test_unknown_data_type(self, policy):
        assert "unknown data type" in policy.malformed_reason(_entry(data_type="radar"))

    def test_should_delete_on_sight(self, policy):
        """Orphans and malformed rows go regardless of expiry."""
        assert policy.should_delete_on_sight(_entry(key="junk", ttl=timedelta(days=365)))
        assert policy.should_delete_on_sight(_entry(payload=None))
        assert not policy.should_delete_on_sight(_entry())


class TestRecap:
    """Tests for long-lived TTL ceilings."""

    def test_recap_when_remaining_exceeds_max(self, policy):
        """A location entry with 10 days left is capped at now + 1 day."""
        entry = _entry("location:denver", "location", ttl=timedelta(days=10))

        assert policy.recap_deadline(entry, NOW) == NOW + timedelta(days=1)

    def test_no_recap_within_max(self, policy):
        entry = _entry("location:denver", "location", ttl=timedelta(hours=12))

        assert policy.recap_deadline(entry, NOW) is None

    def test_weather_entries_never_recapped(self, policy):
        entry = _entry(ttl=timedelta(days=10))

        assert policy.recap_deadline(entry, NOW) is None

    def test_custom_classes(self):
        """Policies can carry their own long-lived classes."""
        sessions = CacheClass("session", max_ttl=timedelta(hours=2))
        policy = CachePolicy(long_lived=(sessions,))

        assert not policy.is_orphan("session:abc")
        assert policy.is_orphan("location:denver")


class TestKeys:
    """Tests for key builders."""

    def test_make_key(self):
        assert make_key(DataType.CURRENT, "New York") == "current:new_york"
        assert make_key("forecast", "  London ") == "forecast:london"

    def test_make_key_empty_location(self):
        with pytest.raises(ValueError):
            make_key(DataType.CURRENT, "   ")

    def test_make_coordinate_key(self):
        key = make_coordinate_key(DataType.FORECAST, 40.71278, -74.00597)
        assert key == "forecast:40.7128,-74.0060"

    def test_invalid_coordinates(self):
        with pytest.raises(ValueError):
            make_coordinate_key(DataType.FORECAST, 91.0, 0.0)
        with pytest.raises(ValueError):
            make_coordinate_key(DataType.FORECAST, 0.0, 181.0)
