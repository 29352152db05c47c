"""Tests for the DuckDB cache store."""

import threading
from datetime import datetime, timedelta
from unittest.mock import patch

import duckdb
import pytest

from weathercache.cache.database import CacheStore
from weathercache.cache.errors import StoreUnavailable
from weathercache.cache.models import DataType

TTL = timedelta(minutes=15)


def _insert_raw(store, key, payload="{}", data_type="current", location_id=None,
                cached_at=None, expires_at=None):
    """Write a row directly, bypassing put() validation."""
    store._cursor().execute(
        """
        INSERT INTO cache_entries
        (key, payload, data_type, location_id, cached_at, expires_at, access_count)
        VALUES (?, ?, ?, ?, ?, ?, 0)
        """,
        [key, payload, data_type, location_id, cached_at, expires_at],
    )


class TestCacheStoreInit:
    """Tests for store initialization."""

    def test_creates_database_file(self, temp_db_path):
        """Database file is created on init."""
        store = CacheStore(temp_db_path)
        assert temp_db_path.exists()
        store.close()

    def test_creates_parent_directories(self, tmp_path):
        """Missing parent directories are created."""
        db_path = tmp_path / "nested" / "dir" / "cache.duckdb"
        store = CacheStore(db_path)
        assert db_path.parent.exists()
        store.close()

    def test_creates_tables(self, store):
        """Schema init creates the entry and sweep log tables."""
        tables = store.conn.execute(
            "SELECT table_name FROM information_schema.tables"
        ).fetchall()
        table_names = {t[0] for t in tables}
        assert "cache_entries" in table_names
        assert "sweep_log" in table_names

    def test_in_memory_store(self):
        """":memory:" gives a working process-local store."""
        store = CacheStore(":memory:")
        store.put("current:denver", "{}", DataType.CURRENT, "denver", TTL)
        assert store.get("current:denver") is not None
        store.close()

    def test_reopen_keeps_entries(self, temp_db_path, clock):
        """Entries survive closing and reopening the file."""
        store = CacheStore(temp_db_path, clock=clock)
        store.put("current:denver", '{"t": 1}', DataType.CURRENT, "denver", TTL)
        store.close()

        reopened = CacheStore(temp_db_path, clock=clock)
        assert reopened.get("current:denver").payload == '{"t": 1}'
        reopened.close()


class TestPutGet:
    """Tests for single-key reads and writes."""

    def test_put_then_get(self, store, clock):
        """A fresh entry is returned with its metadata."""
        store.put("forecast:denver", '{"a": 1}', DataType.FORECAST, "denver", TTL)

        entry = store.get("forecast:denver")

        assert entry.payload == '{"a": 1}'
        assert entry.data_type == "forecast"
        assert entry.location_id == "denver"
        assert entry.cached_at == clock.current
        assert entry.expires_at == clock.current + TTL

    def test_get_missing_key(self, store):
        """Unknown key returns None."""
        assert store.get("forecast:nowhere") is None

    def test_put_rejects_non_positive_ttl(self, store):
        """Zero or negative TTL raises ValueError."""
        with pytest.raises(ValueError):
            store.put("current:denver", "{}", DataType.CURRENT, "denver", timedelta(0))
        with pytest.raises(ValueError):
            store.put("current:denver", "{}", DataType.CURRENT, "denver", timedelta(seconds=-1))

    def test_get_counts_accesses(self, store):
        """Each successful get increments access_count."""
        store.put("current:denver", "{}", DataType.CURRENT, "denver", TTL)

        assert store.get("current:denver").access_count == 1
        assert store.get("current:denver").access_count == 2
        assert store.peek("current:denver").access_count == 2

    def test_get_filters_by_data_type(self, store):
        """A data type mismatch reads as absent."""
        store.put("current:denver", "{}", DataType.CURRENT, "denver", TTL)

        assert store.get("current:denver", DataType.FORECAST) is None
        assert store.get("current:denver", DataType.CURRENT) is not None
        assert store.get("current:denver", "current") is not None

    def test_expired_entry_is_absent(self, store, clock):
        """get returns None once expires_at <= now, even before cleanup."""
        store.put("current:denver", "{}", DataType.CURRENT, "denver", TTL)

        clock.advance(minutes=14, seconds=59)
        assert store.get("current:denver") is not None

        clock.advance(seconds=1)  # exactly at expires_at
        assert store.get("current:denver") is None
        # Row is still there until a sweep removes it
        assert store.peek("current:denver") is not None

    def test_expired_get_does_not_count(self, store, clock):
        """A lookup of an expired entry leaves access_count alone."""
        store.put("current:denver", "{}", DataType.CURRENT, "denver", TTL)
        clock.advance(hours=1)

        store.get("current:denver")

        assert store.peek("current:denver").access_count == 0

    def test_overwrite_replaces_entry(self, store, clock):
        """Second put fully replaces the first, including its TTL."""
        store.put("current:denver", '{"v": 1}', DataType.CURRENT, "denver", timedelta(seconds=10))
        store.put("current:denver", '{"v": 2}', DataType.CURRENT, "denver", timedelta(seconds=100))

        count = store.conn.execute(
            "SELECT COUNT(*) FROM cache_entries WHERE key = 'current:denver'"
        ).fetchone()[0]
        assert count == 1

        entry = store.peek("current:denver")
        assert entry.payload == '{"v": 2}'
        assert entry.expires_at == clock.current + timedelta(seconds=100)

    def test_overwrite_resets_access_count(self, store):
        """A re-put starts counting accesses from zero."""
        store.put("current:denver", "{}", DataType.CURRENT, "denver", TTL)
        store.get("current:denver")
        store.get("current:denver")

        store.put("current:denver", "{}", DataType.CURRENT, "denver", TTL)

        assert store.peek("current:denver").access_count == 0

    def test_get_skips_rows_without_metadata(self, store, clock):
        """Rows missing cached_at or payload never come back from get."""
        _insert_raw(store, "current:broken", payload=None,
                    cached_at=clock.current, expires_at=clock.current + TTL)
        _insert_raw(store, "current:nodate", cached_at=None,
                    expires_at=clock.current + TTL)

        assert store.get("current:broken") is None
        assert store.get("current:nodate") is None


class TestDeletes:
    """Tests for delete variants."""

    def test_delete_existing(self, store):
        """delete returns 1 and removes the row."""
        store.put("current:denver", "{}", DataType.CURRENT, "denver", TTL)

        assert store.delete("current:denver") == 1
        assert store.peek("current:denver") is None

    def test_delete_missing(self, store):
        """delete of an unknown key returns 0."""
        assert store.delete("current:nowhere") == 0

    def test_delete_if_expired_only_when_expired(self, store, clock):
        """Fresh entries survive delete_if_expired."""
        store.put("current:denver", "{}", DataType.CURRENT, "denver", TTL)

        assert store.delete_if_expired("current:denver") is False
        clock.advance(minutes=15)
        assert store.delete_if_expired("current:denver") is True
        assert store.peek("current:denver") is None

    def test_delete_if_expired_loses_to_refresh(self, store, clock):
        """A key refreshed after it was seen expired is not deleted."""
        store.put("current:denver", "{}", DataType.CURRENT, "denver", TTL)
        clock.advance(minutes=20)
        seen_at = clock.current

        # Writer refreshes the key before the sweep gets to delete it
        store.put("current:denver", '{"new": true}', DataType.CURRENT, "denver", TTL)

        assert store.delete_if_expired("current:denver", seen_at) is False
        assert store.peek("current:denver").payload == '{"new": true}'

    def test_delete_if_unchanged(self, store, clock):
        """Only the exact row that was read gets deleted."""
        old = store.put("current:denver", "{}", DataType.CURRENT, "denver", TTL)
        clock.advance(minutes=1)
        store.put("current:denver", "{}", DataType.CURRENT, "denver", TTL)

        assert store.delete_if_unchanged(old) is False
        assert store.delete_if_unchanged(store.peek("current:denver")) is True

    def test_delete_location(self, store):
        """Every entry for the location goes, others stay."""
        store.put("current:denver", "{}", DataType.CURRENT, "denver", TTL)
        store.put("forecast:denver", "{}", DataType.FORECAST, "denver", TTL)
        store.put("hourly:denver", "{}", DataType.HOURLY, "denver", TTL)
        store.put("current:boston", "{}", DataType.CURRENT, "boston", TTL)

        assert store.delete_location("denver") == 3
        assert store.peek("current:boston") is not None
        assert store.delete_location("denver") == 0

    def test_delete_prefix(self, store):
        """delete_prefix removes only matching keys."""
        for city in ("a", "b", "c", "d"):
            store.put(f"hourly:{city}", "{}", DataType.HOURLY, city, TTL)
        store.put("current:a", "{}", DataType.CURRENT, "a", TTL)

        assert store.delete_prefix("hourly:") == 4
        assert store.peek("current:a") is not None

    def test_clear(self, store):
        """clear empties the store."""
        store.put("current:a", "{}", DataType.CURRENT, "a", TTL)
        store.put("current:b", "{}", DataType.CURRENT, "b", TTL)

        assert store.clear() == 2
        assert store.count_entries() == (0, 0, 0)


class TestScan:
    """Tests for paginated scans."""

    def test_iter_entries_pages_through_everything(self, store):
        """All keys come back in order across several pages (batch of 3)."""
        keys = [f"current:city{i:02d}" for i in range(10)]
        for key in reversed(keys):
            store.put(key, "{}", DataType.CURRENT, key, TTL)

        seen = [entry.key for entry in store.iter_entries()]

        assert seen == keys

    def test_iter_entries_with_prefix(self, store):
        """Prefix restricts the scan."""
        store.put("current:a", "{}", DataType.CURRENT, "a", TTL)
        store.put("forecast:a", "{}", DataType.FORECAST, "a", TTL)
        store.put("forecast:b", "{}", DataType.FORECAST, "b", TTL)

        seen = [e.key for e in store.iter_entries(prefix="forecast:")]

        assert seen == ["forecast:a", "forecast:b"]

    def test_iter_entries_exact_page_multiple(self, store):
        """A keyspace that is an exact multiple of the page size ends cleanly."""
        for i in range(6):
            store.put(f"current:c{i}", "{}", DataType.CURRENT, "x", TTL)

        assert len(list(store.iter_entries())) == 6

    def test_scan_with_predicate(self, store):
        """scan filters with the predicate."""
        store.put("current:a", "{}", DataType.CURRENT, "a", TTL)
        store.put("current:b", "{}", DataType.CURRENT, "b", TTL)

        found = store.scan(lambda e: e.location_id == "b")

        assert [e.key for e in found] == ["current:b"]

    def test_writes_during_scan_do_not_break_it(self, store):
        """Deleting keys while iterating does not raise or repeat keys."""
        for i in range(9):
            store.put(f"current:c{i}", "{}", DataType.CURRENT, "x", TTL)

        seen = []
        for entry in store.iter_entries():
            seen.append(entry.key)
            store.delete(entry.key)

        assert len(seen) == len(set(seen)) == 9


class TestRecap:
    """Tests for TTL recapping."""

    def test_recap_lowers_expiry(self, store, clock):
        """An expiry beyond the cap is pulled down to it."""
        store.put("location:denver", "{}", "location", "denver", timedelta(days=10))
        cap = clock.current + timedelta(days=1)

        assert store.recap("location:denver", cap) is True
        assert store.peek("location:denver").expires_at == cap

    def test_recap_never_extends(self, store, clock):
        """An expiry already within the cap is left alone."""
        store.put("location:denver", "{}", "location", "denver", timedelta(hours=1))
        cap = clock.current + timedelta(days=1)

        assert store.recap("location:denver", cap) is False
        assert store.peek("location:denver").expires_at == clock.current + timedelta(hours=1)


class TestStatistics:
    """Tests for counts, census and usage counters."""

    def test_count_entries(self, store, clock):
        """count_entries splits total into valid and expired."""
        store.put("current:a", "{}", DataType.CURRENT, "a", TTL)
        store.put("historical:a", "{}", DataType.HISTORICAL, "a", timedelta(hours=24))
        clock.advance(hours=1)

        assert store.count_entries() == (2, 1, 1)

    def test_census_by_prefix(self, store, clock):
        """Census groups entries and payload bytes by prefix."""
        store.put("current:a", "abcd", DataType.CURRENT, "a", TTL)
        store.put("current:b", "ab", DataType.CURRENT, "b", TTL)
        store.put("forecast:a", "a", DataType.FORECAST, "a", TTL)
        _insert_raw(store, "noprefix", payload="xyz",
                    cached_at=clock.current, expires_at=clock.current + TTL)

        census = store.census()

        assert census.counts_by_prefix == {"current:": 2, "forecast:": 1, "": 1}
        assert census.total_entries == 4
        assert census.total_payload_bytes == 10
        assert census.taken_at == clock.current

    def test_record_lookup_and_reset(self, store, clock):
        """Usage counters accumulate per prefix and reset to zero."""
        store.record_lookup("current:a", hit=True)
        store.record_lookup("current:a", hit=False)
        store.record_lookup("forecast:a", hit=True)

        usage = store.usage_stats()
        assert usage.hits == 2
        assert usage.misses == 1
        assert usage.hits_by_prefix == {"current:": 1, "forecast:": 1}
        assert usage.hit_rate == pytest.approx(2 / 3)

        clock.advance(days=1)
        previous = store.reset_usage_stats()

        assert previous.hits == 2
        fresh = store.usage_stats()
        assert fresh.lookups == 0
        assert fresh.since == clock.current

    def test_usage_stats_is_a_copy(self, store):
        """Mutating a snapshot does not touch the live counters."""
        snapshot = store.usage_stats()
        snapshot.hits_by_prefix["current:"] = 99

        assert store.usage_stats().hits_by_prefix == {}

    def test_compact(self, store):
        """compact runs without error on a populated store."""
        store.put("current:a", "{}", DataType.CURRENT, "a", TTL)
        store.delete("current:a")
        store.compact()


class TestSweepLog:
    """Tests for the sweep log."""

    def test_log_and_read_back(self, store, clock):
        """Logged runs come back newest first."""
        store.log_sweep("shallow", clock.current, "ok", 3, 0, 12)
        store.log_sweep("deep", clock.current, "error", 0, 0, 40, "boom")

        sweeps = store.recent_sweeps()

        assert [s["tier"] for s in sweeps] == ["deep", "shallow"]
        assert sweeps[0]["error_message"] == "boom"
        assert sweeps[1]["deleted"] == 3

    def test_recent_sweeps_limit(self, store, clock):
        for _ in range(5):
            store.log_sweep("shallow", clock.current, "ok", 0, 0, 1)

        assert len(store.recent_sweeps(limit=2)) == 2


class TestFailures:
    """Tests for storage failure translation."""

    def test_duckdb_error_becomes_store_unavailable(self, store):
        """DuckDB errors surface as StoreUnavailable."""
        with patch.object(store, "_cursor", side_effect=duckdb.IOException("disk gone")):
            with pytest.raises(StoreUnavailable):
                store.get("current:denver")
            with pytest.raises(StoreUnavailable):
                store.put("current:denver", "{}", DataType.CURRENT, "denver", TTL)

    def test_locked_file_raises_store_unavailable(self, temp_db_path):
        """Connect errors surface as StoreUnavailable after retries."""
        with patch("weathercache.cache.database.duckdb.connect",
                   side_effect=duckdb.IOException("Could not set lock on file")), \
                patch("weathercache.cache.database.time.sleep"):
            with pytest.raises(StoreUnavailable):
                CacheStore(temp_db_path)

    def test_failed_put_keeps_old_entry(self, store):
        """A write that fails mid-transaction leaves the previous entry intact."""
        store.put("current:denver", '{"v": 1}', DataType.CURRENT, "denver", TTL)

        real_cursor = store._cursor()

        class FailingInsert:
            def __getattr__(self, name):
                return getattr(real_cursor, name)

            def execute(self, sql, params=None):
                if "INSERT" in sql:
                    raise duckdb.IOException("write failed")
                return real_cursor.execute(sql, params)

        with patch.object(store, "_cursor", return_value=FailingInsert()):
            with pytest.raises(StoreUnavailable):
                store.put("current:denver", '{"v": 2}', DataType.CURRENT, "denver", TTL)

        assert store.peek("current:denver").payload == '{"v": 1}'


class TestConcurrency:
    """Tests for concurrent access."""

    def test_concurrent_puts_and_gets(self, store):
        """Readers only ever see complete entries while writers overwrite."""
        errors = []
        payloads = {f'{{"v": {i}}}' for i in range(20)}

        def writer():
            try:
                for payload in sorted(payloads):
                    store.put("current:denver", payload, DataType.CURRENT, "denver", TTL)
            except Exception as e:  # collected and asserted below
                errors.append(e)

        def reader():
            try:
                for _ in range(40):
                    entry = store.get("current:denver")
                    if entry is not None:
                        assert entry.payload in payloads
            except Exception as e:
                errors.append(e)

        store.put("current:denver", '{"v": 0}', DataType.CURRENT, "denver", TTL)
        threads = [threading.Thread(target=writer)] + [
            threading.Thread(target=reader) for _ in range(3)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        count = store.conn.execute(
            "SELECT COUNT(*) FROM cache_entries WHERE key = 'current:denver'"
        ).fetchone()[0]
        assert count == 1
