"""DuckDB cache store for weathercache."""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

import duckdb

from weathercache.cache.errors import StoreUnavailable
from weathercache.cache.models import (
    KEY_SEPARATOR,
    CacheEntry,
    Census,
    DataType,
    UsageStats,
)
from weathercache.config import (
    DEFAULT_DB_PATH,
    DEFAULT_LOCK_STRIPES,
    DEFAULT_SCAN_BATCH_SIZE,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
-- Cached payloads. No unique constraint on key: overwrites are a
-- delete + insert inside one transaction under the key's stripe lock.
CREATE TABLE IF NOT EXISTS cache_entries (
    key VARCHAR NOT NULL,
    payload VARCHAR,
    data_type VARCHAR,
    location_id VARCHAR,
    cached_at TIMESTAMP,
    expires_at TIMESTAMP,
    access_count BIGINT DEFAULT 0
);

CREATE SEQUENCE IF NOT EXISTS seq_sweep_log_id START 1;

-- One row per cleanup run, for monitoring
CREATE TABLE IF NOT EXISTS sweep_log (
    id INTEGER DEFAULT nextval('seq_sweep_log_id') PRIMARY KEY,
    tier VARCHAR NOT NULL,
    started_at TIMESTAMP NOT NULL,
    status VARCHAR NOT NULL,
    deleted INTEGER,
    recapped INTEGER,
    duration_ms INTEGER,
    error_message VARCHAR
)
"""

_ENTRY_COLUMNS = "key, payload, data_type, location_id, cached_at, expires_at, access_count"


def utcnow() -> datetime:
    """Naive UTC timestamp, matching DuckDB's TIMESTAMP type."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _type_name(data_type) -> Optional[str]:
    if data_type is None:
        return None
    if isinstance(data_type, DataType):
        return data_type.value
    return str(data_type)


def _row_to_entry(row) -> CacheEntry:
    return CacheEntry(
        key=row[0],
        payload=row[1],
        data_type=row[2],
        location_id=row[3],
        cached_at=row[4],
        expires_at=row[5],
        access_count=row[6] or 0,
    )


def _key_prefix(key: str) -> str:
    head, sep, _ = key.partition(KEY_SEPARATOR)
    return f"{head}{sep}" if sep else ""


class CacheStore:
    """DuckDB-backed key/value store of cached weather payloads.

    Every write to a key happens under that key's lock stripe, so a reader
    sees either the old or the new entry. Scans page through the keyspace in
    key order and never hold a stripe lock across pages. Each thread talks to
    DuckDB through its own cursor.

    Example:
        >>> store = CacheStore(":memory:")
        >>> store.put("forecast:denver", "{}", DataType.FORECAST, "denver", timedelta(minutes=15))
        >>> store.get("forecast:denver").access_count
        1
    """

    def __init__(
        self,
        db_path: Optional[Path | str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        scan_batch_size: int = DEFAULT_SCAN_BATCH_SIZE,
        lock_stripes: int = DEFAULT_LOCK_STRIPES,
    ):
        """Initialize database connection.

        Args:
            db_path: Path to DuckDB file (created if missing) or ":memory:"
            clock: Returns the current naive-UTC time. Defaults to utcnow.
            scan_batch_size: Rows fetched per page when scanning
            lock_stripes: Number of per-key lock stripes
        """
        self.db_path = db_path or DEFAULT_DB_PATH
        if str(self.db_path) != ":memory:":
            self.db_path = Path(self.db_path)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.scan_batch_size = scan_batch_size
        self._clock = clock or utcnow
        self._conn = None
        self._conn_lock = threading.Lock()
        self._generation = 0
        self._local = threading.local()
        self._cursors: list = []
        self._stripes = [threading.Lock() for _ in range(lock_stripes)]
        self._stats_lock = threading.Lock()
        self._usage = UsageStats(since=self.now())
        self._init_schema()

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Get database connection (lazy initialization with retry)."""
        with self._conn_lock:
            if self._conn is None:
                self._conn = self._connect_with_retry()
                self._generation += 1
            return self._conn

    def _connect_with_retry(self, max_retries: int = 3) -> duckdb.DuckDBPyConnection:
        """Connect to database with retry logic for lock handling."""
        last_error = None
        for attempt in range(max_retries):
            try:
                return duckdb.connect(str(self.db_path))
            except duckdb.IOException as e:
                last_error = e
                if "lock" in str(e).lower() and attempt < max_retries - 1:
                    wait_time = 0.5 * (2 ** attempt)  # Exponential backoff
                    logger.warning(f"Database locked, retrying in {wait_time}s...")
                    time.sleep(wait_time)
                else:
                    raise StoreUnavailable(f"Cannot open cache database {self.db_path}: {e}") from e
        raise StoreUnavailable(f"Cannot open cache database {self.db_path}: {last_error}")

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        """Per-thread cursor on the shared connection."""
        conn = self.conn
        cursor = getattr(self._local, "cursor", None)
        if cursor is None or self._local.generation != self._generation:
            cursor = conn.cursor()
            self._local.cursor = cursor
            self._local.generation = self._generation
            with self._conn_lock:
                self._cursors.append(cursor)
        return cursor

    @contextmanager
    def _guard(self, operation: str):
        """Translate DuckDB failures into StoreUnavailable."""
        try:
            yield
        except duckdb.Error as e:
            raise StoreUnavailable(f"Cache store failed during {operation}: {e}") from e

    @contextmanager
    def _key_lock(self, key: str):
        with self._stripes[hash(key) % len(self._stripes)]:
            yield

    @contextmanager
    def _transaction(self, cursor):
        cursor.begin()
        try:
            yield cursor
        except BaseException:
            cursor.rollback()
            raise
        cursor.commit()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        with self._guard("schema init"):
            cursor = self._cursor()
            for statement in SCHEMA_SQL.split(";"):
                statement = statement.strip()
                if statement:
                    cursor.execute(statement)
        logger.info(f"Cache store initialized at {self.db_path}")

    def now(self) -> datetime:
        """Current time according to the store's clock."""
        return self._clock()

    def close(self) -> None:
        """Close database connection."""
        with self._conn_lock:
            for cursor in self._cursors:
                try:
                    cursor.close()
                except duckdb.Error as e:
                    logger.debug(f"Ignoring error closing cursor: {e}")
            self._cursors = []
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # -------------------------------------------------------------------------
    # Single-key operations
    # -------------------------------------------------------------------------

    def put(
        self,
        key: str,
        payload: str,
        data_type: DataType | str,
        location_id: Optional[str],
        ttl: timedelta,
    ) -> CacheEntry:
        """Insert or replace the entry for key.

        Any previous entry for the key is removed first, so TTL and metadata
        only ever reflect the newest write.

        Args:
            key: Cache key ("<prefix>:<location>")
            payload: Serialized payload
            data_type: DataType or long-lived class name
            location_id: Owning location, used by invalidate-by-location
            ttl: Lifetime of the entry, must be positive

        Returns:
            The stored CacheEntry

        Raises:
            ValueError: If ttl is not positive
            StoreUnavailable: If the store cannot be written
        """
        if ttl <= timedelta(0):
            raise ValueError(f"ttl must be positive, got {ttl}")

        now = self.now()
        entry = CacheEntry(
            key=key,
            payload=payload,
            data_type=_type_name(data_type),
            location_id=location_id,
            cached_at=now,
            expires_at=now + ttl,
            access_count=0,
        )

        with self._key_lock(key), self._guard(f"put {key}"):
            cursor = self._cursor()
            with self._transaction(cursor):
                cursor.execute("DELETE FROM cache_entries WHERE key = ?", [key])
                cursor.execute(
                    f"""
                    INSERT INTO cache_entries ({_ENTRY_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, 0)
                    """,
                    [
                        entry.key,
                        entry.payload,
                        entry.data_type,
                        entry.location_id,
                        entry.cached_at,
                        entry.expires_at,
                    ],
                )

        logger.debug(f"Stored {key} (type={entry.data_type}, expires={entry.expires_at})")
        return entry

    def get(self, key: str, data_type: Optional[DataType | str] = None) -> Optional[CacheEntry]:
        """Get a live entry and count the access.

        The entry is returned only if ``expires_at > now``; expired or
        metadata-less rows read as absent whether or not cleanup has removed
        them yet.

        Args:
            key: Cache key
            data_type: If given, the entry must also have this data type

        Returns:
            CacheEntry (with the incremented access_count) or None
        """
        sql = f"""
            UPDATE cache_entries
            SET access_count = access_count + 1
            WHERE key = ?
              AND expires_at > ?
              AND cached_at IS NOT NULL
              AND data_type IS NOT NULL
              AND payload IS NOT NULL
        """
        params = [key, self.now()]
        if data_type is not None:
            sql += " AND data_type = ?"
            params.append(_type_name(data_type))
        sql += f" RETURNING {_ENTRY_COLUMNS}"

        with self._key_lock(key), self._guard(f"get {key}"):
            row = self._cursor().execute(sql, params).fetchone()

        return _row_to_entry(row) if row is not None else None

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Read the raw row for key without expiry checks or counting."""
        with self._guard(f"peek {key}"):
            row = self._cursor().execute(
                f"SELECT {_ENTRY_COLUMNS} FROM cache_entries WHERE key = ?", [key]
            ).fetchone()
        return _row_to_entry(row) if row is not None else None

    def delete(self, key: str) -> int:
        """Remove the entry for key. Returns the number of rows deleted."""
        with self._key_lock(key), self._guard(f"delete {key}"):
            result = self._cursor().execute("DELETE FROM cache_entries WHERE key = ?", [key])
            return result.fetchone()[0]

    def delete_if_expired(self, key: str, now: Optional[datetime] = None) -> bool:
        """Delete key only if it is still expired at delete time.

        A concurrent put that refreshed the key wins; the sweep will simply
        reassess it on its next pass.
        """
        now = now or self.now()
        with self._key_lock(key), self._guard(f"delete expired {key}"):
            result = self._cursor().execute(
                "DELETE FROM cache_entries WHERE key = ? AND expires_at <= ?",
                [key, now],
            )
            return result.fetchone()[0] > 0

    def delete_if_unchanged(self, entry: CacheEntry) -> bool:
        """Delete the row only if it still carries the metadata read earlier."""
        with self._key_lock(entry.key), self._guard(f"delete {entry.key}"):
            result = self._cursor().execute(
                """
                DELETE FROM cache_entries
                WHERE key = ?
                  AND cached_at IS NOT DISTINCT FROM ?
                  AND expires_at IS NOT DISTINCT FROM ?
                """,
                [entry.key, entry.cached_at, entry.expires_at],
            )
            return result.fetchone()[0] > 0

    def recap(self, key: str, max_expires_at: datetime) -> bool:
        """Pull expires_at down to max_expires_at if it currently lies beyond it.

        Returns:
            True if the entry was recapped
        """
        with self._key_lock(key), self._guard(f"recap {key}"):
            result = self._cursor().execute(
                """
                UPDATE cache_entries
                SET expires_at = ?
                WHERE key = ? AND expires_at > ?
                """,
                [max_expires_at, key, max_expires_at],
            )
            return result.fetchone()[0] > 0

    # -------------------------------------------------------------------------
    # Multi-key operations
    # -------------------------------------------------------------------------

    def iter_entries(
        self,
        prefix: Optional[str] = None,
        batch_size: Optional[int] = None,
    ) -> Iterator[CacheEntry]:
        """Yield every entry in key order, one page at a time.

        Each page is its own query, so concurrent get/put calls are never
        blocked for the duration of a scan. Keys written behind the cursor
        during the scan are picked up by the next scan.

        Args:
            prefix: Restrict to keys starting with this prefix
            batch_size: Rows per page (defaults to scan_batch_size)
        """
        batch_size = batch_size or self.scan_batch_size
        last_key = None

        while True:
            clauses = []
            params = []
            if prefix is not None:
                clauses.append("starts_with(key, ?)")
                params.append(prefix)
            if last_key is not None:
                clauses.append("key > ?")
                params.append(last_key)
            where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

            with self._guard("scan"):
                rows = self._cursor().execute(
                    f"""
                    SELECT {_ENTRY_COLUMNS} FROM cache_entries
                    {where}
                    ORDER BY key
                    LIMIT ?
                    """,
                    params + [batch_size],
                ).fetchall()

            for row in rows:
                yield _row_to_entry(row)

            if len(rows) < batch_size:
                return
            last_key = rows[-1][0]

    def scan(
        self,
        predicate: Optional[Callable[[CacheEntry], bool]] = None,
        prefix: Optional[str] = None,
    ) -> list[CacheEntry]:
        """Return all entries matching predicate (and prefix, if given)."""
        return [
            entry
            for entry in self.iter_entries(prefix=prefix)
            if predicate is None or predicate(entry)
        ]

    def delete_matching(
        self,
        predicate: Callable[[CacheEntry], bool],
        prefix: Optional[str] = None,
    ) -> int:
        """Delete every entry matching predicate. Returns the count removed."""
        deleted = 0
        for entry in self.scan(predicate, prefix=prefix):
            deleted += self.delete(entry.key)
        return deleted

    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix."""
        return self.delete_matching(lambda entry: True, prefix=prefix)

    def delete_location(self, location_id: str) -> int:
        """Delete every entry owned by location_id."""
        return self.delete_matching(lambda entry: entry.location_id == location_id)

    def clear(self) -> int:
        """Remove all entries."""
        with self._guard("clear"):
            result = self._cursor().execute("DELETE FROM cache_entries")
            deleted = result.fetchone()[0]
        logger.warning(f"Cleared all {deleted} cache entries")
        return deleted

    # -------------------------------------------------------------------------
    # Statistics & maintenance
    # -------------------------------------------------------------------------

    def count_entries(self, now: Optional[datetime] = None) -> tuple[int, int, int]:
        """Count (total, valid, expired) entries."""
        now = now or self.now()
        with self._guard("count"):
            row = self._cursor().execute(
                """
                SELECT
                    COUNT(*),
                    COALESCE(SUM(CASE WHEN expires_at > ? THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN expires_at > ? THEN 0 ELSE 1 END), 0)
                FROM cache_entries
                """,
                [now, now],
            ).fetchone()
        return int(row[0]), int(row[1]), int(row[2])

    def census(self) -> Census:
        """Count entries and payload bytes per key prefix.

        Keys without a separator are counted under the empty prefix.
        """
        with self._guard("census"):
            rows = self._cursor().execute(
                """
                SELECT
                    CASE WHEN strpos(key, ':') > 0
                         THEN split_part(key, ':', 1) || ':'
                         ELSE '' END AS prefix,
                    COUNT(*),
                    COALESCE(SUM(strlen(payload)), 0)
                FROM cache_entries
                GROUP BY 1
                """
            ).fetchall()

        counts = {row[0]: int(row[1]) for row in rows}
        return Census(
            taken_at=self.now(),
            counts_by_prefix=counts,
            total_entries=sum(counts.values()),
            total_payload_bytes=sum(int(row[2]) for row in rows),
        )

    def compact(self) -> None:
        """Ask DuckDB to checkpoint and reclaim space from deleted rows."""
        with self._guard("compact"):
            self._cursor().execute("CHECKPOINT")

    def record_lookup(self, key: str, hit: bool) -> None:
        """Count one façade lookup in the rolling usage counters."""
        prefix = _key_prefix(key)
        with self._stats_lock:
            if hit:
                self._usage.hits += 1
                self._usage.hits_by_prefix[prefix] = self._usage.hits_by_prefix.get(prefix, 0) + 1
            else:
                self._usage.misses += 1
                self._usage.misses_by_prefix[prefix] = (
                    self._usage.misses_by_prefix.get(prefix, 0) + 1
                )

    def usage_stats(self) -> UsageStats:
        """Snapshot of the rolling usage counters."""
        with self._stats_lock:
            return replace(
                self._usage,
                hits_by_prefix=dict(self._usage.hits_by_prefix),
                misses_by_prefix=dict(self._usage.misses_by_prefix),
            )

    def reset_usage_stats(self) -> UsageStats:
        """Reset the rolling usage counters, returning the values just cleared."""
        with self._stats_lock:
            previous = self._usage
            self._usage = UsageStats(since=self.now())
        return previous

    # -------------------------------------------------------------------------
    # Sweep log
    # -------------------------------------------------------------------------

    def log_sweep(
        self,
        tier: str,
        started_at: datetime,
        status: str,
        deleted: int,
        recapped: int,
        duration_ms: int,
        error_message: Optional[str] = None,
    ) -> None:
        """Record a cleanup run."""
        with self._guard("log sweep"):
            self._cursor().execute(
                """
                INSERT INTO sweep_log
                (tier, started_at, status, deleted, recapped, duration_ms, error_message)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [tier, started_at, status, deleted, recapped, duration_ms, error_message],
            )

    def recent_sweeps(self, limit: int = 10) -> list[dict]:
        """Most recent cleanup runs, newest first."""
        with self._guard("read sweep log"):
            rows = self._cursor().execute(
                """
                SELECT tier, started_at, status, deleted, recapped, duration_ms, error_message
                FROM sweep_log
                ORDER BY id DESC
                LIMIT ?
                """,
                [limit],
            ).fetchall()
        return [
            {
                "tier": row[0],
                "started_at": row[1],
                "status": row[2],
                "deleted": row[3],
                "recapped": row[4],
                "duration_ms": row[5],
                "error_message": row[6],
            }
            for row in rows
        ]
