"""Runtime configuration for the weather cache.

Defaults live in module constants; deployments override them through
``WEATHERCACHE_*`` environment variables:

    WEATHERCACHE_DB_PATH          DuckDB file (":memory:" for an in-process cache)
    WEATHERCACHE_SHALLOW_MINUTES  Shallow sweep interval
    WEATHERCACHE_DEEP_HOURS       Deep sweep interval
    WEATHERCACHE_DAILY_AT         Daily maintenance time of day, "HH:MM" (UTC)
    WEATHERCACHE_SCAN_BATCH       Rows fetched per scan chunk
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import time, timedelta
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Project root is 3 levels up from this file
_PROJECT_ROOT = Path(__file__).parent.parent.parent
DEFAULT_DB_PATH = _PROJECT_ROOT / "data" / "cache" / "weathercache.duckdb"

SHALLOW_SWEEP_INTERVAL = timedelta(hours=1)
DEEP_SWEEP_INTERVAL = timedelta(hours=6)
# Same slot as the old cron job: 02:00 every day
DAILY_MAINTENANCE_TIME = time(2, 0)

DEFAULT_SCAN_BATCH_SIZE = 500
DEFAULT_LOCK_STRIPES = 64


@dataclass
class CacheConfig:
    """Settings shared by the store, the façade and the cleanup scheduler.

    Attributes:
        db_path: DuckDB database file, or ":memory:"
        shallow_interval: Period of the shallow (expired-only) sweep
        deep_interval: Period of the deep (orphans + census) sweep
        daily_time: Time of day (UTC) for daily maintenance
        shallow_timeout: Time box for one shallow run
        deep_timeout: Time box for one deep run
        daily_timeout: Time box for one daily run
        scan_batch_size: Rows read per chunk when scanning the keyspace
        lock_stripes: Number of per-key lock stripes in the store
    """

    db_path: Path | str = field(default_factory=lambda: DEFAULT_DB_PATH)
    shallow_interval: timedelta = SHALLOW_SWEEP_INTERVAL
    deep_interval: timedelta = DEEP_SWEEP_INTERVAL
    daily_time: time = DAILY_MAINTENANCE_TIME
    shallow_timeout: timedelta = timedelta(minutes=10)
    deep_timeout: timedelta = timedelta(minutes=30)
    daily_timeout: timedelta = timedelta(minutes=30)
    scan_batch_size: int = DEFAULT_SCAN_BATCH_SIZE
    lock_stripes: int = DEFAULT_LOCK_STRIPES

    def __post_init__(self):
        if self.scan_batch_size <= 0:
            raise ValueError(f"scan_batch_size must be positive, got {self.scan_batch_size}")
        if self.lock_stripes <= 0:
            raise ValueError(f"lock_stripes must be positive, got {self.lock_stripes}")
        for name in ("shallow_interval", "deep_interval"):
            if getattr(self, name) <= timedelta(0):
                raise ValueError(f"{name} must be positive")

    @property
    def in_memory(self) -> bool:
        """Whether the store lives only in this process."""
        return str(self.db_path) == ":memory:"

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "CacheConfig":
        """Build a config from ``WEATHERCACHE_*`` environment variables.

        Args:
            environ: Mapping to read from. Defaults to ``os.environ``.

        Returns:
            CacheConfig with defaults for every unset variable

        Raises:
            ValueError: If a variable is set but cannot be parsed
        """
        env = os.environ if environ is None else environ
        kwargs = {}

        db_path = env.get("WEATHERCACHE_DB_PATH")
        if db_path:
            kwargs["db_path"] = db_path if db_path == ":memory:" else Path(db_path)

        if env.get("WEATHERCACHE_SHALLOW_MINUTES"):
            kwargs["shallow_interval"] = timedelta(
                minutes=float(env["WEATHERCACHE_SHALLOW_MINUTES"])
            )
        if env.get("WEATHERCACHE_DEEP_HOURS"):
            kwargs["deep_interval"] = timedelta(hours=float(env["WEATHERCACHE_DEEP_HOURS"]))
        if env.get("WEATHERCACHE_DAILY_AT"):
            kwargs["daily_time"] = parse_time_of_day(env["WEATHERCACHE_DAILY_AT"])
        if env.get("WEATHERCACHE_SCAN_BATCH"):
            kwargs["scan_batch_size"] = int(env["WEATHERCACHE_SCAN_BATCH"])

        config = cls(**kwargs)
        logger.debug(f"Loaded cache config: {config}")
        return config


def parse_time_of_day(value: str) -> time:
    """Parse "HH:MM" into a time.

    Example:
        >>> parse_time_of_day("02:30")
        datetime.time(2, 30)
    """
    try:
        hour, minute = value.strip().split(":")
        return time(int(hour), int(minute))
    except ValueError as e:
        raise ValueError(f"Invalid time of day {value!r}, expected HH:MM") from e
