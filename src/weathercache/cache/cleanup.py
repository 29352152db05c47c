"""Scheduled cache cleanup.

Three independent sweep tiers keep the cache store tidy:

- shallow (hourly): delete expired entries under every recognized prefix
- deep (every 6 hours): shallow deletion, then delete orphaned and malformed
  keys anywhere in the keyspace, checkpoint the database, emit a census
- daily (02:00 UTC): cap long-lived entries at their class maximum TTL and
  reset the rolling hit/miss counters

Each tier runs on its own thread. A tier whose previous run is still in
flight skips its next trigger; other tiers are unaffected.

Usage:
    python -m weathercache.cache.cleanup --serve     # Run the scheduler
    python -m weathercache.cache.cleanup --shallow   # One shallow sweep
    python -m weathercache.cache.cleanup --deep      # One deep sweep
    python -m weathercache.cache.cleanup --daily     # One maintenance run
    python -m weathercache.cache.cleanup --status    # Show cache status
"""

import argparse
import logging
import sys
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, time as time_of_day, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from weathercache.cache.database import CacheStore, utcnow
from weathercache.cache.errors import StoreUnavailable
from weathercache.cache.models import Census, UsageStats
from weathercache.cache.policy import CachePolicy
from weathercache.config import CacheConfig, parse_time_of_day

logger = logging.getLogger(__name__)


class SweepTier(str, Enum):
    SHALLOW = "shallow"
    DEEP = "deep"
    DAILY = "daily"


class SweepTimeout(Exception):
    """A sweep ran past its time box and stopped early."""


@dataclass
class SweepReport:
    """Observability event describing one sweep run."""

    tier: str
    started_at: datetime
    status: str = "ok"  # 'ok', 'timeout', 'error'
    duration_ms: int = 0
    deleted_by_prefix: dict[str, int] = field(default_factory=dict)
    orphans_deleted: int = 0
    malformed_deleted: int = 0
    recapped: int = 0
    compacted: Optional[bool] = None
    census: Optional[Census] = None
    usage_reset: Optional[UsageStats] = None
    error: Optional[str] = None

    @property
    def expired_deleted(self) -> int:
        return sum(self.deleted_by_prefix.values())

    @property
    def deleted(self) -> int:
        """All rows removed by this run."""
        return self.expired_deleted + self.orphans_deleted + self.malformed_deleted

    def __str__(self) -> str:
        text = (
            f"{self.tier} sweep {self.status}: {self.deleted} deleted "
            f"({self.expired_deleted} expired, {self.orphans_deleted} orphaned, "
            f"{self.malformed_deleted} malformed), {self.recapped} recapped "
            f"({self.duration_ms}ms)"
        )
        if self.error:
            text += f" - {self.error}"
        return text


def _check_deadline(deadline: Optional[float]) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise SweepTimeout("time box exceeded")


class CacheCleaner:
    """Sweep logic for the three tiers, run synchronously.

    Methods fill in the SweepReport they are given so that a run stopped by
    its deadline still reports the work already done.
    """

    def __init__(self, store: CacheStore, policy: Optional[CachePolicy] = None):
        self.store = store
        self.policy = policy or CachePolicy()

    def shallow_sweep(self, report: SweepReport, deadline: Optional[float] = None) -> SweepReport:
        """Delete expired entries under each recognized prefix."""
        self._delete_expired(report, deadline)
        return report

    def deep_sweep(self, report: SweepReport, deadline: Optional[float] = None) -> SweepReport:
        """Expired deletion, orphan/malformed deletion, compaction and census."""
        self._delete_expired(report, deadline)
        self._delete_orphans(report, deadline)

        try:
            self.store.compact()
            report.compacted = True
        except StoreUnavailable as e:
            logger.warning(f"Could not compact cache store: {e}")
            report.compacted = False

        census = self.store.census()
        census.orphan_entries = sum(
            count
            for prefix, count in census.counts_by_prefix.items()
            if self.policy.is_orphan(prefix)
        )
        report.census = census
        logger.info(str(census))
        return report

    def daily_maintenance(
        self, report: SweepReport, deadline: Optional[float] = None
    ) -> SweepReport:
        """Reset usage counters, then recap long-lived classes."""
        report.usage_reset = self.store.reset_usage_stats()
        logger.info(
            f"Reset usage counters: {report.usage_reset.hits} hits, "
            f"{report.usage_reset.misses} misses since {report.usage_reset.since}"
        )

        now = self.store.now()
        for cache_class in self.policy.long_lived:
            recapped = 0
            for entry in self.store.iter_entries(prefix=cache_class.prefix):
                _check_deadline(deadline)
                if self._recap(entry, now):
                    recapped += 1
            report.recapped += recapped
            logger.debug(f"Recapped {recapped} {cache_class.name} entries")
        return report

    def _delete_expired(self, report: SweepReport, deadline: Optional[float]) -> None:
        now = self.store.now()
        for prefix in self.policy.recognized_prefixes:
            cleaned = 0
            report.deleted_by_prefix[prefix] = 0
            for entry in self.store.iter_entries(prefix=prefix):
                _check_deadline(deadline)
                if self.policy.is_expired(entry, now):
                    if self.store.delete_if_expired(entry.key, now):
                        cleaned += 1
                        report.deleted_by_prefix[prefix] = cleaned
                elif self._recap(entry, now):
                    report.recapped += 1
            logger.debug(f"Cleaned {cleaned} expired {prefix.rstrip(':')} cache entries")

    def _delete_orphans(self, report: SweepReport, deadline: Optional[float]) -> None:
        for entry in self.store.iter_entries():
            _check_deadline(deadline)
            if self.policy.is_orphan(entry.key):
                if self.store.delete(entry.key):
                    report.orphans_deleted += 1
            elif self.policy.is_malformed(entry):
                logger.debug(
                    f"Deleting malformed entry {entry.key}: {self.policy.malformed_reason(entry)}"
                )
                if self.store.delete_if_unchanged(entry):
                    report.malformed_deleted += 1
        logger.debug(
            f"Cleaned {report.orphans_deleted} orphaned and "
            f"{report.malformed_deleted} malformed cache keys"
        )

    def _recap(self, entry, now: datetime) -> bool:
        cap = self.policy.recap_deadline(entry, now)
        if cap is None:
            return False
        return self.store.recap(entry.key, cap)


def next_daily_run(now: datetime, at: time_of_day) -> datetime:
    """Next occurrence of time-of-day ``at`` strictly after ``now``.

    Example:
        >>> next_daily_run(datetime(2025, 1, 1, 3, 0), time_of_day(2, 0))
        datetime.datetime(2025, 1, 2, 2, 0)
    """
    candidate = datetime.combine(now.date(), at)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class _TierRunner:
    """Trigger loop and in-flight guard for a single tier."""

    def __init__(
        self,
        tier: SweepTier,
        run: Callable[[SweepTier], SweepReport],
        next_run: Callable[[datetime], datetime],
        timeout: timedelta,
        clock: Callable[[], datetime],
    ):
        self.tier = tier
        self._run = run
        self._next_run = next_run
        self.timeout = timeout
        self._clock = clock
        self._in_progress = threading.Event()
        self._trigger_lock = threading.Lock()
        self._future: Optional[Future] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"sweep-{tier.value}")
        self._thread: Optional[threading.Thread] = None
        self.runs = 0
        self.skipped = 0

    @property
    def in_progress(self) -> bool:
        return self._in_progress.is_set()

    def trigger(self) -> Optional[Future]:
        """Start a run unless the previous one is still in flight."""
        with self._trigger_lock:
            if self._in_progress.is_set():
                self.skipped += 1
                logger.warning(f"Skipping {self.tier.value} sweep: previous run still in progress")
                return None
            self._in_progress.set()
            self.runs += 1
            try:
                self._future = self._executor.submit(self._execute)
            except RuntimeError:
                self._in_progress.clear()
                raise
            return self._future

    def _execute(self) -> SweepReport:
        try:
            return self._run(self.tier)
        finally:
            self._in_progress.clear()

    def start(self, stop: threading.Event) -> None:
        self._thread = threading.Thread(
            target=self._loop, args=(stop,), name=f"scheduler-{self.tier.value}", daemon=True
        )
        self._thread.start()

    def _loop(self, stop: threading.Event) -> None:
        next_at = self._next_run(self._clock())
        logger.info(f"{self.tier.value} sweep scheduled, first run at {next_at}")
        while True:
            wait = max(0.0, (next_at - self._clock()).total_seconds())
            if stop.wait(timeout=wait):
                return
            future = self.trigger()
            if future is not None:
                try:
                    future.result(timeout=self.timeout.total_seconds())
                except FutureTimeout:
                    logger.warning(
                        f"{self.tier.value} sweep exceeded its {self.timeout} time box; "
                        f"later triggers skip until it finishes"
                    )
            next_at = self._next_run(self._clock())

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def shutdown(self, wait: bool, timeout: Optional[float] = None) -> bool:
        """Stop accepting runs, optionally waiting up to timeout for the current one.

        Returns:
            False if a run was still in flight when the wait ended
        """
        self._executor.shutdown(wait=False, cancel_futures=True)
        future = self._future
        if future is None or future.done():
            return True
        if wait:
            wait_futures([future], timeout=timeout)
        if not future.done():
            logger.warning(f"{self.tier.value} sweep still running at shutdown")
            return False
        return True


class CleanupScheduler:
    """Runs the shallow, deep and daily sweep tiers on independent threads.

    Every run is caught, timed, written to the sweep log and handed to the
    registered listeners as a SweepReport. A failing run never stops later
    runs of any tier.

    Example:
        >>> store = CacheStore(":memory:")
        >>> scheduler = CleanupScheduler(store, CacheConfig(db_path=":memory:"))
        >>> scheduler.run_tier(SweepTier.SHALLOW).status
        'ok'
    """

    def __init__(
        self,
        store: CacheStore,
        config: Optional[CacheConfig] = None,
        policy: Optional[CachePolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize scheduler.

        Args:
            store: CacheStore to sweep
            config: Intervals, daily time and time boxes (defaults to CacheConfig())
            policy: CachePolicy with TTL, orphan and recap rules
            clock: Wall clock used for trigger times. Defaults to utcnow.
        """
        self.store = store
        self.config = config or CacheConfig()
        self.cleaner = CacheCleaner(store, policy)
        self._clock = clock or utcnow
        self._listeners: list[Callable[[SweepReport], None]] = []
        self._stop = threading.Event()
        self._started = False

        self._jobs = {
            SweepTier.SHALLOW: self.cleaner.shallow_sweep,
            SweepTier.DEEP: self.cleaner.deep_sweep,
            SweepTier.DAILY: self.cleaner.daily_maintenance,
        }
        self._timeouts = {
            SweepTier.SHALLOW: self.config.shallow_timeout,
            SweepTier.DEEP: self.config.deep_timeout,
            SweepTier.DAILY: self.config.daily_timeout,
        }
        schedules = {
            SweepTier.SHALLOW: lambda now: now + self.config.shallow_interval,
            SweepTier.DEEP: lambda now: now + self.config.deep_interval,
            SweepTier.DAILY: lambda now: next_daily_run(now, self.config.daily_time),
        }
        self.runners = {
            tier: _TierRunner(tier, self.run_tier, schedules[tier], self._timeouts[tier], self._clock)
            for tier in SweepTier
        }

    @property
    def policy(self) -> CachePolicy:
        return self.cleaner.policy

    def add_listener(self, listener: Callable[[SweepReport], None]) -> None:
        """Register a callable that receives every SweepReport."""
        self._listeners.append(listener)

    def run_tier(self, tier: SweepTier | str) -> SweepReport:
        """Run one sweep of a tier now, on the calling thread.

        Returns:
            SweepReport with status 'ok', 'timeout' or 'error'
        """
        tier = SweepTier(tier)
        report = SweepReport(tier=tier.value, started_at=self._clock())
        start = time.monotonic()
        deadline = start + self._timeouts[tier].total_seconds()

        logger.info(f"Starting {tier.value} cache sweep at {report.started_at}")
        try:
            self._jobs[tier](report, deadline)
        except SweepTimeout:
            report.status = "timeout"
            report.error = f"stopped after {self._timeouts[tier]} time box"
            logger.warning(f"{tier.value} sweep stopped at its time box")
        except Exception as e:
            report.status = "error"
            report.error = str(e)
            logger.error(f"Error during {tier.value} cache sweep: {e}", exc_info=True)

        report.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(str(report))

        self._record(report)
        self._emit(report)
        return report

    def _record(self, report: SweepReport) -> None:
        try:
            self.store.log_sweep(
                tier=report.tier,
                started_at=report.started_at,
                status=report.status,
                deleted=report.deleted,
                recapped=report.recapped,
                duration_ms=report.duration_ms,
                error_message=report.error[:500] if report.error else None,
            )
        except StoreUnavailable as e:
            logger.warning(f"Could not write sweep log: {e}")

    def _emit(self, report: SweepReport) -> None:
        for listener in self._listeners:
            try:
                listener(report)
            except Exception as e:
                logger.warning(f"Sweep listener {listener!r} failed: {e}")

    def trigger(self, tier: SweepTier | str) -> Optional[Future]:
        """Start a background run of a tier, honoring the no-overlap rule.

        Returns:
            Future of the SweepReport, or None if the trigger was skipped
        """
        return self.runners[SweepTier(tier)].trigger()

    def start(self) -> None:
        """Start one scheduling thread per tier."""
        if self._started:
            raise RuntimeError("CleanupScheduler already started")
        self._started = True
        self._stop.clear()
        for runner in self.runners.values():
            runner.start(self._stop)
        logger.info("Cache cleanup scheduler started")

    def stop(self, wait: bool = True, timeout: Optional[float] = 5.0) -> None:
        """Stop scheduling new runs.

        Args:
            wait: Wait for in-flight runs to finish
            timeout: Seconds to wait for each scheduling thread, and again for
                each in-flight run. A run still going after that is left to
                finish on its worker thread.
        """
        self._stop.set()
        for runner in self.runners.values():
            runner.join(timeout)
            runner.shutdown(wait=wait, timeout=timeout)
        self._started = False
        logger.info("Cache cleanup scheduler stopped")


def get_cache_status(store: CacheStore, policy: Optional[CachePolicy] = None) -> dict:
    """Collect entry counts, census, usage counters and recent sweeps."""
    policy = policy or CachePolicy()
    total, valid, expired = store.count_entries()
    census = store.census()
    usage = store.usage_stats()
    return {
        "db_path": str(store.db_path),
        "total_entries": total,
        "valid_entries": valid,
        "expired_entries": expired,
        "payload_bytes": census.total_payload_bytes,
        "prefixes": {
            prefix or "(none)": {"count": count, "orphan": policy.is_orphan(prefix)}
            for prefix, count in sorted(census.counts_by_prefix.items())
        },
        "hits": usage.hits,
        "misses": usage.misses,
        "hit_rate": usage.hit_rate,
        "recent_sweeps": store.recent_sweeps(limit=5),
    }


def print_status(status: dict) -> None:
    """Print cache status in human-readable format."""
    print()
    print("=" * 60)
    print("Weather Cache Status")
    print("=" * 60)
    print(f"Database: {status['db_path']}")
    print(
        f"Entries: {status['total_entries']} "
        f"({status['valid_entries']} valid, {status['expired_entries']} expired)"
    )
    print(f"Payload bytes: {status['payload_bytes']}")
    print(f"Hit rate: {status['hit_rate']:.1%} ({status['hits']} hits, {status['misses']} misses)")
    print()
    print("Prefixes:")
    print("-" * 60)
    for prefix, info in status["prefixes"].items():
        flag = "ORPHAN" if info["orphan"] else "OK"
        print(f"  {prefix:<25} {info['count']:>8}  {flag}")

    if status["recent_sweeps"]:
        print()
        print("Recent sweeps:")
        print("-" * 60)
        for sweep in status["recent_sweeps"]:
            print(
                f"  {sweep['started_at']}  {sweep['tier']:<8} {sweep['status']:<8} "
                f"deleted={sweep['deleted']} recapped={sweep['recapped']} "
                f"({sweep['duration_ms']}ms)"
            )
    print("=" * 60)


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point for cache cleanup."""
    parser = argparse.ArgumentParser(
        description="Sweep expired, orphaned and oversized entries from the weather cache",
        epilog="""
Examples:
  python -m weathercache.cache.cleanup --serve    # Run all tiers on schedule
  python -m weathercache.cache.cleanup --deep     # One deep sweep now
  python -m weathercache.cache.cleanup --status   # Show status

Cron alternative to --serve:
  0 * * * *   python -m weathercache.cache.cleanup --shallow
  0 */6 * * * python -m weathercache.cache.cleanup --deep
  0 2 * * *   python -m weathercache.cache.cleanup --daily
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("--shallow", action="store_true", help="Run one shallow sweep")
    parser.add_argument("--deep", action="store_true", help="Run one deep sweep")
    parser.add_argument("--daily", action="store_true", help="Run daily maintenance once")
    parser.add_argument("--serve", action="store_true", help="Run the scheduler until interrupted")
    parser.add_argument("--status", action="store_true", help="Show current cache status")
    parser.add_argument(
        "--daily-at",
        type=parse_time_of_day,
        default=None,
        help="Daily maintenance time of day, HH:MM UTC (with --serve)",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Database path (default: WEATHERCACHE_DB_PATH or data/cache/weathercache.duckdb)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Suppress output except errors")

    args = parser.parse_args(argv)

    # Configure logging
    if args.quiet:
        level = logging.ERROR
    elif args.verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    config = CacheConfig.from_env()
    if args.db is not None:
        config.db_path = args.db
    if args.daily_at is not None:
        config.daily_time = args.daily_at

    try:
        store = CacheStore(
            config.db_path,
            scan_batch_size=config.scan_batch_size,
            lock_stripes=config.lock_stripes,
        )
    except StoreUnavailable as e:
        logger.error(f"Cannot open cache store: {e}")
        return 1

    try:
        if args.status:
            print_status(get_cache_status(store))
            return 0

        scheduler = CleanupScheduler(store, config)

        if args.serve:
            scheduler.start()
            try:
                while True:
                    time.sleep(60)
            except KeyboardInterrupt:
                logger.info("Interrupted, stopping scheduler")
            finally:
                scheduler.stop()
            return 0

        tiers = [
            tier
            for tier, selected in (
                (SweepTier.SHALLOW, args.shallow),
                (SweepTier.DEEP, args.deep),
                (SweepTier.DAILY, args.daily),
            )
            if selected
        ] or [SweepTier.SHALLOW]

        exit_code = 0
        for tier in tiers:
            report = scheduler.run_tier(tier)
            if report.status != "ok":
                exit_code = 1
        return exit_code

    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
