"""Shared pytest fixtures for weathercache tests.

Test Tiers:
- unit: Fast tests with fixtures, no network (default)
- integration: Tests against a real on-disk DuckDB file
- live: Long-running scheduler tests using wall-clock timers

Run live tests with: pytest -m live --run-live
"""

import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from weathercache.aggregation import Reading
from weathercache.cache.database import CacheStore


def pytest_addoption(parser):
    """Add command line options for test configuration."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run live scheduler tests (slow, real timers)",
    )


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: fast unit tests using fixtures")
    config.addinivalue_line("markers", "integration: tests against an on-disk database")
    config.addinivalue_line("markers", "live: real-timer tests (slow)")


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is specified."""
    if config.getoption("--run-live"):
        # --run-live given: don't skip live tests
        return

    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


class FakeClock:
    """Settable clock for driving expiry deterministically."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, 0)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    """Clock starting at 2025-01-01 12:00 UTC."""
    return FakeClock()


@pytest.fixture
def temp_db_path():
    """Create a temporary database path for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test.duckdb"


@pytest.fixture
def store(temp_db_path, clock):
    """CacheStore on a temp database driven by the fake clock."""
    cache_store = CacheStore(temp_db_path, clock=clock, scan_batch_size=3)
    yield cache_store
    cache_store.close()


@pytest.fixture
def make_reading():
    """Factory for readings with sensible defaults."""

    def _make(timestamp: datetime, temperature: float, condition: str = "Clear", **kwargs):
        return Reading(
            timestamp=timestamp,
            temperature=temperature,
            condition_main=condition,
            condition_description=kwargs.pop("condition_description", condition.lower()),
            condition_icon=kwargs.pop("condition_icon", f"{condition[:2].lower()}d"),
            **kwargs,
        )

    return _make


@pytest.fixture
def sample_day(make_reading) -> list[Reading]:
    """Four 3-hourly readings on 2025-01-01, mostly cloudy."""
    day = datetime(2025, 1, 1)
    return [
        make_reading(day.replace(hour=0), 5.0, "Clear"),
        make_reading(day.replace(hour=3), 8.0, "Clouds"),
        make_reading(day.replace(hour=6), 3.0, "Clouds"),
        make_reading(day.replace(hour=9), 10.0, "Clouds"),
    ]
