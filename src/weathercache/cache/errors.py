"""Exceptions raised by the cache layer."""

from typing import Optional


class CacheError(Exception):
    """Base class for cache layer errors."""


class StoreUnavailable(CacheError):
    """The underlying DuckDB store cannot be reached or failed mid-operation.

    Callers treat this as a cache miss and go through their normal
    fetch-then-store path; the cache never retries internally.
    """


class MalformedEntry(CacheError):
    """An entry is missing required metadata or its payload cannot be decoded."""

    def __init__(self, key: str, reason: str, cause: Optional[BaseException] = None):
        super().__init__(f"Malformed cache entry {key!r}: {reason}")
        self.key = key
        self.reason = reason
        self.cause = cause
