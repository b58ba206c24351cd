"""
Retry helpers for transient relational-store errors.

Only the relational store is retried here. Remote media-server operations are
never retried: their failures are reported to the caller as they happen.

Retryable SQLite errors:
- "database is locked" / SQLITE_BUSY / SQLITE_LOCKED

Retryable PostgreSQL errors:
- Deadlocks (40P01) and serialization failures (40001)
- Lock contention and dropped connections
"""

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

# Queries slower than this are logged with their SQL
SLOW_QUERY_THRESHOLD = 1.0

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1  # 100ms
DEFAULT_MAX_DELAY = 2.0  # 2 seconds
DEFAULT_EXPONENTIAL_BASE = 2

_RETRYABLE_PATTERNS = (
    # SQLite
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
    # PostgreSQL
    "deadlock detected",
    "could not serialize access",
    "could not obtain lock",
    "connection refused",
    "connection reset",
    "server closed the connection unexpectedly",
    "canceling statement due to lock timeout",
    "lock timeout",
)


class DatabaseRetryableError(Exception):
    """Raised when a database operation fails after all retries exhausted."""

    pass


def is_retryable_database_error(exc: BaseException) -> bool:
    """Check if an exception (or the driver error it wraps) is transient."""
    error_str = str(exc).lower()
    if any(pattern in error_str for pattern in _RETRYABLE_PATTERNS):
        return True

    # asyncpg and psycopg2 expose the SQLSTATE code
    if getattr(exc, "sqlstate", "") in ("40P01", "40001"):
        return True

    # The databases library wraps driver exceptions
    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)

    return False


async def execute_with_retry(
    func: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> T:
    """
    Run an async callable, retrying transient database errors with
    exponential backoff and jitter.

    Raises:
        DatabaseRetryableError: If all retries are exhausted
        Other exceptions: Non-retryable errors are re-raised immediately
    """
    last_exception: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        try:
            return await func()
        except Exception as e:
            if not is_retryable_database_error(e):
                raise

            last_exception = e

            if attempt < max_retries:
                delay = min(base_delay * (DEFAULT_EXPONENTIAL_BASE**attempt), max_delay)
                # Add jitter (±25%) to prevent thundering herd
                jitter = delay * 0.25 * (2 * random.random() - 1)
                delay = max(0.01, delay + jitter)

                logger.warning(
                    f"Database error (attempt {attempt + 1}/{max_retries + 1}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"Database error after {max_retries + 1} attempts, giving up: {e}")

    raise DatabaseRetryableError(f"Database operation failed after {max_retries + 1} attempts: {last_exception}")


async def _run_query(operation: str, query, values=None, max_retries: int = DEFAULT_MAX_RETRIES):
    from api.database import database

    method = getattr(database, operation)

    async def _attempt():
        start_time = time.monotonic()
        if values is not None:
            result = await method(query, values)
        else:
            result = await method(query)
        elapsed = time.monotonic() - start_time
        if elapsed >= SLOW_QUERY_THRESHOLD:
            logger.warning(f"Slow query ({elapsed:.2f}s): {str(query)[:500]}")
        return result

    return await execute_with_retry(_attempt, max_retries=max_retries)


async def fetch_one_with_retry(query, max_retries: int = DEFAULT_MAX_RETRIES):
    """fetch_one with retries; returns a single row or None."""
    return await _run_query("fetch_one", query, max_retries=max_retries)


async def fetch_all_with_retry(query, max_retries: int = DEFAULT_MAX_RETRIES):
    """fetch_all with retries; returns a list of rows."""
    return await _run_query("fetch_all", query, max_retries=max_retries)


async def db_execute_with_retry(query, values=None, max_retries: int = DEFAULT_MAX_RETRIES):
    """execute with retries; returns the driver result (row id for inserts)."""
    return await _run_query("execute", query, values=values, max_retries=max_retries)
