"""
Retry helpers for transient database errors.

Writes from concurrent view-progress reports and the scheduler can collide:

SQLite:
- "database is locked" / SQLITE_BUSY under concurrent writers

PostgreSQL:
- Deadlocks (40P01) and serialization failures (40001)
- Lock timeouts and dropped connections

Operations are retried with exponential backoff and jitter; anything else is
re-raised immediately.
"""

import asyncio
import functools
import logging
import random
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

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


class DatabaseLockedError(Exception):
    """Raised when a database operation still fails after all retries."""

    pass


def is_retryable_database_error(exc: BaseException) -> bool:
    """Check if an exception is a transient database error worth retrying."""
    error_str = str(exc).lower()
    if any(pattern in error_str for pattern in _RETRYABLE_PATTERNS):
        return True

    # asyncpg and psycopg2 expose the SQLSTATE code
    if getattr(exc, "sqlstate", None) in ("40P01", "40001"):
        return True

    # The databases library wraps driver exceptions
    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)

    return False


async def execute_with_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    **kwargs,
) -> T:
    """
    Execute an async function, retrying transient database errors.

    Args:
        func: Async function to execute
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries (seconds)
        max_delay: Maximum delay between retries (seconds)

    Raises:
        DatabaseLockedError: If all retries are exhausted
    """
    last_exception: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_database_error(e):
                raise

            last_exception = e

            if attempt < max_retries:
                delay = min(base_delay * (DEFAULT_EXPONENTIAL_BASE**attempt), max_delay)
                # ±25% jitter
                delay = max(0.01, delay + delay * 0.25 * (2 * random.random() - 1))
                logger.warning(
                    f"Database error (attempt {attempt + 1}/{max_retries + 1}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"Database error after {max_retries + 1} attempts, giving up: {e}")

    raise DatabaseLockedError(f"Database operation failed after {max_retries + 1} attempts: {last_exception}")


def with_db_retry(
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
):
    """
    Decorator form of execute_with_retry.

    Usage:
        @with_db_retry()
        async def increment_counter():
            ...
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await execute_with_retry(
                func,
                *args,
                max_retries=max_retries,
                base_delay=base_delay,
                max_delay=max_delay,
                **kwargs,
            )

        return wrapper

    return decorator


async def _timed(method: str, query, *extra) -> Any:
    from api.database import database

    start_time = time.monotonic()
    result = await getattr(database, method)(query, *extra)
    elapsed = time.monotonic() - start_time
    if elapsed >= SLOW_QUERY_THRESHOLD:
        logger.warning(f"Slow query ({elapsed:.2f}s): {str(query)[:500]}")
    return result


async def fetch_one_with_retry(query, max_retries: int = DEFAULT_MAX_RETRIES):
    """Run database.fetch_one with retries. Returns a row or None."""
    return await execute_with_retry(_timed, "fetch_one", query, max_retries=max_retries)


async def fetch_all_with_retry(query, max_retries: int = DEFAULT_MAX_RETRIES):
    """Run database.fetch_all with retries. Returns a list of rows."""
    return await execute_with_retry(_timed, "fetch_all", query, max_retries=max_retries)


async def fetch_val_with_retry(query, max_retries: int = DEFAULT_MAX_RETRIES):
    """Run database.fetch_val with retries. Returns a scalar or None."""
    return await execute_with_retry(_timed, "fetch_val", query, max_retries=max_retries)


async def db_execute_with_retry(query, values=None, max_retries: int = DEFAULT_MAX_RETRIES):
    """
    Run a write query with retries.

    Returns the backend's execute() result: the new row id for inserts.
    Do not rely on it as an affected-row count (SQLite returns lastrowid).
    """
    if values is not None:
        return await execute_with_retry(_timed, "execute", query, values, max_retries=max_retries)
    return await execute_with_retry(_timed, "execute", query, max_retries=max_retries)
