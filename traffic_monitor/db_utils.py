"""
Database Utilities

Provides retry logic and connection setup for SQLite operations performed
from the flusher and status executors.
"""

import functools
import logging
import os
import sqlite3
import time
from typing import Any, Callable

log = logging.getLogger("TrafficMonitor.DbUtils")

RETRYABLE_ERRORS = ("locked", "busy", "unable to open")


def retry_on_db_lock(max_attempts: int = 3, base_delay: float = 0.5, max_delay: float = 5.0):
    """
    Decorator to retry database operations on lock/busy errors with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            delay = base_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except (sqlite3.OperationalError, sqlite3.DatabaseError) as e:
                    error_msg = str(e).lower()

                    # Only retry on lock/busy errors, not other operational errors
                    if not any(err in error_msg for err in RETRYABLE_ERRORS):
                        raise
                    if attempt == max_attempts:
                        log.error(f"Database operation failed after {max_attempts} attempts: {e}")
                        raise
                    log.warning(
                        f"Database operation failed (attempt {attempt}/{max_attempts}): {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)
                    # Exponential backoff with jitter
                    delay = min(delay * 2 + (time.time() % 0.1), max_delay)

        return wrapper

    return decorator


def get_optimized_connection(
    db_path: str, timeout: float = 30.0, read_only: bool = False
) -> sqlite3.Connection:
    """
    Create an SQLite connection with settings suited to one writer and a few readers.

    Args:
        db_path: Path to database file
        timeout: Busy timeout in seconds; bounds how long a write may wait on a lock
        read_only: Whether this is a read-only connection

    Returns:
        Configured SQLite connection
    """
    if read_only:
        uri = f"file:{os.path.abspath(db_path)}?mode=ro"
        conn = sqlite3.connect(uri, timeout=timeout, uri=True)
    else:
        conn = sqlite3.connect(db_path, timeout=timeout)

    cursor = conn.cursor()

    # WAL mode lets status reads proceed while the flusher writes (persistent setting)
    if not read_only:
        cursor.execute("PRAGMA journal_mode=WAL;")

    cursor.execute("PRAGMA synchronous=NORMAL;")
    cursor.execute(f"PRAGMA busy_timeout={int(timeout * 1000)};")

    log.debug(f"Created SQLite connection to '{db_path}' (timeout={timeout}s, read_only={read_only})")

    return conn
