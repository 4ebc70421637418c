"""
Database connection management.

Provides SQLite connections, explicit write transactions and bounded
retry of transient lock conflicts.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, TypeVar

from tenacity import RetryError, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from ai_quota_guard.config.loader import DEFAULT_BUSY_TIMEOUT_MS, DEFAULT_DB_PATH, RetryConfig
from ai_quota_guard.core.errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_connection(
    db_path: str = DEFAULT_DB_PATH,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection runs in autocommit mode; writes go through
    ``transaction()`` which issues BEGIN/COMMIT explicitly.

    Args:
        db_path: Path to SQLite database file
        busy_timeout_ms: How long to wait for a competing writer

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(
        str(path),
        timeout=busy_timeout_ms / 1000.0,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(
    db_path: str = DEFAULT_DB_PATH,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
) -> Iterator[sqlite3.Connection]:
    """Run a block inside one ``BEGIN IMMEDIATE`` write transaction.

    IMMEDIATE takes the write lock up front, so a read-check-update inside
    the block cannot interleave with another writer. Any exception rolls
    the whole block back and propagates.
    """
    conn = get_connection(db_path, busy_timeout_ms)
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except Exception:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def is_transient(exc: BaseException) -> bool:
    """Lock contention the caller should never see."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def run_with_retry(operation: Callable[[], T], retry: Optional[RetryConfig] = None) -> T:
    """Run ``operation`` and retry it on transient lock conflicts.

    Each attempt must be a complete transaction so a retry never
    re-applies a partial write.

    Raises:
        TransientStoreError: If every attempt hit a lock conflict
    """
    retry = retry or RetryConfig()
    retrying = Retrying(
        stop=stop_after_attempt(retry.attempts),
        wait=wait_exponential(multiplier=retry.min_wait_seconds, min=retry.min_wait_seconds,
                              max=retry.max_wait_seconds),
        retry=retry_if_exception(is_transient),
        before_sleep=lambda state: logger.warning(
            "Transient store conflict, retrying (attempt %s): %s",
            state.attempt_number, state.outcome.exception()
        ),
    )
    try:
        return retrying(operation)
    except RetryError as e:
        last = e.last_attempt.exception()
        raise TransientStoreError(
            f"Store still locked after {retry.attempts} attempts: {last}"
        ) from last
