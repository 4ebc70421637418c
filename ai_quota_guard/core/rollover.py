"""
Period rollover: scheduled resets of ledger counters.

Both resets are guarded by a date predicate that becomes false as soon
as a ledger is rolled, so running a job twice never resets twice.
"""

import logging
from datetime import date, datetime
from typing import Optional

from ai_quota_guard.config.loader import DEFAULT_BUSY_TIMEOUT_MS, DEFAULT_DB_PATH, RetryConfig
from ai_quota_guard.storage.db import run_with_retry, transaction
from ai_quota_guard.storage.repository import write_audit_log
from .periods import advance_period

logger = logging.getLogger(__name__)


def rollover_elapsed_periods(
    today: Optional[date] = None,
    db_path: str = DEFAULT_DB_PATH,
    retry: Optional[RetryConfig] = None,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
) -> int:
    """Reset monthly counters on every ledger whose period has ended.

    Args:
        today: Date to roll over against (defaults to today)
        db_path: Path to SQLite database file
        retry: Retry policy for lock conflicts
        busy_timeout_ms: How long each attempt waits on a competing writer

    Returns:
        Number of ledgers reset
    """
    now = datetime.now()
    today = today or now.date()

    def _roll() -> int:
        with transaction(db_path, busy_timeout_ms) as conn:
            rows = conn.execute("""
                SELECT account_id, current_period_end FROM quota_ledger
                WHERE current_period_end <= ?
            """, (today.isoformat(),)).fetchall()

            for row in rows:
                start, end = advance_period(date.fromisoformat(row["current_period_end"]), today)
                conn.execute("""
                    UPDATE quota_ledger
                    SET tokens_used = 0, requests_used = 0, cost_used = 0,
                        current_period_start = ?, current_period_end = ?, updated_at = ?
                    WHERE account_id = ? AND current_period_end <= ?
                """, (start.isoformat(), end.isoformat(), now.isoformat(),
                      row["account_id"], today.isoformat()))

            write_audit_log(
                conn, "quota_reset", "system",
                {"accounts_reset": len(rows), "as_of": today.isoformat()}, now
            )
            return len(rows)

    count = run_with_retry(_roll, retry)
    logger.info("Rolled over %s quota ledger(s) as of %s", count, today)
    return count


def reset_daily_counters(
    today: Optional[date] = None,
    db_path: str = DEFAULT_DB_PATH,
    retry: Optional[RetryConfig] = None,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
) -> int:
    """Zero daily_requests_used on ledgers not yet reset today.

    The quota gate also does this lazily per account; this sweep keeps
    idle accounts current for reporting.
    """
    now = datetime.now()
    today = today or now.date()

    def _reset() -> int:
        with transaction(db_path, busy_timeout_ms) as conn:
            cursor = conn.execute("""
                UPDATE quota_ledger
                SET daily_requests_used = 0, last_daily_reset = ?, updated_at = ?
                WHERE last_daily_reset < ?
            """, (today.isoformat(), now.isoformat(), today.isoformat()))
            return cursor.rowcount

    count = run_with_retry(_reset, retry)
    logger.info("Reset daily request counters on %s ledger(s)", count)
    return count
