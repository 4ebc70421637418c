"""
Scheduled maintenance jobs, meant to be run from cron.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Dict, Optional

from ai_quota_guard.config.loader import DEFAULT_BUSY_TIMEOUT_MS, DEFAULT_DB_PATH, RetryConfig
from ai_quota_guard.storage.db import run_with_retry, transaction
from .rollover import reset_daily_counters, rollover_elapsed_periods
from .sessions import end_inactive_sessions

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_RETENTION_DAYS = 90


def cleanup_old_audit_logs(
    days_to_keep: int = DEFAULT_AUDIT_RETENTION_DAYS,
    db_path: str = DEFAULT_DB_PATH,
    retry: Optional[RetryConfig] = None,
    now: Optional[datetime] = None,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
) -> int:
    """Delete audit entries older than ``days_to_keep`` days. Returns the count deleted."""
    if days_to_keep < 0:
        raise ValueError("days_to_keep must be >= 0")
    now = now or datetime.now()
    cutoff = (now - timedelta(days=days_to_keep)).isoformat()

    def _delete() -> int:
        with transaction(db_path, busy_timeout_ms) as conn:
            return conn.execute("DELETE FROM audit_log WHERE created_at < ?", (cutoff,)).rowcount

    count = run_with_retry(_delete, retry)
    logger.info("Deleted %s audit log entries older than %s days", count, days_to_keep)
    return count


def daily_maintenance(
    db_path: str = DEFAULT_DB_PATH,
    inactive_hours: int = 24,
    retry: Optional[RetryConfig] = None,
    now: Optional[datetime] = None,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    audit_retention_days: int = DEFAULT_AUDIT_RETENTION_DAYS
) -> Dict[str, int]:
    """Reset daily counters, close stale sessions and prune the audit log."""
    now = now or datetime.now()
    result = {
        "daily_counters_reset": reset_daily_counters(now.date(), db_path, retry, busy_timeout_ms),
        "sessions_ended": end_inactive_sessions(inactive_hours, db_path, now, busy_timeout_ms),
        "audit_logs_deleted": cleanup_old_audit_logs(
            audit_retention_days, db_path, retry, now, busy_timeout_ms
        ),
    }
    logger.info("Daily maintenance completed: %s", result)
    return result


def monthly_maintenance(
    db_path: str = DEFAULT_DB_PATH,
    retry: Optional[RetryConfig] = None,
    today: Optional[date] = None,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
) -> Dict[str, int]:
    """Roll over elapsed quota periods.

    Safe to run daily: ledgers whose period hasn't ended are untouched.
    """
    result = {"ledgers_rolled_over": rollover_elapsed_periods(today, db_path, retry, busy_timeout_ms)}
    logger.info("Monthly maintenance completed: %s", result)
    return result
