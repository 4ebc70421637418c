"""
Usage alert rules.

Evaluated after every ledger counter change, inside the same transaction.
An alert fires once per (account, type, threshold, period) for token
usage and once per (account, day) for the daily request limit. Each
alert carries the start of the period it was raised in.
"""

import logging
import sqlite3
from datetime import date, datetime, timedelta
from typing import List, Optional, Sequence

from ai_quota_guard.config.loader import DEFAULT_BUSY_TIMEOUT_MS, DEFAULT_DB_PATH
from ai_quota_guard.storage.db import get_connection, run_with_retry, transaction
from ai_quota_guard.storage.models import AlertType, Limited, QuotaLedger, UsageAlert
from ai_quota_guard.storage.repository import row_to_alert

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = (80, 90, 100)


def alert_type_for(threshold: int) -> AlertType:
    """100% and above is an exceeded quota; anything lower is a warning."""
    return AlertType.QUOTA_EXCEEDED if threshold >= 100 else AlertType.QUOTA_WARNING


def evaluate_alerts(
    conn: sqlite3.Connection,
    ledger: QuotaLedger,
    now: datetime,
    thresholds: Sequence[int] = DEFAULT_THRESHOLDS
) -> List[UsageAlert]:
    """Insert any alerts the ledger's current counters call for.

    Rules:
    - Token usage: for each threshold, fire when usage_percentage >= threshold
      and no alert of the same type and threshold exists in the current period
    - Daily rate: fire when daily_requests_used >= daily_request_limit and
      no rate_limit alert exists for today

    Args:
        conn: Connection with an open write transaction
        ledger: Ledger state after the mutation
        now: Evaluation time, also used as the alert timestamp
        thresholds: Percentages to alert at

    Returns:
        Newly created alerts (empty if none)
    """
    created = []

    token_limit = ledger.effective_token_limit
    if isinstance(token_limit, Limited) and token_limit.amount > 0:
        usage_percentage = int(ledger.tokens_used * 100 // token_limit.amount)

        for threshold in sorted(thresholds):
            if usage_percentage < threshold:
                break
            alert_type = alert_type_for(threshold)
            if _threshold_alert_exists(conn, ledger, alert_type, threshold):
                continue
            created.append(_insert_alert(
                conn,
                account_id=ledger.account_id,
                alert_type=alert_type,
                threshold=threshold,
                usage_percentage=usage_percentage,
                title=f"Token Quota {threshold}%",
                message=(
                    f"You have used {usage_percentage}% of your monthly token quota "
                    f"({ledger.tokens_used:,} / {token_limit.amount:,} tokens)"
                ),
                now=now,
                period_start=ledger.current_period_start,
            ))

    daily_limit = ledger.daily_request_limit
    if isinstance(daily_limit, Limited) and daily_limit.amount > 0:
        if ledger.daily_requests_used >= daily_limit.amount:
            today = now.date()
            if not _rate_alert_exists(conn, ledger.account_id, today):
                created.append(_insert_alert(
                    conn,
                    account_id=ledger.account_id,
                    alert_type=AlertType.RATE_LIMIT,
                    threshold=100,
                    usage_percentage=100,
                    title="Daily Rate Limit Reached",
                    message=(
                        f"You have reached your daily request limit of {daily_limit.amount} "
                        f"requests. Limit resets tomorrow."
                    ),
                    now=now,
                    period_start=ledger.current_period_start,
                ))

    for alert in created:
        logger.warning("Usage alert for %s: %s", alert.account_id, alert.message)
    return created


def _threshold_alert_exists(
    conn: sqlite3.Connection,
    ledger: QuotaLedger,
    alert_type: AlertType,
    threshold: int
) -> bool:
    row = conn.execute("""
        SELECT 1 FROM usage_alert
        WHERE account_id = ? AND alert_type = ? AND threshold_percentage = ? AND period_start = ?
        LIMIT 1
    """, (ledger.account_id, alert_type.value, threshold,
          ledger.current_period_start.isoformat())).fetchone()
    return row is not None


def _rate_alert_exists(conn: sqlite3.Connection, account_id: str, today: date) -> bool:
    row = conn.execute("""
        SELECT 1 FROM usage_alert
        WHERE account_id = ? AND alert_type = ? AND created_at >= ? AND created_at < ?
        LIMIT 1
    """, (account_id, AlertType.RATE_LIMIT.value, today.isoformat(),
          (today + timedelta(days=1)).isoformat())).fetchone()
    return row is not None


def _insert_alert(
    conn: sqlite3.Connection,
    account_id: str,
    alert_type: AlertType,
    threshold: int,
    usage_percentage: int,
    title: str,
    message: str,
    now: datetime,
    period_start: date
) -> UsageAlert:
    cursor = conn.execute("""
        INSERT INTO usage_alert
        (account_id, alert_type, threshold_percentage, current_usage_percentage,
         title, message, period_start, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """, (account_id, alert_type.value, threshold, usage_percentage, title, message,
          period_start.isoformat(), now.isoformat()))
    return UsageAlert(
        id=cursor.lastrowid,
        account_id=account_id,
        alert_type=alert_type,
        threshold_percentage=threshold,
        current_usage_percentage=usage_percentage,
        title=title,
        message=message,
        created_at=now,
        period_start=period_start,
    )


def list_alerts(
    account_id: str,
    unread_only: bool = False,
    include_dismissed: bool = False,
    db_path: str = DEFAULT_DB_PATH
) -> List[UsageAlert]:
    """Alerts for an account, newest first."""
    conn = get_connection(db_path)
    try:
        query = "SELECT * FROM usage_alert WHERE account_id = ?"
        if unread_only:
            query += " AND is_read = 0"
        if not include_dismissed:
            query += " AND is_dismissed = 0"
        query += " ORDER BY created_at DESC, id DESC"
        return [row_to_alert(row) for row in conn.execute(query, (account_id,)).fetchall()]
    finally:
        conn.close()


def mark_alert_read(
    alert_id: int,
    db_path: str = DEFAULT_DB_PATH,
    now: Optional[datetime] = None,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
) -> bool:
    """Flag an alert as read. Returns False if it doesn't exist or was already read."""
    stamp = (now or datetime.now()).isoformat()

    def _apply() -> bool:
        with transaction(db_path, busy_timeout_ms) as conn:
            cursor = conn.execute(
                "UPDATE usage_alert SET is_read = 1, read_at = ? WHERE id = ? AND is_read = 0",
                (stamp, alert_id),
            )
            return cursor.rowcount == 1

    return run_with_retry(_apply)


def dismiss_alert(
    alert_id: int,
    db_path: str = DEFAULT_DB_PATH,
    now: Optional[datetime] = None,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
) -> bool:
    """Flag an alert as dismissed. Returns False if it doesn't exist or was already dismissed."""
    stamp = (now or datetime.now()).isoformat()

    def _apply() -> bool:
        with transaction(db_path, busy_timeout_ms) as conn:
            cursor = conn.execute(
                "UPDATE usage_alert SET is_dismissed = 1, dismissed_at = ? WHERE id = ? AND is_dismissed = 0",
                (stamp, alert_id),
            )
            return cursor.rowcount == 1

    return run_with_retry(_apply)
