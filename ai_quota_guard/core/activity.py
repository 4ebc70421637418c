"""
Activity reporting over the rollups and sessions.

Read-only: nothing here writes to the store.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from ai_quota_guard.config.loader import DEFAULT_DB_PATH
from ai_quota_guard.storage.db import get_connection
from ai_quota_guard.storage.models import ActivitySummary, ModelUsage


def activity_summary(
    account_id: str,
    days: int = 30,
    db_path: str = DEFAULT_DB_PATH,
    now: Optional[datetime] = None
) -> ActivitySummary:
    """Summarize an account's usage over the last ``days`` days.

    Usage totals come from the daily rollups; session counts come from
    sessions started inside the window. Unknown accounts get zeros.

    Args:
        account_id: Account to summarize
        days: Lookback window in days
        db_path: Path to SQLite database file
        now: Reference time (defaults to now)

    Returns:
        ActivitySummary for the window
    """
    if days < 0:
        raise ValueError("days must be >= 0")
    now = now or datetime.now()
    window_start = now.date() - timedelta(days=days)

    conn = get_connection(db_path)
    try:
        usage = conn.execute("""
            SELECT COALESCE(SUM(request_count), 0) AS total_requests,
                   COALESCE(SUM(total_tokens), 0) AS total_tokens,
                   COALESCE(SUM(total_cost), 0.0) AS total_cost
            FROM usage_daily
            WHERE account_id = ? AND usage_date >= ?
        """, (account_id, window_start.isoformat())).fetchone()

        sessions = conn.execute("""
            SELECT started_at, ended_at, message_count FROM agent_session
            WHERE account_id = ? AND started_at >= ?
        """, (account_id, window_start.isoformat())).fetchall()
    finally:
        conn.close()

    avg_minutes = None
    if sessions:
        total_minutes = Decimal(0)
        for session in sessions:
            started = datetime.fromisoformat(session["started_at"])
            ended = datetime.fromisoformat(session["ended_at"]) if session["ended_at"] else now
            total_minutes += Decimal(str((ended - started).total_seconds())) / 60
        avg_minutes = (total_minutes / len(sessions)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    return ActivitySummary(
        total_requests=usage["total_requests"],
        total_tokens=usage["total_tokens"],
        total_cost=round(usage["total_cost"], 6),
        active_sessions=len(sessions),
        total_messages=sum(session["message_count"] for session in sessions),
        avg_session_length_minutes=avg_minutes,
    )


def top_models_by_usage(
    limit: int = 10,
    days: int = 30,
    db_path: str = DEFAULT_DB_PATH,
    today: Optional[date] = None
) -> List[ModelUsage]:
    """Most used models across all accounts, by successful request count."""
    window_start = (today or date.today()) - timedelta(days=days)
    conn = get_connection(db_path)
    try:
        rows = conn.execute("""
            SELECT model_name, provider,
                   COUNT(*) AS total_requests,
                   SUM(total_tokens) AS total_tokens,
                   SUM(total_cost) AS total_cost,
                   AVG(latency_ms) AS avg_latency_ms
            FROM usage_event
            WHERE created_at >= ? AND success = 1
            GROUP BY model_name, provider
            ORDER BY total_requests DESC, model_name
            LIMIT ?
        """, (window_start.isoformat(), limit)).fetchall()
    finally:
        conn.close()

    return [
        ModelUsage(
            model_name=row["model_name"],
            provider=row["provider"],
            total_requests=row["total_requests"],
            total_tokens=row["total_tokens"] or 0,
            total_cost=round(row["total_cost"] or 0.0, 6),
            avg_latency_ms=int(row["avg_latency_ms"]) if row["avg_latency_ms"] is not None else None,
        )
        for row in rows
    ]
