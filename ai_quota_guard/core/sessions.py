"""
Agent session tracking, limited to what activity reporting reads.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from ai_quota_guard.config.loader import DEFAULT_BUSY_TIMEOUT_MS, DEFAULT_DB_PATH
from ai_quota_guard.storage.db import get_connection, run_with_retry, transaction
from ai_quota_guard.storage.models import AgentSession

logger = logging.getLogger(__name__)


def start_session(
    account_id: str,
    mode: str,
    title: Optional[str] = None,
    db_path: str = DEFAULT_DB_PATH,
    now: Optional[datetime] = None,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
) -> int:
    """Open a session and return its id."""
    if not mode or not mode.strip():
        raise ValueError("mode is required and cannot be empty")
    stamp = (now or datetime.now()).isoformat()

    def _insert() -> int:
        with transaction(db_path, busy_timeout_ms) as conn:
            cursor = conn.execute("""
                INSERT INTO agent_session (account_id, mode, title, started_at, last_activity_at)
                VALUES (?, ?, ?, ?, ?)
            """, (account_id, mode, title, stamp, stamp))
            return cursor.lastrowid

    return run_with_retry(_insert)


def end_session(
    session_id: int,
    db_path: str = DEFAULT_DB_PATH,
    now: Optional[datetime] = None,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
) -> bool:
    """Close an active session. Returns False if it was not active."""
    stamp = (now or datetime.now()).isoformat()

    def _end() -> bool:
        with transaction(db_path, busy_timeout_ms) as conn:
            cursor = conn.execute("""
                UPDATE agent_session SET is_active = 0, ended_at = ?, last_activity_at = ?
                WHERE id = ? AND is_active = 1
            """, (stamp, stamp, session_id))
            return cursor.rowcount == 1

    return run_with_retry(_end)


def add_messages(
    session_id: int,
    count: int = 1,
    db_path: str = DEFAULT_DB_PATH,
    now: Optional[datetime] = None,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
) -> None:
    """Count messages against a session and mark it active now."""
    if count < 1:
        raise ValueError("count must be >= 1")
    stamp = (now or datetime.now()).isoformat()

    def _add() -> None:
        with transaction(db_path, busy_timeout_ms) as conn:
            conn.execute("""
                UPDATE agent_session
                SET message_count = message_count + ?, last_activity_at = ?
                WHERE id = ?
            """, (count, stamp, session_id))

    run_with_retry(_add)


def get_session(session_id: int, db_path: str = DEFAULT_DB_PATH) -> Optional[AgentSession]:
    conn = get_connection(db_path)
    try:
        row = conn.execute("SELECT * FROM agent_session WHERE id = ?", (session_id,)).fetchone()
    finally:
        conn.close()
    if row is None:
        return None
    return AgentSession(
        id=row["id"],
        account_id=row["account_id"],
        mode=row["mode"],
        title=row["title"],
        is_active=bool(row["is_active"]),
        started_at=datetime.fromisoformat(row["started_at"]),
        ended_at=datetime.fromisoformat(row["ended_at"]) if row["ended_at"] else None,
        last_activity_at=datetime.fromisoformat(row["last_activity_at"]),
        message_count=row["message_count"],
    )


def end_inactive_sessions(
    inactive_hours: int = 24,
    db_path: str = DEFAULT_DB_PATH,
    now: Optional[datetime] = None,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
) -> int:
    """End active sessions with no activity for ``inactive_hours``."""
    now = now or datetime.now()
    cutoff = (now - timedelta(hours=inactive_hours)).isoformat()

    def _sweep() -> int:
        with transaction(db_path, busy_timeout_ms) as conn:
            cursor = conn.execute("""
                UPDATE agent_session SET is_active = 0, ended_at = ?
                WHERE is_active = 1 AND ended_at IS NULL AND last_activity_at < ?
            """, (now.isoformat(), cutoff))
            return cursor.rowcount

    count = run_with_retry(_sweep)
    logger.info("Ended %s inactive session(s)", count)
    return count
