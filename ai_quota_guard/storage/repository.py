"""
Repository layer for data access.

Owns the schema and the mapping between rows and storage models.
Business rules (gate, rollups, alerts, rollover) live in ``core``.
"""

import json
import sqlite3
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from ai_quota_guard.config.loader import DEFAULT_DB_PATH
from .db import get_connection
from .models import (
    AlertType,
    DailyAggregate,
    MonthlyAggregate,
    QuotaLedger,
    UsageAlert,
    UsageEvent,
    limit_from_storage,
)


SCHEMA = """
CREATE TABLE IF NOT EXISTS account (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS quota_ledger (
    account_id TEXT PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
    tier TEXT NOT NULL,
    monthly_token_limit INTEGER,
    monthly_request_limit INTEGER,
    daily_request_limit INTEGER,
    monthly_cost_limit REAL,
    custom_token_allowance INTEGER NOT NULL DEFAULT 0,
    custom_request_allowance INTEGER NOT NULL DEFAULT 0,
    current_period_start TEXT NOT NULL,
    current_period_end TEXT NOT NULL,
    tokens_used INTEGER NOT NULL DEFAULT 0 CHECK (tokens_used >= 0),
    requests_used INTEGER NOT NULL DEFAULT 0 CHECK (requests_used >= 0),
    cost_used REAL NOT NULL DEFAULT 0 CHECK (cost_used >= 0),
    daily_requests_used INTEGER NOT NULL DEFAULT 0 CHECK (daily_requests_used >= 0),
    last_daily_reset TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (current_period_end > current_period_start)
);
CREATE INDEX IF NOT EXISTS idx_quota_ledger_period_end ON quota_ledger(current_period_end);
CREATE INDEX IF NOT EXISTS idx_quota_ledger_daily_reset ON quota_ledger(last_daily_reset);

CREATE TABLE IF NOT EXISTS usage_event (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    provider TEXT NOT NULL,
    model_id TEXT,
    model_name TEXT NOT NULL,
    mode TEXT,
    prompt_tokens INTEGER NOT NULL DEFAULT 0,
    completion_tokens INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    input_cost REAL NOT NULL DEFAULT 0,
    output_cost REAL NOT NULL DEFAULT 0,
    total_cost REAL NOT NULL DEFAULT 0,
    latency_ms INTEGER,
    success INTEGER NOT NULL DEFAULT 1,
    error_message TEXT,
    error_code TEXT,
    session_id INTEGER,
    request_id TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_usage_event_account ON usage_event(account_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_usage_event_created_at ON usage_event(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_usage_event_session ON usage_event(session_id) WHERE session_id IS NOT NULL;

CREATE TABLE IF NOT EXISTS usage_daily (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    usage_date TEXT NOT NULL,
    provider TEXT NOT NULL,
    model_name TEXT NOT NULL,
    mode TEXT NOT NULL DEFAULT '',
    request_count INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    prompt_tokens INTEGER NOT NULL DEFAULT 0,
    completion_tokens INTEGER NOT NULL DEFAULT 0,
    total_cost REAL NOT NULL DEFAULT 0,
    success_count INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    avg_latency_ms REAL,
    latency_samples INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (account_id, usage_date, provider, model_name, mode)
);
CREATE INDEX IF NOT EXISTS idx_usage_daily_account_date ON usage_daily(account_id, usage_date DESC);

CREATE TABLE IF NOT EXISTS usage_monthly (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    year INTEGER NOT NULL,
    month INTEGER NOT NULL CHECK (month >= 1 AND month <= 12),
    provider TEXT NOT NULL,
    model_name TEXT NOT NULL,
    request_count INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    prompt_tokens INTEGER NOT NULL DEFAULT 0,
    completion_tokens INTEGER NOT NULL DEFAULT 0,
    total_cost REAL NOT NULL DEFAULT 0,
    success_count INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    avg_latency_ms REAL,
    latency_samples INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (account_id, year, month, provider, model_name)
);
CREATE INDEX IF NOT EXISTS idx_usage_monthly_account_period ON usage_monthly(account_id, year DESC, month DESC);

CREATE TABLE IF NOT EXISTS usage_alert (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    alert_type TEXT NOT NULL,
    threshold_percentage INTEGER,
    current_usage_percentage INTEGER,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0,
    is_dismissed INTEGER NOT NULL DEFAULT 0,
    period_start TEXT NOT NULL,
    created_at TEXT NOT NULL,
    read_at TEXT,
    dismissed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_usage_alert_lookup ON usage_alert(account_id, alert_type, threshold_percentage, period_start);
CREATE INDEX IF NOT EXISTS idx_usage_alert_created_at ON usage_alert(account_id, alert_type, created_at);

CREATE TABLE IF NOT EXISTS agent_session (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    mode TEXT NOT NULL,
    title TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    last_activity_at TEXT NOT NULL,
    message_count INTEGER NOT NULL DEFAULT 0,
    CHECK (ended_at IS NULL OR ended_at >= started_at)
);
CREATE INDEX IF NOT EXISTS idx_agent_session_account ON agent_session(account_id, started_at DESC);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id TEXT,
    action TEXT NOT NULL,
    resource_type TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL
);
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create every table if it doesn't exist.

    usage_event is an append-only ledger: no UPDATE or DELETE is ever
    issued against it by this package.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def _parse_date(raw: Optional[str]) -> Optional[date]:
    return date.fromisoformat(raw) if raw else None


def _parse_datetime(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


def row_to_ledger(row: sqlite3.Row) -> QuotaLedger:
    """Map a quota_ledger row onto the model; NULL limits become Unlimited."""
    return QuotaLedger(
        account_id=row["account_id"],
        tier=row["tier"],
        monthly_token_limit=limit_from_storage(row["monthly_token_limit"]),
        monthly_request_limit=limit_from_storage(row["monthly_request_limit"]),
        daily_request_limit=limit_from_storage(row["daily_request_limit"]),
        monthly_cost_limit=limit_from_storage(row["monthly_cost_limit"]),
        current_period_start=_parse_date(row["current_period_start"]),
        current_period_end=_parse_date(row["current_period_end"]),
        last_daily_reset=_parse_date(row["last_daily_reset"]),
        tokens_used=row["tokens_used"],
        requests_used=row["requests_used"],
        cost_used=row["cost_used"],
        daily_requests_used=row["daily_requests_used"],
        custom_token_allowance=row["custom_token_allowance"],
        custom_request_allowance=row["custom_request_allowance"],
    )


def fetch_ledger(conn: sqlite3.Connection, account_id: str) -> Optional[QuotaLedger]:
    """Read one ledger on an open connection, or None."""
    row = conn.execute(
        "SELECT * FROM quota_ledger WHERE account_id = ?", (account_id,)
    ).fetchone()
    return row_to_ledger(row) if row else None


def insert_ledger(conn: sqlite3.Connection, ledger: QuotaLedger, now: datetime) -> None:
    """Insert the account (if new) and its ledger."""
    conn.execute(
        "INSERT OR IGNORE INTO account (id, created_at) VALUES (?, ?)",
        (ledger.account_id, now.isoformat()),
    )
    conn.execute("""
        INSERT INTO quota_ledger
        (account_id, tier, monthly_token_limit, monthly_request_limit,
         daily_request_limit, monthly_cost_limit, custom_token_allowance,
         custom_request_allowance, current_period_start, current_period_end,
         tokens_used, requests_used, cost_used, daily_requests_used,
         last_daily_reset, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        ledger.account_id,
        ledger.tier,
        ledger.monthly_token_limit.to_storage(),
        ledger.monthly_request_limit.to_storage(),
        ledger.daily_request_limit.to_storage(),
        ledger.monthly_cost_limit.to_storage(),
        ledger.custom_token_allowance,
        ledger.custom_request_allowance,
        ledger.current_period_start.isoformat(),
        ledger.current_period_end.isoformat(),
        ledger.tokens_used,
        ledger.requests_used,
        ledger.cost_used,
        ledger.daily_requests_used,
        ledger.last_daily_reset.isoformat(),
        now.isoformat(),
        now.isoformat(),
    ))


def insert_usage_event(conn: sqlite3.Connection, event: UsageEvent, created_at: datetime) -> int:
    """Append one usage event and return its id.

    Totals are taken from the event's derived properties, never from input.
    """
    cursor = conn.execute("""
        INSERT INTO usage_event
        (account_id, provider, model_id, model_name, mode, prompt_tokens,
         completion_tokens, total_tokens, input_cost, output_cost, total_cost,
         latency_ms, success, error_message, error_code, session_id,
         request_id, metadata, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        event.account_id,
        event.provider,
        event.model_id,
        event.model_name,
        event.mode,
        event.prompt_tokens,
        event.completion_tokens,
        event.total_tokens,
        event.input_cost,
        event.output_cost,
        event.total_cost,
        event.latency_ms,
        1 if event.success else 0,
        event.error_message,
        event.error_code,
        event.session_id,
        event.request_id,
        json.dumps(event.metadata) if event.metadata is not None else None,
        created_at.isoformat(),
    ))
    return cursor.lastrowid


def _row_to_event(row: sqlite3.Row) -> UsageEvent:
    return UsageEvent(
        id=row["id"],
        account_id=row["account_id"],
        provider=row["provider"],
        model_id=row["model_id"],
        model_name=row["model_name"],
        mode=row["mode"],
        prompt_tokens=row["prompt_tokens"],
        completion_tokens=row["completion_tokens"],
        input_cost=row["input_cost"],
        output_cost=row["output_cost"],
        latency_ms=row["latency_ms"],
        success=bool(row["success"]),
        error_message=row["error_message"],
        error_code=row["error_code"],
        session_id=row["session_id"],
        request_id=row["request_id"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else None,
        timestamp=_parse_datetime(row["created_at"]),
    )


def fetch_usage_events(
    account_id: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[UsageEvent]:
    """Fetch recent usage events, newest first.

    Args:
        account_id: Optional filter for one account
        limit: Maximum number of events to return
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        query = "SELECT * FROM usage_event"
        params: List[Any] = []
        if account_id:
            query += " WHERE account_id = ?"
            params.append(account_id)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        return [_row_to_event(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def fetch_daily_aggregates(account_id: str, db_path: str = DEFAULT_DB_PATH) -> List[DailyAggregate]:
    """All daily rollups for an account, newest date first."""
    conn = get_connection(db_path)
    try:
        rows = conn.execute("""
            SELECT * FROM usage_daily WHERE account_id = ?
            ORDER BY usage_date DESC, provider, model_name, mode
        """, (account_id,)).fetchall()
        return [
            DailyAggregate(
                account_id=row["account_id"],
                usage_date=_parse_date(row["usage_date"]),
                provider=row["provider"],
                model_name=row["model_name"],
                mode=row["mode"] or None,
                request_count=row["request_count"],
                total_tokens=row["total_tokens"],
                prompt_tokens=row["prompt_tokens"],
                completion_tokens=row["completion_tokens"],
                total_cost=row["total_cost"],
                success_count=row["success_count"],
                error_count=row["error_count"],
                avg_latency_ms=row["avg_latency_ms"],
            )
            for row in rows
        ]
    finally:
        conn.close()


def fetch_monthly_aggregates(account_id: str, db_path: str = DEFAULT_DB_PATH) -> List[MonthlyAggregate]:
    """All monthly rollups for an account, newest period first."""
    conn = get_connection(db_path)
    try:
        rows = conn.execute("""
            SELECT * FROM usage_monthly WHERE account_id = ?
            ORDER BY year DESC, month DESC, provider, model_name
        """, (account_id,)).fetchall()
        return [
            MonthlyAggregate(
                account_id=row["account_id"],
                year=row["year"],
                month=row["month"],
                provider=row["provider"],
                model_name=row["model_name"],
                request_count=row["request_count"],
                total_tokens=row["total_tokens"],
                prompt_tokens=row["prompt_tokens"],
                completion_tokens=row["completion_tokens"],
                total_cost=row["total_cost"],
                success_count=row["success_count"],
                error_count=row["error_count"],
                avg_latency_ms=row["avg_latency_ms"],
            )
            for row in rows
        ]
    finally:
        conn.close()


def row_to_alert(row: sqlite3.Row) -> UsageAlert:
    return UsageAlert(
        id=row["id"],
        account_id=row["account_id"],
        alert_type=AlertType(row["alert_type"]),
        threshold_percentage=row["threshold_percentage"],
        current_usage_percentage=row["current_usage_percentage"],
        title=row["title"],
        message=row["message"],
        created_at=_parse_datetime(row["created_at"]),
        period_start=_parse_date(row["period_start"]),
        is_read=bool(row["is_read"]),
        is_dismissed=bool(row["is_dismissed"]),
        read_at=_parse_datetime(row["read_at"]),
        dismissed_at=_parse_datetime(row["dismissed_at"]),
    )


def write_audit_log(
    conn: sqlite3.Connection,
    action: str,
    resource_type: str,
    metadata: Dict[str, Any],
    now: datetime,
    account_id: Optional[str] = None
) -> None:
    """Append an audit entry inside the caller's transaction."""
    conn.execute("""
        INSERT INTO audit_log (account_id, action, resource_type, metadata, created_at)
        VALUES (?, ?, ?, ?, ?)
    """, (account_id, action, resource_type, json.dumps(metadata), now.isoformat()))
