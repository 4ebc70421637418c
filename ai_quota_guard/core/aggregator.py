"""
Daily and monthly usage rollups.

Each event is folded into its (account, date, provider, model, mode)
daily row and its (account, year, month, provider, model) monthly row
with a single INSERT ... ON CONFLICT DO UPDATE, so two events for the
same tuple can never lose an increment. Applying the same event twice
counts it twice; the recorder calls this exactly once per append.
"""

import sqlite3
from datetime import datetime

from ai_quota_guard.storage.models import UsageEvent


# avg_latency_ms is a running mean over the events that reported a latency;
# events without one leave it untouched.
_COUNTER_UPDATES = """
    request_count = {table}.request_count + excluded.request_count,
    total_tokens = {table}.total_tokens + excluded.total_tokens,
    prompt_tokens = {table}.prompt_tokens + excluded.prompt_tokens,
    completion_tokens = {table}.completion_tokens + excluded.completion_tokens,
    total_cost = ROUND({table}.total_cost + excluded.total_cost, 6),
    success_count = {table}.success_count + excluded.success_count,
    error_count = {table}.error_count + excluded.error_count,
    avg_latency_ms = CASE
        WHEN excluded.latency_samples = 0 THEN {table}.avg_latency_ms
        ELSE (COALESCE({table}.avg_latency_ms, 0.0) * {table}.latency_samples
              + excluded.avg_latency_ms) / ({table}.latency_samples + 1)
    END,
    latency_samples = {table}.latency_samples + excluded.latency_samples,
    updated_at = excluded.updated_at
"""

_DAILY_UPSERT = """
    INSERT INTO usage_daily
    (account_id, usage_date, provider, model_name, mode, request_count,
     total_tokens, prompt_tokens, completion_tokens, total_cost,
     success_count, error_count, avg_latency_ms, latency_samples,
     created_at, updated_at)
    VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT (account_id, usage_date, provider, model_name, mode)
    DO UPDATE SET
""" + _COUNTER_UPDATES.format(table="usage_daily")

_MONTHLY_UPSERT = """
    INSERT INTO usage_monthly
    (account_id, year, month, provider, model_name, request_count,
     total_tokens, prompt_tokens, completion_tokens, total_cost,
     success_count, error_count, avg_latency_ms, latency_samples,
     created_at, updated_at)
    VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT (account_id, year, month, provider, model_name)
    DO UPDATE SET
""" + _COUNTER_UPDATES.format(table="usage_monthly")


def upsert_rollup(conn: sqlite3.Connection, event: UsageEvent, now: datetime) -> None:
    """Fold one recorded event into its daily and monthly rollups.

    The time bucket comes from the event's own timestamp. Must run in
    the same transaction as the event insert.

    Args:
        conn: Connection with an open write transaction
        event: The event just appended (timestamp already set)
        now: Write time for created_at/updated_at
    """
    bucket = event.timestamp or now
    success_count = 1 if event.success else 0
    error_count = 0 if event.success else 1
    latency = float(event.latency_ms) if event.latency_ms is not None else None
    latency_samples = 1 if latency is not None else 0
    stamp = now.isoformat()

    counters = (
        event.total_tokens,
        event.prompt_tokens,
        event.completion_tokens,
        event.total_cost,
        success_count,
        error_count,
        latency,
        latency_samples,
        stamp,
        stamp,
    )

    # NULL is never equal to NULL in a UNIQUE key, so no mode is stored as ''
    conn.execute(_DAILY_UPSERT, (
        event.account_id,
        bucket.date().isoformat(),
        event.provider,
        event.model_name,
        event.mode or "",
    ) + counters)

    conn.execute(_MONTHLY_UPSERT, (
        event.account_id,
        bucket.year,
        bucket.month,
        event.provider,
        event.model_name,
    ) + counters)
