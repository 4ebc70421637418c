"""
Usage recorder: the append-only source of truth for metered operations.

One call appends exactly one event and folds it into the rollups in the
same transaction, so the rollups can never drift from the event ledger.
"""

import logging
import sqlite3
from dataclasses import replace
from datetime import datetime
from typing import Optional

from ai_quota_guard.config.loader import DEFAULT_BUSY_TIMEOUT_MS, DEFAULT_DB_PATH, RetryConfig
from ai_quota_guard.storage.db import run_with_retry, transaction
from ai_quota_guard.storage.models import UsageEvent
from ai_quota_guard.storage.repository import insert_usage_event
from .aggregator import upsert_rollup
from .errors import UsageValidationError

logger = logging.getLogger(__name__)


def validate_event(event: UsageEvent) -> None:
    """Reject malformed events before anything is written.

    Raises:
        UsageValidationError: If identity fields are missing or counts are negative
    """
    if not event.account_id or not str(event.account_id).strip():
        raise UsageValidationError("account_id is required and cannot be empty")
    if not event.provider or not event.provider.strip():
        raise UsageValidationError("provider is required and cannot be empty")
    if not event.model_name or not event.model_name.strip():
        raise UsageValidationError("model_name is required and cannot be empty")
    if event.prompt_tokens < 0 or event.completion_tokens < 0:
        raise UsageValidationError("token counts cannot be negative")
    if event.input_cost < 0 or event.output_cost < 0:
        raise UsageValidationError("costs cannot be negative")
    if event.latency_ms is not None and event.latency_ms < 0:
        raise UsageValidationError("latency_ms cannot be negative")


def record(
    event: UsageEvent,
    db_path: str = DEFAULT_DB_PATH,
    retry: Optional[RetryConfig] = None,
    now: Optional[datetime] = None,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
) -> int:
    """Append a usage event and update its daily and monthly rollups.

    Failed operations (success=False) are recorded like any other event.

    Args:
        event: Usage to record; totals are derived from its components
        db_path: Path to SQLite database file
        retry: Retry policy for lock conflicts
        now: Write time; also the event timestamp when it has none
        busy_timeout_ms: How long each attempt waits on a competing writer

    Returns:
        The new event id

    Raises:
        UsageValidationError: If the event is malformed or its account is unknown
        TransientStoreError: If the store stayed locked through every retry
    """
    validate_event(event)
    now = now or datetime.now()
    stamped = event if event.timestamp is not None else replace(event, timestamp=now)

    def _append() -> int:
        with transaction(db_path, busy_timeout_ms) as conn:
            event_id = insert_usage_event(conn, stamped, stamped.timestamp)
            upsert_rollup(conn, stamped, now)
            if stamped.session_id is not None:
                conn.execute(
                    "UPDATE agent_session SET last_activity_at = ? WHERE id = ?",
                    (now.isoformat(), stamped.session_id),
                )
            return event_id

    try:
        event_id = run_with_retry(_append, retry)
    except sqlite3.IntegrityError as e:
        if "FOREIGN KEY" in str(e).upper():
            raise UsageValidationError(f"Unknown account: {event.account_id}") from e
        raise

    logger.debug(
        "Recorded usage event %s for %s: %s/%s %s tokens (success=%s)",
        event_id, stamped.account_id, stamped.provider, stamped.model_name,
        stamped.total_tokens, stamped.success
    )
    return event_id
