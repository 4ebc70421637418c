"""
Quota gate: atomic check-and-consume against an account's ledger.

Enforcement order:
1. Lazy daily reset - daily_requests_used starts from zero each day
2. Token limit - tokens_used + delta must fit the effective token limit
3. Cost limit - cost_used + delta must fit the monthly cost limit
4. Request limits - only when enforce_request_limits is configured

A denial mutates no usage counter. An admit reserves the deltas up
front; nothing is refunded if the metered operation later fails.
"""

import logging
from dataclasses import replace
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from ai_quota_guard.config.loader import DEFAULT_DB_PATH, QuotaConfig, default_config
from ai_quota_guard.storage.db import get_connection, run_with_retry, transaction
from ai_quota_guard.storage.models import Limited, QuotaLedger, RemainingQuota
from ai_quota_guard.storage.repository import fetch_ledger, insert_ledger
from .alerts import evaluate_alerts
from .errors import LedgerExistsError, LedgerNotFoundError
from .locks import AccountLocks, get_account_locks
from .periods import first_period

logger = logging.getLogger(__name__)


def provision_ledger(
    account_id: str,
    tier_name: Optional[str] = None,
    db_path: str = DEFAULT_DB_PATH,
    config: Optional[QuotaConfig] = None,
    now: Optional[datetime] = None
) -> QuotaLedger:
    """Create an account's ledger with limits from a named tier.

    Args:
        account_id: Identity supplied by the external account provider
        tier_name: Tier to seed limits from (defaults to the configured default)
        db_path: Path to SQLite database file
        config: Quota configuration
        now: Creation time

    Returns:
        The new ledger

    Raises:
        ValueError: If account_id is blank
        UnknownTierError: If the tier is not configured
        LedgerExistsError: If the account already has a ledger
    """
    if not account_id or not account_id.strip():
        raise ValueError("account_id is required and cannot be empty")
    config = config or default_config()
    now = now or datetime.now()
    tier = config.get_tier(tier_name)
    period_start, period_end = first_period(now.date())

    ledger = QuotaLedger(
        account_id=account_id,
        tier=tier.name,
        monthly_token_limit=tier.monthly_token_limit,
        monthly_request_limit=tier.monthly_request_limit,
        daily_request_limit=tier.daily_request_limit,
        monthly_cost_limit=tier.monthly_cost_limit,
        current_period_start=period_start,
        current_period_end=period_end,
        last_daily_reset=now.date(),
    )

    def _create() -> None:
        with transaction(db_path, config.database.busy_timeout_ms) as conn:
            if fetch_ledger(conn, account_id) is not None:
                raise LedgerExistsError(account_id)
            insert_ledger(conn, ledger, now)

    run_with_retry(_create, config.retry)
    logger.info("Provisioned quota ledger for %s on tier %s", account_id, tier.name)
    return ledger


def get_ledger(account_id: str, db_path: str = DEFAULT_DB_PATH) -> QuotaLedger:
    """Read an account's ledger.

    Raises:
        LedgerNotFoundError: If the account has no ledger
    """
    conn = get_connection(db_path)
    try:
        ledger = fetch_ledger(conn, account_id)
    finally:
        conn.close()
    if ledger is None:
        raise LedgerNotFoundError(account_id)
    return ledger


def assign_tier(
    account_id: str,
    tier_name: str,
    db_path: str = DEFAULT_DB_PATH,
    config: Optional[QuotaConfig] = None,
    now: Optional[datetime] = None
) -> QuotaLedger:
    """Replace an account's limits with a tier's. Counters are kept."""
    config = config or default_config()
    now = now or datetime.now()
    tier = config.get_tier(tier_name)

    def _apply() -> QuotaLedger:
        with transaction(db_path, config.database.busy_timeout_ms) as conn:
            cursor = conn.execute("""
                UPDATE quota_ledger
                SET tier = ?, monthly_token_limit = ?, monthly_request_limit = ?,
                    daily_request_limit = ?, monthly_cost_limit = ?, updated_at = ?
                WHERE account_id = ?
            """, (
                tier.name,
                tier.monthly_token_limit.to_storage(),
                tier.monthly_request_limit.to_storage(),
                tier.daily_request_limit.to_storage(),
                tier.monthly_cost_limit.to_storage(),
                now.isoformat(),
                account_id,
            ))
            if cursor.rowcount == 0:
                raise LedgerNotFoundError(account_id)
            return fetch_ledger(conn, account_id)

    ledger = run_with_retry(_apply, config.retry)
    logger.info("Assigned tier %s to %s", tier.name, account_id)
    return ledger


def grant_allowance(
    account_id: str,
    tokens: int = 0,
    requests: int = 0,
    db_path: str = DEFAULT_DB_PATH,
    config: Optional[QuotaConfig] = None
) -> QuotaLedger:
    """Set the admin allowances added on top of the tier's monthly limits."""
    if tokens < 0 or requests < 0:
        raise ValueError("allowances cannot be negative")
    config = config or default_config()

    def _apply() -> QuotaLedger:
        with transaction(db_path, config.database.busy_timeout_ms) as conn:
            cursor = conn.execute("""
                UPDATE quota_ledger
                SET custom_token_allowance = ?, custom_request_allowance = ?, updated_at = ?
                WHERE account_id = ?
            """, (tokens, requests, datetime.now().isoformat(), account_id))
            if cursor.rowcount == 0:
                raise LedgerNotFoundError(account_id)
            return fetch_ledger(conn, account_id)

    return run_with_retry(_apply, config.retry)


def denial_reason(
    ledger: QuotaLedger,
    token_delta: int,
    cost_delta: float,
    enforce_request_limits: bool = False
) -> Optional[str]:
    """Why the deltas don't fit the ledger, or None if they do."""
    token_limit = ledger.effective_token_limit
    if token_limit.would_exceed(ledger.tokens_used, token_delta):
        return (
            f"tokens {ledger.tokens_used:,} + {token_delta:,} "
            f"exceeds limit {token_limit.amount:,}"
        )
    cost_limit = ledger.monthly_cost_limit
    if cost_limit.would_exceed(ledger.cost_used, cost_delta):
        return (
            f"cost ${ledger.cost_used:.4f} + ${cost_delta:.4f} "
            f"exceeds limit ${cost_limit.amount:.4f}"
        )
    if enforce_request_limits:
        request_limit = ledger.effective_request_limit
        if request_limit.would_exceed(ledger.requests_used, 1):
            return f"monthly request limit {request_limit.amount} reached"
        if ledger.daily_request_limit.would_exceed(ledger.daily_requests_used, 1):
            return f"daily request limit {ledger.daily_request_limit.amount} reached"
    return None


def try_consume(
    account_id: str,
    token_delta: int,
    cost_delta: float = 0.0,
    db_path: str = DEFAULT_DB_PATH,
    config: Optional[QuotaConfig] = None,
    locks: Optional[AccountLocks] = None,
    now: Optional[datetime] = None
) -> bool:
    """Atomically check the ledger and consume the deltas if they fit.

    The account's keyed lock plus a BEGIN IMMEDIATE transaction make the
    read-check-update a single step: two concurrent callers can never
    both be admitted into room that fits only one of them.

    Args:
        account_id: Account to charge
        token_delta: Tokens to reserve
        cost_delta: Cost to reserve
        db_path: Path to SQLite database file
        config: Quota configuration
        locks: Keyed lock registry (process-wide by default)
        now: Evaluation time

    Returns:
        True if admitted and consumed, False if denied (nothing changed)

    Raises:
        LedgerNotFoundError: If the account has no ledger
        ValueError: If a delta is negative
        TransientStoreError: If the store stayed locked through every retry
    """
    if token_delta < 0 or cost_delta < 0:
        raise ValueError("token_delta and cost_delta must be >= 0")
    config = config or default_config()
    locks = locks or get_account_locks()
    now = now or datetime.now()
    today = now.date()

    def _attempt() -> bool:
        with transaction(db_path, config.database.busy_timeout_ms) as conn:
            ledger = fetch_ledger(conn, account_id)
            if ledger is None:
                raise LedgerNotFoundError(account_id)

            if ledger.last_daily_reset < today:
                conn.execute("""
                    UPDATE quota_ledger
                    SET daily_requests_used = 0, last_daily_reset = ?, updated_at = ?
                    WHERE account_id = ?
                """, (today.isoformat(), now.isoformat(), account_id))
                ledger = replace(ledger, daily_requests_used=0, last_daily_reset=today)

            reason = denial_reason(ledger, token_delta, cost_delta, config.enforce_request_limits)
            if reason is not None:
                logger.warning("Quota denied for %s: %s", account_id, reason)
                return False

            conn.execute("""
                UPDATE quota_ledger
                SET tokens_used = tokens_used + ?,
                    requests_used = requests_used + 1,
                    cost_used = ROUND(cost_used + ?, 6),
                    daily_requests_used = daily_requests_used + 1,
                    updated_at = ?
                WHERE account_id = ?
            """, (token_delta, cost_delta, now.isoformat(), account_id))

            evaluate_alerts(conn, fetch_ledger(conn, account_id), now, config.alert_thresholds)
            return True

    with locks.hold(account_id):
        return run_with_retry(_attempt, config.retry)


def remaining_quota(account_id: str, db_path: str = DEFAULT_DB_PATH) -> RemainingQuota:
    """What an account has left this period.

    Unlimited limits come back as None. An account without a ledger
    gets all-None remaining values and 0 usage rather than an error.
    """
    conn = get_connection(db_path)
    try:
        ledger = fetch_ledger(conn, account_id)
    finally:
        conn.close()

    if ledger is None:
        return RemainingQuota(
            tokens_remaining=None,
            requests_remaining=None,
            cost_remaining=None,
            usage_percentage=Decimal("0"),
        )

    cost_remaining = ledger.monthly_cost_limit.remaining(ledger.cost_used)
    return RemainingQuota(
        tokens_remaining=ledger.effective_token_limit.remaining(ledger.tokens_used),
        requests_remaining=ledger.effective_request_limit.remaining(ledger.requests_used),
        cost_remaining=round(cost_remaining, 6) if cost_remaining is not None else None,
        usage_percentage=usage_percentage(ledger),
    )


def usage_percentage(ledger: QuotaLedger) -> Decimal:
    """Token usage as a percentage rounded to 2 places; 0 when unlimited."""
    limit = ledger.effective_token_limit
    if not isinstance(limit, Limited) or limit.amount == 0:
        return Decimal("0")
    percent = Decimal(ledger.tokens_used) / Decimal(limit.amount) * 100
    return percent.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
