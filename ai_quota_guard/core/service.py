"""
One object binding a database, a configuration and a lock registry to
the quota operations.
"""

from datetime import date, datetime
from typing import Optional

from ai_quota_guard.config.loader import QuotaConfig, default_config
from ai_quota_guard.storage.models import ActivitySummary, QuotaLedger, RemainingQuota, UsageEvent
from ai_quota_guard.storage.repository import initialize_schema
from . import activity, quota_gate, recorder, rollover
from .locks import AccountLocks, get_account_locks


class QuotaService:
    """Quota gate, usage recorder and reporting over one database."""

    def __init__(
        self,
        config: Optional[QuotaConfig] = None,
        db_path: Optional[str] = None,
        locks: Optional[AccountLocks] = None
    ):
        self.config = config or default_config()
        self.db_path = db_path or self.config.database.path
        self.locks = locks or get_account_locks()

    def initialize(self) -> None:
        initialize_schema(self.db_path)

    def provision(self, account_id: str, tier_name: Optional[str] = None) -> QuotaLedger:
        return quota_gate.provision_ledger(account_id, tier_name, self.db_path, self.config)

    def ledger(self, account_id: str) -> QuotaLedger:
        return quota_gate.get_ledger(account_id, self.db_path)

    def try_consume(
        self,
        account_id: str,
        token_delta: int,
        cost_delta: float = 0.0,
        now: Optional[datetime] = None
    ) -> bool:
        return quota_gate.try_consume(
            account_id, token_delta, cost_delta,
            db_path=self.db_path, config=self.config, locks=self.locks, now=now
        )

    def record(self, event: UsageEvent, now: Optional[datetime] = None) -> int:
        return recorder.record(
            event, self.db_path, self.config.retry, now, self.config.database.busy_timeout_ms
        )

    def remaining_quota(self, account_id: str) -> RemainingQuota:
        return quota_gate.remaining_quota(account_id, self.db_path)

    def activity_summary(self, account_id: str, days: int = 30) -> ActivitySummary:
        return activity.activity_summary(account_id, days, self.db_path)

    def rollover(self, today: Optional[date] = None) -> int:
        return rollover.rollover_elapsed_periods(
            today, self.db_path, self.config.retry, self.config.database.busy_timeout_ms
        )
