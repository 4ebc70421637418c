"""
Unit tests for the quota gate.

Tests check-and-consume, denial semantics, remaining quota and provisioning.
"""

import os
import shutil
import tempfile
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal

import pytest

from ai_quota_guard.config.loader import QuotaConfig, TierConfig, default_config
from ai_quota_guard.core.errors import LedgerExistsError, LedgerNotFoundError, UnknownTierError
from ai_quota_guard.core.locks import AccountLocks
from ai_quota_guard.core.quota_gate import (
    assign_tier,
    denial_reason,
    get_ledger,
    grant_allowance,
    provision_ledger,
    remaining_quota,
    try_consume,
)
from ai_quota_guard.storage.db import get_connection
from ai_quota_guard.storage.models import Limit, QuotaLedger, UNLIMITED
from ai_quota_guard.storage.repository import initialize_schema


NOW = datetime(2026, 3, 10, 12, 0, 0)


def _config(**tiers) -> QuotaConfig:
    built = {name: TierConfig(name=name, display_name=name.title(), **limits) for name, limits in tiers.items()}
    return QuotaConfig(tiers=built, default_tier=next(iter(built)))


def _set_counters(db_path: str, account_id: str, **counters) -> None:
    conn = get_connection(db_path)
    try:
        assignments = ", ".join(f"{column} = ?" for column in counters)
        conn.execute(
            f"UPDATE quota_ledger SET {assignments} WHERE account_id = ?",
            list(counters.values()) + [account_id],
        )
    finally:
        conn.close()


class GateTestBase:
    """Fresh database per test."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestProvisioning(GateTestBase):
    """Test ledger creation from tiers."""

    def test_provision_uses_default_tier(self):
        """New ledgers take the default tier's limits and a one-month period."""
        ledger = provision_ledger("acct-1", db_path=self.db_path, now=NOW)

        assert ledger.tier == "standard"
        assert ledger.monthly_token_limit == Limit.of(500000)
        assert ledger.monthly_request_limit == Limit.of(1000)
        assert ledger.daily_request_limit == Limit.of(50)
        assert ledger.monthly_cost_limit == UNLIMITED
        assert ledger.current_period_start == date(2026, 3, 10)
        assert ledger.current_period_end == date(2026, 4, 10)
        assert get_ledger("acct-1", self.db_path) == ledger

    def test_provision_named_tier(self):
        """A named tier seeds its own limits."""
        ledger = provision_ledger("acct-1", "unlimited", db_path=self.db_path, now=NOW)
        assert ledger.monthly_token_limit.is_unlimited
        assert ledger.daily_request_limit.is_unlimited

    def test_provision_twice_fails(self):
        """An account can only have one ledger."""
        provision_ledger("acct-1", db_path=self.db_path, now=NOW)
        with pytest.raises(LedgerExistsError):
            provision_ledger("acct-1", db_path=self.db_path, now=NOW)

    def test_provision_unknown_tier(self):
        """Unknown tiers are rejected before anything is written."""
        with pytest.raises(UnknownTierError):
            provision_ledger("acct-1", "platinum", db_path=self.db_path, now=NOW)
        with pytest.raises(LedgerNotFoundError):
            get_ledger("acct-1", self.db_path)

    def test_provision_blank_account(self):
        with pytest.raises(ValueError, match="account_id is required"):
            provision_ledger("  ", db_path=self.db_path, now=NOW)

    def test_assign_tier_keeps_counters(self):
        """Changing tier replaces limits but not usage."""
        provision_ledger("acct-1", db_path=self.db_path, now=NOW)
        _set_counters(self.db_path, "acct-1", tokens_used=1234)

        ledger = assign_tier("acct-1", "contributor", db_path=self.db_path, now=NOW)

        assert ledger.tier == "contributor"
        assert ledger.monthly_token_limit == Limit.of(2000000)
        assert ledger.tokens_used == 1234

    def test_assign_tier_missing_ledger(self):
        with pytest.raises(LedgerNotFoundError):
            assign_tier("ghost", "contributor", db_path=self.db_path)


class TestTryConsume(GateTestBase):
    """Test the atomic check-and-consume."""

    def setup_method(self):
        super().setup_method()
        self.config = _config(small=dict(
            monthly_token_limit=Limit.of(1000),
            monthly_request_limit=Limit.of(100),
            daily_request_limit=Limit.of(10),
        ))
        provision_ledger("acct-1", db_path=self.db_path, config=self.config, now=NOW)

    def _consume(self, tokens, cost=0.0, **kwargs):
        kwargs.setdefault("now", NOW)
        return try_consume("acct-1", tokens, cost, db_path=self.db_path, config=self.config,
                           locks=AccountLocks(), **kwargs)

    def test_end_to_end_scenario(self):
        """900 used of 1000: 150 is denied, 50 is admitted."""
        _set_counters(self.db_path, "acct-1", tokens_used=900)

        assert self._consume(150) is False
        assert get_ledger("acct-1", self.db_path).tokens_used == 900

        assert self._consume(50) is True
        assert get_ledger("acct-1", self.db_path).tokens_used == 950

    def test_exact_fit_is_admitted(self):
        """Reaching the limit exactly is allowed; exceeding it is not."""
        assert self._consume(1000) is True
        assert self._consume(1) is False

    def test_admit_increments_all_counters(self):
        assert self._consume(100, 0.25) is True

        ledger = get_ledger("acct-1", self.db_path)
        assert ledger.tokens_used == 100
        assert ledger.requests_used == 1
        assert ledger.daily_requests_used == 1
        assert ledger.cost_used == pytest.approx(0.25)

    def test_denial_leaves_state_unchanged(self):
        """A denied call mutates no usage counter."""
        _set_counters(self.db_path, "acct-1", tokens_used=990, requests_used=7, cost_used=1.5)
        before = get_ledger("acct-1", self.db_path)

        assert self._consume(11, 0.5) is False

        after = get_ledger("acct-1", self.db_path)
        assert after.tokens_used == before.tokens_used
        assert after.requests_used == before.requests_used
        assert after.cost_used == before.cost_used

    def test_cost_limit_denies(self):
        """The cost limit is checked independently of tokens."""
        config = _config(priced=dict(monthly_cost_limit=Limit.of(1.0)))
        provision_ledger("acct-2", db_path=self.db_path, config=config, now=NOW)

        assert try_consume("acct-2", 10, 0.6, db_path=self.db_path, config=config, now=NOW) is True
        assert try_consume("acct-2", 10, 0.5, db_path=self.db_path, config=config, now=NOW) is False
        assert try_consume("acct-2", 10, 0.4, db_path=self.db_path, config=config, now=NOW) is True
        assert get_ledger("acct-2", self.db_path).cost_used == pytest.approx(1.0)

    def test_unlimited_tier_always_admits(self):
        """No token limit means any amount is admitted."""
        provision_ledger("acct-3", "unlimited", db_path=self.db_path, now=NOW)
        _set_counters(self.db_path, "acct-3", tokens_used=10 ** 12)

        assert try_consume("acct-3", 10 ** 9, 0.0, db_path=self.db_path, now=NOW) is True
        assert remaining_quota("acct-3", self.db_path).tokens_remaining is None

    def test_missing_ledger_raises(self):
        """Unknown accounts are a hard failure, not a denial."""
        with pytest.raises(LedgerNotFoundError, match="ghost"):
            try_consume("ghost", 1, 0.0, db_path=self.db_path)

    def test_negative_delta_rejected(self):
        with pytest.raises(ValueError):
            self._consume(-1)

    def test_request_limits_ignored_by_default(self):
        """Without enforce_request_limits only tokens and cost gate access."""
        _set_counters(self.db_path, "acct-1", requests_used=100, daily_requests_used=10,
                      last_daily_reset=NOW.date().isoformat())
        assert self._consume(1) is True

    def test_request_limits_enforced_when_configured(self):
        config = QuotaConfig(
            tiers=self.config.tiers,
            default_tier="small",
            enforce_request_limits=True,
        )
        _set_counters(self.db_path, "acct-1", daily_requests_used=10)
        assert try_consume("acct-1", 1, db_path=self.db_path, config=config, now=NOW) is False

        _set_counters(self.db_path, "acct-1", daily_requests_used=0, requests_used=100)
        assert try_consume("acct-1", 1, db_path=self.db_path, config=config, now=NOW) is False

    def test_lazy_daily_reset(self):
        """The first call on a new day starts the daily counter from zero."""
        _set_counters(self.db_path, "acct-1", daily_requests_used=9)

        assert self._consume(1, now=datetime(2026, 3, 11, 8, 0, 0)) is True

        ledger = get_ledger("acct-1", self.db_path)
        assert ledger.daily_requests_used == 1
        assert ledger.last_daily_reset == date(2026, 3, 11)

    def test_allowance_extends_token_limit(self):
        _set_counters(self.db_path, "acct-1", tokens_used=1000)
        assert self._consume(100) is False

        grant_allowance("acct-1", tokens=500, db_path=self.db_path)
        assert self._consume(100) is True


class TestDenialReason:
    """Test the pure limit evaluation."""

    def setup_method(self):
        self.ledger = QuotaLedger(
            account_id="acct-1",
            tier="small",
            monthly_token_limit=Limit.of(1000),
            monthly_request_limit=Limit.of(5),
            daily_request_limit=Limit.of(2),
            monthly_cost_limit=Limit.of(2.0),
            current_period_start=date(2026, 3, 10),
            current_period_end=date(2026, 4, 10),
            last_daily_reset=date(2026, 3, 10),
            tokens_used=900,
            requests_used=5,
            cost_used=1.5,
            daily_requests_used=2,
        )

    def test_fits(self):
        assert denial_reason(self.ledger, 100, 0.5) is None

    def test_tokens_checked_first(self):
        assert "tokens" in denial_reason(self.ledger, 101, 1.0)

    def test_cost(self):
        assert "cost" in denial_reason(self.ledger, 10, 0.51)

    def test_request_limits_only_when_enforced(self):
        assert denial_reason(self.ledger, 10, 0.0) is None
        assert "monthly request limit" in denial_reason(self.ledger, 10, 0.0, enforce_request_limits=True)

    def test_allowance_counts(self):
        ledger = replace(self.ledger, custom_token_allowance=100)
        assert denial_reason(ledger, 200, 0.0) is None


class TestRemainingQuota(GateTestBase):
    """Test the remaining-quota query."""

    def test_remaining_and_percentage(self):
        """500000 limit with 450000 used leaves 50000 at 90.00%."""
        provision_ledger("acct-1", db_path=self.db_path, now=NOW)
        _set_counters(self.db_path, "acct-1", tokens_used=450000, requests_used=400)

        result = remaining_quota("acct-1", self.db_path)

        assert result.tokens_remaining == 50000
        assert result.requests_remaining == 600
        assert result.cost_remaining is None
        assert result.usage_percentage == Decimal("90.00")

    def test_remaining_clamped_at_zero(self):
        provision_ledger("acct-1", db_path=self.db_path, now=NOW)
        _set_counters(self.db_path, "acct-1", tokens_used=600000)

        result = remaining_quota("acct-1", self.db_path)
        assert result.tokens_remaining == 0
        assert result.usage_percentage == Decimal("120.00")

    def test_unlimited_returns_nulls(self):
        provision_ledger("acct-1", "unlimited", db_path=self.db_path, now=NOW)

        result = remaining_quota("acct-1", self.db_path)
        assert result.tokens_remaining is None
        assert result.requests_remaining is None
        assert result.usage_percentage == Decimal("0")

    def test_missing_ledger_returns_empty(self):
        """No ledger is not an error for the read path."""
        result = remaining_quota("ghost", self.db_path)
        assert result.tokens_remaining is None
        assert result.usage_percentage == Decimal("0")


class TestDefaultConfig:
    """Test the built-in tiers."""

    def test_default_tiers(self):
        config = default_config()
        assert set(config.tiers) == {"standard", "contributor", "supporter", "unlimited"}
        assert config.get_tier().name == "standard"
        assert config.get_tier("supporter").daily_request_limit == Limit.of(500)
