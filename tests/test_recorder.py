"""
Unit tests for the usage recorder and rollups.
"""

import os
import shutil
import tempfile
import time
from dataclasses import replace
from datetime import date, datetime

import pytest

from ai_quota_guard.config.loader import DatabaseConfig, RetryConfig, default_config
from ai_quota_guard.core.errors import TransientStoreError, UsageValidationError
from ai_quota_guard.core.quota_gate import provision_ledger
from ai_quota_guard.core.recorder import record, validate_event
from ai_quota_guard.core.rollover import rollover_elapsed_periods
from ai_quota_guard.core.service import QuotaService
from ai_quota_guard.core.sessions import get_session, start_session
from ai_quota_guard.storage.db import get_connection
from ai_quota_guard.storage.models import UsageEvent
from ai_quota_guard.storage.repository import (
    fetch_daily_aggregates,
    fetch_monthly_aggregates,
    fetch_usage_events,
    initialize_schema,
)


NOW = datetime(2026, 3, 10, 12, 0, 0)


def _event(**overrides) -> UsageEvent:
    fields = dict(
        account_id="acct-1",
        provider="openai",
        model_name="gpt-4o-mini",
        prompt_tokens=100,
        completion_tokens=50,
        input_cost=0.000015,
        output_cost=0.00003,
        mode="chat",
        latency_ms=200,
        timestamp=NOW,
    )
    fields.update(overrides)
    return UsageEvent(**fields)


class TestValidation:
    """Test rejection of malformed events."""

    def test_valid_event_passes(self):
        validate_event(_event())

    def test_missing_account(self):
        with pytest.raises(UsageValidationError, match="account_id"):
            validate_event(_event(account_id=""))

    def test_missing_provider(self):
        with pytest.raises(UsageValidationError, match="provider"):
            validate_event(_event(provider="  "))

    def test_missing_model(self):
        with pytest.raises(UsageValidationError, match="model_name"):
            validate_event(_event(model_name=""))

    def test_negative_tokens(self):
        with pytest.raises(UsageValidationError, match="token counts"):
            validate_event(_event(prompt_tokens=-1))

    def test_negative_cost(self):
        with pytest.raises(UsageValidationError, match="costs"):
            validate_event(_event(output_cost=-0.1))

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            validate_event(_event(latency_ms=-5))


class TestDerivedTotals:
    """Totals are always computed from components."""

    def test_totals(self):
        event = _event(prompt_tokens=120, completion_tokens=30, input_cost=0.1, output_cost=0.2)
        assert event.total_tokens == 150
        assert event.total_cost == pytest.approx(0.3)


class TestRecord:
    """Test appending events and folding them into rollups."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        provision_ledger("acct-1", db_path=self.db_path, now=NOW)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_record_appends_event(self):
        event_id = record(_event(request_id="req-1", metadata={"tool": "search"}), self.db_path)

        events = fetch_usage_events("acct-1", db_path=self.db_path)
        assert len(events) == 1
        stored = events[0]
        assert stored.id == event_id
        assert stored.total_tokens == 150
        assert stored.request_id == "req-1"
        assert stored.metadata == {"tool": "search"}
        assert stored.timestamp == NOW

    def test_missing_timestamp_is_stamped(self):
        record(_event(timestamp=None), self.db_path, now=NOW)
        assert fetch_usage_events("acct-1", db_path=self.db_path)[0].timestamp == NOW

    def test_daily_rollup_conserves_totals(self):
        """The rollup equals the sum over its events."""
        record(_event(prompt_tokens=100, completion_tokens=50), self.db_path)
        record(_event(prompt_tokens=10, completion_tokens=5), self.db_path)
        record(_event(prompt_tokens=0, completion_tokens=0, success=False,
                      error_code="Timeout", latency_ms=None), self.db_path)

        daily = fetch_daily_aggregates("acct-1", self.db_path)
        assert len(daily) == 1
        row = daily[0]
        assert row.usage_date == date(2026, 3, 10)
        assert row.request_count == 3
        assert row.total_tokens == 165
        assert row.prompt_tokens == 110
        assert row.completion_tokens == 55
        assert row.success_count == 2
        assert row.error_count == 1
        assert row.total_cost == pytest.approx(3 * 0.000045)

    def test_monthly_rollup(self):
        record(_event(), self.db_path)
        record(_event(timestamp=datetime(2026, 3, 28, 9, 0, 0)), self.db_path)
        record(_event(timestamp=datetime(2026, 4, 1, 9, 0, 0)), self.db_path)

        monthly = fetch_monthly_aggregates("acct-1", self.db_path)
        assert [(m.year, m.month, m.request_count) for m in monthly] == [(2026, 4, 1), (2026, 3, 2)]
        assert len(fetch_daily_aggregates("acct-1", self.db_path)) == 3

    def test_rollup_key_separates_models_and_modes(self):
        record(_event(), self.db_path)
        record(_event(model_name="gpt-4o"), self.db_path)
        record(_event(mode="agent"), self.db_path)

        assert len(fetch_daily_aggregates("acct-1", self.db_path)) == 3
        monthly = fetch_monthly_aggregates("acct-1", self.db_path)
        assert {(m.model_name, m.request_count) for m in monthly} == {("gpt-4o-mini", 2), ("gpt-4o", 1)}

    def test_events_without_mode_share_a_row(self):
        """A null mode still collapses into one daily row."""
        record(_event(mode=None), self.db_path)
        record(_event(mode=None), self.db_path)

        daily = fetch_daily_aggregates("acct-1", self.db_path)
        assert len(daily) == 1
        assert daily[0].mode is None
        assert daily[0].request_count == 2

    def test_average_latency_is_running_mean(self):
        record(_event(latency_ms=100), self.db_path)
        record(_event(latency_ms=300), self.db_path)
        record(_event(latency_ms=None), self.db_path)
        record(_event(latency_ms=200), self.db_path)

        assert fetch_daily_aggregates("acct-1", self.db_path)[0].avg_latency_ms == pytest.approx(200.0)

    def test_unknown_account_rejected(self):
        with pytest.raises(UsageValidationError, match="Unknown account"):
            record(_event(account_id="ghost"), self.db_path)
        assert fetch_usage_events(db_path=self.db_path) == []

    def test_session_activity_touched(self):
        session_id = start_session("acct-1", "chat", db_path=self.db_path, now=NOW)
        later = datetime(2026, 3, 10, 13, 0, 0)

        record(_event(session_id=session_id), self.db_path, now=later)

        assert get_session(session_id, self.db_path).last_activity_at == later


class TestBusyTimeout:
    """Test that writers wait only as long as configured on a locked database."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        config = default_config()
        self.config = replace(
            config,
            database=DatabaseConfig(path=self.db_path, busy_timeout_ms=100),
            retry=RetryConfig(attempts=1, min_wait_seconds=0.0, max_wait_seconds=0.0),
        )
        self.service = QuotaService(config=self.config)
        self.service.initialize()
        self.service.provision("acct-1")

        self.blocker = get_connection(self.db_path)
        self.blocker.execute("BEGIN IMMEDIATE")

    def teardown_method(self):
        self.blocker.execute("ROLLBACK")
        self.blocker.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_record_uses_configured_timeout(self):
        started = time.monotonic()
        with pytest.raises(TransientStoreError, match="1 attempts"):
            self.service.record(_event())
        assert time.monotonic() - started < 1.0

    def test_rollover_uses_configured_timeout(self):
        started = time.monotonic()
        with pytest.raises(TransientStoreError):
            rollover_elapsed_periods(date(2026, 4, 10), self.db_path, self.config.retry,
                                     busy_timeout_ms=100)
        assert time.monotonic() - started < 1.0
