"""
Data models for storage layer.

Defines the ledger, usage events, rollups and alerts.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union


Number = Union[int, float]


class Limit(ABC):
    """A quota limit: either Limit.unlimited() or Limit.of(amount).

    Storage keeps NULL for unlimited; nothing above the storage layer
    ever sees that NULL.
    """

    @staticmethod
    def of(amount: Number) -> "Limited":
        return Limited(amount)

    @staticmethod
    def unlimited() -> "Unlimited":
        return UNLIMITED

    @property
    @abstractmethod
    def is_unlimited(self) -> bool:
        ...

    @abstractmethod
    def would_exceed(self, used: Number, delta: Number) -> bool:
        ...

    @abstractmethod
    def remaining(self, used: Number) -> Optional[Number]:
        ...

    @abstractmethod
    def plus(self, allowance: Number) -> "Limit":
        ...

    @abstractmethod
    def to_storage(self) -> Optional[Number]:
        ...


@dataclass(frozen=True)
class Unlimited(Limit):
    """No limit is applied."""

    @property
    def is_unlimited(self) -> bool:
        return True

    def would_exceed(self, used: Number, delta: Number) -> bool:
        return False

    def remaining(self, used: Number) -> Optional[Number]:
        return None

    def plus(self, allowance: Number) -> "Limit":
        return self

    def to_storage(self) -> Optional[Number]:
        return None


@dataclass(frozen=True)
class Limited(Limit):
    """A hard ceiling on a counter."""
    amount: Number

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError("limit amount cannot be negative")

    @property
    def is_unlimited(self) -> bool:
        return False

    def would_exceed(self, used: Number, delta: Number) -> bool:
        # Costs are REAL columns; compare at the stored precision
        return round(used + delta, 6) > self.amount

    def remaining(self, used: Number) -> Optional[Number]:
        return max(0, self.amount - used)

    def plus(self, allowance: Number) -> "Limit":
        return Limited(self.amount + allowance) if allowance else self

    def to_storage(self) -> Optional[Number]:
        return self.amount


UNLIMITED = Unlimited()


def limit_from_storage(raw: Optional[Number]) -> Limit:
    """NULL columns mean unlimited."""
    return UNLIMITED if raw is None else Limited(raw)


class AlertType(Enum):
    """Kinds of usage alerts."""
    QUOTA_WARNING = "quota_warning"
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMIT = "rate_limit"


@dataclass(frozen=True)
class QuotaLedger:
    """Per-account limits and running counters for the current period.

    Counters are only ever changed by the quota gate and period rollover.
    """
    account_id: str
    tier: str
    monthly_token_limit: Limit
    monthly_request_limit: Limit
    daily_request_limit: Limit
    monthly_cost_limit: Limit
    current_period_start: date
    current_period_end: date
    last_daily_reset: date
    tokens_used: int = 0
    requests_used: int = 0
    cost_used: float = 0.0
    daily_requests_used: int = 0
    custom_token_allowance: int = 0
    custom_request_allowance: int = 0

    def __post_init__(self):
        """Validate period and counters."""
        if self.current_period_end <= self.current_period_start:
            raise ValueError("current_period_end must be after current_period_start")
        if self.tokens_used < 0:
            raise ValueError("tokens_used cannot be negative")
        if self.requests_used < 0:
            raise ValueError("requests_used cannot be negative")
        if self.cost_used < 0:
            raise ValueError("cost_used cannot be negative")
        if self.daily_requests_used < 0:
            raise ValueError("daily_requests_used cannot be negative")

    @property
    def effective_token_limit(self) -> Limit:
        """Tier limit plus any admin allowance."""
        return self.monthly_token_limit.plus(self.custom_token_allowance)

    @property
    def effective_request_limit(self) -> Limit:
        return self.monthly_request_limit.plus(self.custom_request_allowance)


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one metered operation.

    Totals are always derived from their components; callers cannot
    supply them. Failed operations are recorded too.
    """
    account_id: str
    provider: str
    model_name: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    input_cost: float = 0.0
    output_cost: float = 0.0
    model_id: Optional[str] = None
    mode: Optional[str] = None
    latency_ms: Optional[int] = None
    success: bool = True
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    session_id: Optional[int] = None
    request_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens

    @property
    def total_cost(self) -> float:
        return round(self.input_cost + self.output_cost, 6)


@dataclass(frozen=True)
class DailyAggregate:
    """Rollup of usage events for one (account, date, provider, model, mode)."""
    account_id: str
    usage_date: date
    provider: str
    model_name: str
    mode: Optional[str]
    request_count: int
    total_tokens: int
    prompt_tokens: int
    completion_tokens: int
    total_cost: float
    success_count: int
    error_count: int
    avg_latency_ms: Optional[float]


@dataclass(frozen=True)
class MonthlyAggregate:
    """Rollup of usage events for one (account, year, month, provider, model)."""
    account_id: str
    year: int
    month: int
    provider: str
    model_name: str
    request_count: int
    total_tokens: int
    prompt_tokens: int
    completion_tokens: int
    total_cost: float
    success_count: int
    error_count: int
    avg_latency_ms: Optional[float]


@dataclass(frozen=True)
class UsageAlert:
    """Notification that usage crossed a threshold."""
    id: int
    account_id: str
    alert_type: AlertType
    threshold_percentage: Optional[int]
    current_usage_percentage: Optional[int]
    title: str
    message: str
    created_at: datetime
    period_start: Optional[date] = None
    is_read: bool = False
    is_dismissed: bool = False
    read_at: Optional[datetime] = None
    dismissed_at: Optional[datetime] = None


@dataclass(frozen=True)
class RemainingQuota:
    """What is left in the current period. None means unlimited."""
    tokens_remaining: Optional[int]
    requests_remaining: Optional[int]
    cost_remaining: Optional[float]
    usage_percentage: Decimal


@dataclass(frozen=True)
class ActivitySummary:
    """Totals for an account over a lookback window."""
    total_requests: int
    total_tokens: int
    total_cost: float
    active_sessions: int
    total_messages: int
    avg_session_length_minutes: Optional[Decimal]


@dataclass(frozen=True)
class ModelUsage:
    """Usage of one model across all accounts."""
    model_name: str
    provider: str
    total_requests: int
    total_tokens: int
    total_cost: float
    avg_latency_ms: Optional[int]


@dataclass(frozen=True)
class AgentSession:
    """A conversational agent session, as far as activity reporting needs it."""
    id: int
    account_id: str
    mode: str
    title: Optional[str]
    is_active: bool
    started_at: datetime
    ended_at: Optional[datetime]
    last_activity_at: datetime
    message_count: int
