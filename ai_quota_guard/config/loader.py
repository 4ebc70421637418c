"""
Configuration management and loading.

Handles quota tiers, alert thresholds, retry policy and database settings.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

import yaml

from ai_quota_guard.core.errors import UnknownTierError
from ai_quota_guard.storage.models import Limit, UNLIMITED, limit_from_storage


DEFAULT_DB_PATH = "ai_quota_guard.db"
DEFAULT_BUSY_TIMEOUT_MS = 5000


@dataclass(frozen=True)
class TierConfig:
    """Default limits for a named quota tier."""
    name: str
    display_name: str
    monthly_token_limit: Limit = UNLIMITED
    monthly_request_limit: Limit = UNLIMITED
    daily_request_limit: Limit = UNLIMITED
    monthly_cost_limit: Limit = UNLIMITED


@dataclass(frozen=True)
class DatabaseConfig:
    """Where the ledger lives and how long to wait on a locked database."""
    path: str = DEFAULT_DB_PATH
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS

    def __post_init__(self):
        if not self.path:
            raise ValueError("database path cannot be empty")
        if self.busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")


@dataclass(frozen=True)
class RetryConfig:
    """Bounded retry policy for transient lock conflicts."""
    attempts: int = 5
    min_wait_seconds: float = 0.05
    max_wait_seconds: float = 1.0

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("retry attempts must be >= 1")
        if self.min_wait_seconds < 0 or self.max_wait_seconds < self.min_wait_seconds:
            raise ValueError("retry waits must satisfy 0 <= min_wait_seconds <= max_wait_seconds")


@dataclass(frozen=True)
class QuotaConfig:
    """Complete quota configuration."""
    tiers: Dict[str, TierConfig]
    default_tier: str
    alert_thresholds: Tuple[int, ...] = (80, 90, 100)
    enforce_request_limits: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self):
        if self.default_tier not in self.tiers:
            raise ValueError(f"default_tier '{self.default_tier}' is not a configured tier")
        if not self.alert_thresholds:
            raise ValueError("alert thresholds cannot be empty")
        for threshold in self.alert_thresholds:
            if threshold <= 0:
                raise ValueError("alert thresholds must be > 0")

    def get_tier(self, name: Optional[str] = None) -> TierConfig:
        """Get a tier by name, falling back to the default tier."""
        tier_name = name or self.default_tier
        if tier_name not in self.tiers:
            raise UnknownTierError(tier_name)
        return self.tiers[tier_name]


def default_config() -> QuotaConfig:
    """Built-in tiers used when no configuration file is given."""
    tiers = {
        "standard": TierConfig(
            name="standard",
            display_name="Standard",
            monthly_token_limit=Limit.of(500000),
            monthly_request_limit=Limit.of(1000),
            daily_request_limit=Limit.of(50),
        ),
        "contributor": TierConfig(
            name="contributor",
            display_name="Contributor",
            monthly_token_limit=Limit.of(2000000),
            monthly_request_limit=Limit.of(5000),
            daily_request_limit=Limit.of(200),
        ),
        "supporter": TierConfig(
            name="supporter",
            display_name="Supporter",
            monthly_token_limit=Limit.of(5000000),
            monthly_request_limit=Limit.of(10000),
            daily_request_limit=Limit.of(500),
        ),
        "unlimited": TierConfig(name="unlimited", display_name="Unlimited"),
    }
    return QuotaConfig(tiers=tiers, default_tier="standard")


def load_quota_config(path: str) -> QuotaConfig:
    """Load and validate quota configuration from a YAML file.

    Strict validation ensures a typo in a tier never silently turns
    a limited account into an unlimited one.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated QuotaConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Quota config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'database', 'tiers', 'default_tier', 'alerts', 'enforcement', 'retry'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'tiers' not in raw_config:
        raise ValueError("Missing required 'tiers' section")
    tiers_data = raw_config['tiers']
    if not isinstance(tiers_data, dict) or not tiers_data:
        raise ValueError("'tiers' must be a non-empty dictionary")

    tiers = {}
    for tier_name, tier_data in tiers_data.items():
        if not isinstance(tier_data, dict):
            raise ValueError(f"Tier '{tier_name}' must be a dictionary")
        tiers[tier_name] = _parse_tier(tier_name, tier_data)

    if 'default_tier' not in raw_config:
        raise ValueError("Missing required 'default_tier'")
    default_tier = raw_config['default_tier']
    if not isinstance(default_tier, str):
        raise ValueError("'default_tier' must be a string")

    database = _parse_section(raw_config, 'database', {'path', 'busy_timeout_ms'})
    alerts = _parse_section(raw_config, 'alerts', {'thresholds'})
    enforcement = _parse_section(raw_config, 'enforcement', {'enforce_request_limits'})
    retry = _parse_section(raw_config, 'retry', {'attempts', 'min_wait_seconds', 'max_wait_seconds'})

    thresholds = alerts.get('thresholds', [80, 90, 100])
    if not isinstance(thresholds, list) or not all(
        isinstance(t, int) and not isinstance(t, bool) for t in thresholds
    ):
        raise ValueError("'alerts.thresholds' must be a list of integers")

    enforce = enforcement.get('enforce_request_limits', False)
    if not isinstance(enforce, bool):
        raise ValueError("'enforcement.enforce_request_limits' must be a boolean")

    return QuotaConfig(
        tiers=tiers,
        default_tier=default_tier,
        alert_thresholds=tuple(sorted(set(thresholds))),
        enforce_request_limits=enforce,
        database=DatabaseConfig(
            path=str(database.get('path', DEFAULT_DB_PATH)),
            busy_timeout_ms=int(database.get('busy_timeout_ms', DEFAULT_BUSY_TIMEOUT_MS)),
        ),
        retry=RetryConfig(
            attempts=int(retry.get('attempts', 5)),
            min_wait_seconds=float(retry.get('min_wait_seconds', 0.05)),
            max_wait_seconds=float(retry.get('max_wait_seconds', 1.0)),
        ),
    )


def _parse_section(raw_config: Dict, name: str, allowed_keys: set) -> Dict:
    """Return an optional top-level section after checking its keys."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _parse_tier(name: str, data: Dict) -> TierConfig:
    """Parse and validate one tier definition.

    Args:
        name: Tier name
        data: Tier configuration data

    Returns:
        Validated TierConfig

    Raises:
        ValueError: If configuration is invalid
    """
    limit_keys = {
        'monthly_token_limit', 'monthly_request_limit',
        'daily_request_limit', 'monthly_cost_limit',
    }
    allowed_keys = limit_keys | {'display_name'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in tiers.{name}: {unknown_keys}")

    # A missing or null limit means unlimited
    limits = {}
    for key in limit_keys:
        value = data.get(key)
        if value is not None:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ValueError(f"'{key}' in tiers.{name} must be a number >= 0 or null")
            if key != 'monthly_cost_limit' and not isinstance(value, int):
                raise ValueError(f"'{key}' in tiers.{name} must be an integer")
        limits[key] = limit_from_storage(value)

    display_name = data.get('display_name', name.title())
    if not isinstance(display_name, str):
        raise ValueError(f"'display_name' in tiers.{name} must be a string")

    return TierConfig(name=name, display_name=display_name, **limits)
