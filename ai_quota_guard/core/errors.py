"""
Error taxonomy for quota accounting.

A denied quota check is not an error: try_consume returns False.
"""


class QuotaGuardError(Exception):
    """Base class for quota guard failures."""


class LedgerNotFoundError(QuotaGuardError):
    """Raised when an operation references an account with no quota ledger."""
    def __init__(self, account_id: str):
        super().__init__(f"No quota ledger found for account {account_id}")
        self.account_id = account_id


class LedgerExistsError(QuotaGuardError):
    """Raised when provisioning an account that already has a ledger."""
    def __init__(self, account_id: str):
        super().__init__(f"Quota ledger already exists for account {account_id}")
        self.account_id = account_id


class UsageValidationError(QuotaGuardError, ValueError):
    """Raised when a usage event is malformed. Nothing is written."""


class UnknownTierError(QuotaGuardError, ValueError):
    """Raised when a quota tier name is not configured."""
    def __init__(self, tier: str):
        super().__init__(f"Unknown quota tier: {tier}")
        self.tier = tier


class TransientStoreError(QuotaGuardError):
    """Raised when the store stayed locked through every retry attempt."""


class QuotaExceededError(QuotaGuardError):
    """Client-facing quota denial raised by the SDK wrapper."""
    def __init__(self, account_id: str, tokens: int, cost: float):
        super().__init__(
            f"Quota exceeded for account {account_id}: "
            f"{tokens:,} tokens / ${cost:.4f} would exceed the current period's limit"
        )
        self.account_id = account_id
        self.tokens = tokens
        self.cost = cost
