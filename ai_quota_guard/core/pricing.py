"""
Pricing calculations for metered model calls.

Splits a call's cost into input and output components for usage events,
and gives a conservative estimate for reserving quota before a call.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported for one call."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_cost_per_1k: Decimal  # Cost per 1K prompt tokens
    completion_cost_per_1k: Decimal  # Cost per 1K completion tokens


@dataclass(frozen=True)
class CostBreakdown:
    """Cost components stored on a usage event."""
    input_cost: float
    output_cost: float

    @property
    def total_cost(self) -> float:
        return round(self.input_cost + self.output_cost, 6)


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Raises:
            ValueError: If model is not supported
        """
        if model not in self.prices:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[model]


# Fixed pricing table - no dynamic fetching, no defaults
PRICING_TABLE = PricingTable({
    "gpt-4o": ModelPricing(
        prompt_cost_per_1k=Decimal("0.0025"),
        completion_cost_per_1k=Decimal("0.0100")
    ),
    "gpt-4o-mini": ModelPricing(
        prompt_cost_per_1k=Decimal("0.00015"),
        completion_cost_per_1k=Decimal("0.0006")
    ),
    "gpt-4": ModelPricing(
        prompt_cost_per_1k=Decimal("0.03"),
        completion_cost_per_1k=Decimal("0.06")
    ),
    "gpt-3.5-turbo": ModelPricing(
        prompt_cost_per_1k=Decimal("0.0015"),
        completion_cost_per_1k=Decimal("0.002")
    ),
})

_PRECISION = Decimal("0.000001")


def _component(tokens: int, per_1k: Decimal) -> float:
    # Always round UP so recorded cost never understates spend
    cost = (Decimal(tokens) / Decimal("1000")) * per_1k
    return float(cost.quantize(_PRECISION, rounding=ROUND_UP))


def calculate_cost(model: str, usage: TokenUsage, table: PricingTable = PRICING_TABLE) -> CostBreakdown:
    """Input and output cost of a call, each rounded up to 6 decimal places.

    Raises:
        ValueError: If model is not supported
    """
    pricing = table.get_pricing(model)
    return CostBreakdown(
        input_cost=_component(usage.prompt_tokens, pricing.prompt_cost_per_1k),
        output_cost=_component(usage.completion_tokens, pricing.completion_cost_per_1k),
    )


def estimate_reservation(model: str, tokens: int, table: PricingTable = PRICING_TABLE) -> float:
    """Worst-case cost of ``tokens`` tokens, priced at the dearer of the two rates."""
    pricing = table.get_pricing(model)
    rate = max(pricing.prompt_cost_per_1k, pricing.completion_cost_per_1k)
    return _component(tokens, rate)
