"""
Unit tests for pricing calculations.

Tests cost accuracy, rounding behavior, and error handling.
"""

import pytest
from decimal import Decimal

from ai_quota_guard.core.pricing import (
    PRICING_TABLE,
    CostBreakdown,
    TokenUsage,
    calculate_cost,
    estimate_reservation,
)


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        """Verify total_tokens is computed correctly."""
        usage = TokenUsage(prompt_tokens=100, completion_tokens=50)
        assert usage.total_tokens == 150

    def test_zero_tokens(self):
        """Verify zero token handling."""
        usage = TokenUsage(prompt_tokens=0, completion_tokens=0)
        assert usage.total_tokens == 0


class TestPricingTable:
    """Test pricing table functionality."""

    def test_get_supported_model(self):
        """Verify pricing retrieval for supported models."""
        gpt4_pricing = PRICING_TABLE.get_pricing("gpt-4")
        assert gpt4_pricing.prompt_cost_per_1k == Decimal("0.03")
        assert gpt4_pricing.completion_cost_per_1k == Decimal("0.06")

    def test_unsupported_model_raises_error(self):
        """Verify error for unknown models."""
        with pytest.raises(ValueError, match="Unsupported model: unknown-model"):
            PRICING_TABLE.get_pricing("unknown-model")


class TestCostCalculation:
    """Test cost calculation accuracy and rounding."""

    def test_exact_cost_gpt4(self):
        """Verify exact cost calculation for GPT-4."""
        usage = TokenUsage(prompt_tokens=1000, completion_tokens=500)
        cost = calculate_cost("gpt-4", usage)
        # Prompt: 1000/1000 * $0.03 = $0.03
        # Completion: 500/1000 * $0.06 = $0.03
        assert cost == CostBreakdown(input_cost=0.03, output_cost=0.03)
        assert cost.total_cost == 0.06

    def test_exact_cost_gpt4o(self):
        usage = TokenUsage(prompt_tokens=2000, completion_tokens=1000)
        cost = calculate_cost("gpt-4o", usage)
        assert cost.input_cost == 0.005
        assert cost.output_cost == 0.01

    def test_rounding_up_small_usage(self):
        """Sub-micro-dollar costs round up, never down to zero."""
        usage = TokenUsage(prompt_tokens=1, completion_tokens=1)
        cost = calculate_cost("gpt-4o-mini", usage)
        assert cost.input_cost == 0.000001
        assert cost.output_cost == 0.000001

    def test_zero_tokens_cost_nothing(self):
        cost = calculate_cost("gpt-3.5-turbo", TokenUsage(0, 0))
        assert cost.total_cost == 0.0

    def test_unsupported_model(self):
        with pytest.raises(ValueError, match="Unsupported model"):
            calculate_cost("llama", TokenUsage(1, 1))


class TestReservation:
    """Test pre-call reservation estimates."""

    def test_uses_dearer_rate(self):
        # gpt-4o completion rate ($0.01 / 1K) is higher than prompt
        assert estimate_reservation("gpt-4o", 1000) == 0.01

    def test_covers_actual_cost(self):
        """A reservation for N tokens is never below any split of N tokens."""
        reserved = estimate_reservation("gpt-4", 1500)
        actual = calculate_cost("gpt-4", TokenUsage(prompt_tokens=500, completion_tokens=1000))
        assert reserved >= actual.total_cost
