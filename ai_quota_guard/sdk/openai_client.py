"""
Guarded OpenAI client wrapper.

Reserves quota before each call and records usage after it.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.errors import QuotaExceededError
from ..core.pricing import TokenUsage, calculate_cost, estimate_reservation
from ..core.service import QuotaService
from ..storage.models import UsageEvent

logger = logging.getLogger(__name__)

DEFAULT_RESERVATION_TOKENS = 1024


class GuardedOpenAI:
    """OpenAI client wrapper that meters every call against an account's quota.

    Order per call: reserve quota, call the model, record the usage event.
    Failed calls are recorded with success=False and re-raised; the
    reservation is not refunded.
    """

    def __init__(
        self,
        model: str,
        account_id: str,
        service: Optional[QuotaService] = None,
        mode: Optional[str] = None,
        reservation_tokens: int = DEFAULT_RESERVATION_TOKENS
    ):
        """Initialize guarded OpenAI client.

        Args:
            model: OpenAI model name (required)
            account_id: Account charged for every call (required)
            service: Quota service (defaults to one over the configured database)
            mode: Agent mode tag recorded on every event
            reservation_tokens: Tokens reserved when a call sets no max_tokens

        Raises:
            ValueError: If model or account_id is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not account_id or not account_id.strip():
            raise ValueError("account_id is required and cannot be empty")
        if reservation_tokens <= 0:
            raise ValueError("reservation_tokens must be > 0")

        self.model = model
        self.account_id = account_id
        self.mode = mode
        self.reservation_tokens = reservation_tokens
        self.service = service or QuotaService()
        self.client = OpenAI()

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        session_id: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Create chat completion with quota reservation and usage recording.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate; also the reservation size
            session_id: Agent session to link the usage event to
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response, unchanged

        Raises:
            ValueError: If messages is empty
            QuotaExceededError: If the account's quota can't fit the reservation
            OpenAI API errors: Propagated after the failure is recorded
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        reserve_tokens = max_tokens or self.reservation_tokens
        reserve_cost = estimate_reservation(self.model, reserve_tokens)
        if not self.service.try_consume(self.account_id, reserve_tokens, reserve_cost):
            raise QuotaExceededError(self.account_id, reserve_tokens, reserve_cost)

        params = dict(kwargs)
        if temperature is not None:
            params["temperature"] = temperature
        if max_tokens is not None:
            params["max_tokens"] = max_tokens

        started = time.monotonic()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                **params
            )
        except Exception as e:
            self.service.record(self._event(
                TokenUsage(0, 0), started, session_id,
                success=False, error_message=str(e), error_code=type(e).__name__
            ))
            raise

        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        token_usage = TokenUsage(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens
        )
        self.service.record(self._event(token_usage, started, session_id, request_id=response.id))
        return response

    def _event(
        self,
        usage: TokenUsage,
        started: float,
        session_id: Optional[int],
        **outcome: Any
    ) -> UsageEvent:
        cost = calculate_cost(self.model, usage)
        return UsageEvent(
            account_id=self.account_id,
            provider="openai",
            model_name=self.model,
            mode=self.mode,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            input_cost=cost.input_cost,
            output_cost=cost.output_cost,
            latency_ms=int((time.monotonic() - started) * 1000),
            session_id=session_id,
            **outcome
        )
