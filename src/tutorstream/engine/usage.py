"""Usage estimation from character counts.

Used only when the provider reports no exact token counts.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from tutorstream.config import MemoryConfig
from tutorstream.config import PricingConfig
from tutorstream.engine.provider import ProviderUsage
from tutorstream.memory.schemas import MemoryEntry
from tutorstream.models.schemas import TokenUsage


class UsageEstimator:
    def __init__(
        self,
        pricing: PricingConfig | None = None,
        memory: MemoryConfig | None = None,
    ) -> None:
        self._pricing = pricing or PricingConfig()
        self._memory = memory or MemoryConfig()

    def tokens_for(self, chars: int) -> int:
        if chars <= 0:
            return 0
        return math.ceil(chars / self._pricing.chars_per_token)

    def cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        return (
            prompt_tokens * self._pricing.input_per_million_usd
            + completion_tokens * self._pricing.output_per_million_usd
        ) / 1_000_000

    def estimate(self, prompt_chars: int, completion_chars: int) -> TokenUsage:
        prompt_tokens = self.tokens_for(prompt_chars)
        completion_tokens = self.tokens_for(completion_chars)
        return TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            estimated_cost_usd=self.cost(prompt_tokens, completion_tokens),
        )

    def prompt_chars(
        self,
        system_prompt: str,
        user_text: str,
        memory: Sequence[MemoryEntry] = (),
    ) -> int:
        """Characters sent to the model, with a fixed overhead per memory entry."""
        overhead = self._memory.message_overhead_chars
        return (
            len(system_prompt)
            + len(user_text)
            + sum(len(entry.content) + overhead for entry in memory)
        )

    def resolve(
        self,
        exact: ProviderUsage | None,
        *,
        prompt_chars: int,
        completion_chars: int,
    ) -> TokenUsage:
        """Prefer provider-reported counts; fall back to the estimate."""
        if exact is None:
            return self.estimate(prompt_chars, completion_chars)
        return TokenUsage(
            prompt_tokens=exact.prompt_tokens,
            completion_tokens=exact.completion_tokens,
            estimated_cost_usd=self.cost(exact.prompt_tokens, exact.completion_tokens),
        )
