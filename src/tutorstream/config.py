"""Tunables for the tutoring stream backend.

One frozen dataclass per concern. Defaults mirror the production
settings; callers override fields at construction time.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class LLMConfig:
    """Model stream provider settings."""

    provider: str = "openai"
    model: str = "deepseek-chat"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    temperature: float = 0.7
    timeout_seconds: float = 60.0


@dataclass(frozen=True)
class RateLimitConfig:
    """Sliding request-count window per client key."""

    window_seconds: float = 600.0
    max_requests: int = 20


@dataclass(frozen=True)
class MemoryConfig:
    """Short-term conversational memory sizing."""

    # One round = one user message + one assistant message
    max_rounds: int = 8
    message_overhead_chars: int = 12

    @property
    def history_limit(self) -> int:
        return 2 * self.max_rounds


@dataclass(frozen=True)
class OutputLimitConfig:
    """Max completion tokens per difficulty tier."""

    basic: int = 1500
    intermediate: int = 2000
    advanced: int = 2500

    def max_tokens_for(self, difficulty: str | None) -> int:
        tier = (difficulty or "").strip().lower()
        if tier == "basic":
            return self.basic
        if tier == "advanced":
            return self.advanced
        return self.intermediate


@dataclass(frozen=True)
class PricingConfig:
    """Per-million-token rates used when the provider reports no usage."""

    input_per_million_usd: float = 0.14
    output_per_million_usd: float = 0.28
    chars_per_token: int = 4


@dataclass(frozen=True)
class RetrievalConfig:
    """Automatic retrieval augmentation and citation shaping."""

    rag_enabled: bool = False
    wikipedia_on_demand: bool = False
    kb_default_top_k: int = 8
    wiki_max_results: int = 2
    excerpt_max_chars: int = 500
    kb_excerpt_max_chars: int = 300


@dataclass(frozen=True)
class AuditConfig:
    """Settings for the JSONL usage audit log."""

    file_path: str = "tutorstream_usage.jsonl"
    enabled: bool = True

