"""Unit tests for configuration defaults."""

from __future__ import annotations

import dataclasses

import pytest

from tutorstream.config import AuditConfig
from tutorstream.config import LLMConfig
from tutorstream.config import MemoryConfig
from tutorstream.config import OutputLimitConfig
from tutorstream.config import PricingConfig
from tutorstream.config import RateLimitConfig
from tutorstream.config import RetrievalConfig


class TestDefaults:
    def test_llm_defaults(self):
        cfg = LLMConfig()
        assert cfg.provider == "openai"
        assert cfg.model == "deepseek-chat"
        assert cfg.api_key is None
        assert cfg.temperature == 0.7
        assert cfg.timeout_seconds == 60.0

    def test_rate_limit_defaults(self):
        cfg = RateLimitConfig()
        assert cfg.window_seconds == 600.0
        assert cfg.max_requests == 20

    def test_memory_history_limit_is_two_messages_per_round(self):
        assert MemoryConfig().history_limit == 16
        assert MemoryConfig(max_rounds=3).history_limit == 6

    def test_pricing_defaults(self):
        cfg = PricingConfig()
        assert cfg.input_per_million_usd == 0.14
        assert cfg.output_per_million_usd == 0.28
        assert cfg.chars_per_token == 4

    def test_retrieval_defaults(self):
        cfg = RetrievalConfig()
        assert cfg.rag_enabled is False
        assert cfg.wikipedia_on_demand is False
        assert cfg.kb_default_top_k == 8
        assert cfg.excerpt_max_chars == 500

    def test_audit_defaults(self):
        cfg = AuditConfig()
        assert cfg.file_path == "tutorstream_usage.jsonl"
        assert cfg.enabled is True

    def test_configs_are_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            RateLimitConfig().max_requests = 5  # type: ignore[misc]


class TestOutputLimits:
    @pytest.mark.parametrize(
        ("difficulty", "expected"),
        [
            ("basic", 1500),
            ("intermediate", 2000),
            ("advanced", 2500),
            (" Advanced ", 2500),
            ("expert", 2000),
            (None, 2000),
        ],
    )
    def test_max_tokens_for_tier(self, difficulty, expected):
        assert OutputLimitConfig().max_tokens_for(difficulty) == expected
