"""Unit tests for system prompt composition and input augmentation."""

from __future__ import annotations

from tutorstream.engine.prompt_builder import augment_user_text
from tutorstream.engine.prompt_builder import build_system_prompt
from tutorstream.engine.prompt_builder import CONCEPT_CARD_LABEL
from tutorstream.engine.prompt_builder import REFERENCE_LABEL


class TestSystemPrompt:
    def test_language_instruction(self):
        assert "Please answer in English." in build_system_prompt("basic", "en", has_reference=False)
        assert "请使用中文回答。" in build_system_prompt("basic", "zh", has_reference=False)

    def test_difficulty_hints(self):
        assert "avoid jargon" in build_system_prompt("basic", "en", has_reference=False)
        assert "include formulas" in build_system_prompt("advanced", "en", has_reference=False)
        assert "moderate detail" in build_system_prompt(None, None, has_reference=False)

    def test_marker_protocol_always_present(self):
        prompt = build_system_prompt("intermediate", "en", has_reference=False)
        assert "[[term:Term Name]]" in prompt
        assert "[[sym:formula]]" in prompt
        assert "[[term:Name|key=id]]" in prompt

    def test_reference_instruction_only_with_reference(self):
        with_ref = build_system_prompt("basic", "en", has_reference=True)
        without = build_system_prompt("basic", "en", has_reference=False)
        assert "Do not invent information" in with_ref
        assert "Do not invent information" not in without


class TestAugmentUserText:
    def test_labeled_block_precedes_question(self):
        text = augment_user_text(REFERENCE_LABEL, "facts", "question")
        assert text == "[Reference]\n\nfacts\n\n---\n\nquestion"

    def test_card_label(self):
        assert augment_user_text(CONCEPT_CARD_LABEL, "{}", "q").startswith("[Concept Card]")

    def test_blank_reference_returns_question(self):
        assert augment_user_text(REFERENCE_LABEL, "   ", "question") == "question"
