"""System instructions and user-input augmentation for one turn.

Kept apart from the orchestrator so prompt wording can change without
touching stream control flow.
"""

from __future__ import annotations

REFERENCE_LABEL = "Reference"
CONCEPT_CARD_LABEL = "Concept Card"

_DIFFICULTY_HINTS = {
    "basic": "Use simple language and avoid jargon.",
    "advanced": "You may use precise terminology and include formulas when helpful.",
}
_DEFAULT_DIFFICULTY_HINT = "Explain clearly with moderate detail."

_LANGUAGE_INSTRUCTIONS = {
    "zh": "请使用中文回答。",
}
_DEFAULT_LANGUAGE_INSTRUCTION = "Please answer in English."

# Inline markup the client renders as clickable term/symbol cards
_MARKER_PROTOCOL = (
    "For key terms or symbols, use markers: [[term:Term Name]] or [[sym:formula]]. "
    "Optional stable key: [[term:Name|key=id]]. "
    "Do not use [[...]] for anything other than term/sym markers."
)

_REFERENCE_INSTRUCTION = (
    "Prioritize the reference content below when answering; "
    "you may cite [Source: xxx] where appropriate. "
    "Do not invent information not present in the references."
)


def build_system_prompt(
    difficulty: str | None,
    language: str | None,
    *,
    has_reference: bool,
) -> str:
    """Compose the tutor system instructions for one turn."""
    tier = (difficulty or "").strip().lower()
    lang = (language or "").strip().lower()
    parts = [
        "You are a university-level astronomy tutor.",
        _LANGUAGE_INSTRUCTIONS.get(lang, _DEFAULT_LANGUAGE_INSTRUCTION),
        _DIFFICULTY_HINTS.get(tier, _DEFAULT_DIFFICULTY_HINT),
        "Structure your answer: conclusion first, then layered explanation, "
        "optional formulas, common misconceptions, and next-step suggestions.",
        "Use Markdown and LaTeX where appropriate. Do not fabricate citations.",
    ]
    if has_reference:
        parts.append(_REFERENCE_INSTRUCTION)
    parts.append(_MARKER_PROTOCOL)
    return " ".join(parts)


def augment_user_text(label: str, reference_text: str, question: str) -> str:
    """Prefix *question* with a labeled reference block.

    Returns *question* unchanged when there is no reference material.
    """
    if not reference_text or not reference_text.strip():
        return question
    return f"[{label}]\n\n{reference_text}\n\n---\n\n{question}"
