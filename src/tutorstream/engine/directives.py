"""Directive resolver for inline retrieval commands.

A user message may start with one of::

    @wiki:<query>
    @kb:<query> [topk=N]
    @card:<payload>

The matching retrieval tool is called synchronously and its result is
folded into the text handed to generation.  Malformed directives are
ignored rather than rejected.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from dataclasses import field
from enum import Enum

from tutorstream.engine.prompt_builder import augment_user_text
from tutorstream.engine.prompt_builder import CONCEPT_CARD_LABEL
from tutorstream.engine.prompt_builder import REFERENCE_LABEL
from tutorstream.engine.retrieval import ConceptCardTool
from tutorstream.engine.retrieval import KnowledgeBaseTool
from tutorstream.engine.retrieval import WikipediaTool
from tutorstream.models.schemas import Citation
from tutorstream.observability import record_latency

logger = logging.getLogger(__name__)


class DirectiveKind(str, Enum):
    none = "none"
    wiki = "wiki"
    kb = "kb"
    card = "card"


@dataclass(frozen=True)
class CardArgs:
    type: str = "term"
    lang: str = "en"
    key: str | None = None
    text: str | None = None


@dataclass(frozen=True)
class Directive:
    """Outcome of resolving one user message."""

    kind: DirectiveKind
    cleaned_text: str
    reference_text: str = ""
    citations: list[Citation] = field(default_factory=list)
    has_reference: bool = False
    augmented_text: str | None = None
    top_k: int | None = None
    card_args: CardArgs | None = None

    @classmethod
    def none(cls, original: str) -> Directive:
        return cls(kind=DirectiveKind.none, cleaned_text=original)

    @property
    def generation_text(self) -> str:
        """Text sent to the model: augmented when a reference was produced."""
        if self.has_reference and self.augmented_text:
            return self.augmented_text
        return self.cleaned_text


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

MAX_TOP_K = 50
_TOPK_RE = re.compile(r"\btopk\s*=\s*(\d+)\b", re.IGNORECASE)
_CARD_KEYS = ("type", "lang", "key", "text")
_CARD_KV_RE = re.compile(r"\b(?:type|lang|key|text)=", re.IGNORECASE)
_CARD_TYPES = frozenset({"term", "sym"})
_CARD_LANGS = frozenset({"en", "zh"})


def _strip_prefix(text: str, prefix: str) -> str | None:
    if text[: len(prefix)].lower() == prefix:
        return text[len(prefix) :].strip()
    return None


def strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


def extract_top_k(query: str) -> tuple[str, int | None]:
    """Remove the first ``topk=N`` token from *query*.

    Returns the remaining query with whitespace collapsed and the parsed
    count, or ``None`` when absent or not a positive integer.  Counts
    above ``MAX_TOP_K`` are capped.
    """
    match = _TOPK_RE.search(query)
    if match is None:
        return query.strip(), None
    remaining = f"{query[: match.start()]} {query[match.end() :]}"
    try:
        top_k: int | None = int(match.group(1))
    except ValueError:
        top_k = None
    if top_k is not None:
        top_k = min(top_k, MAX_TOP_K) if top_k >= 1 else None
    return " ".join(remaining.split()), top_k


def _kv_value(payload: str, key: str) -> str | None:
    match = re.search(rf"\b{key}=", payload, re.IGNORECASE)
    if match is None:
        return None
    rest = payload[match.end() :]
    if rest[:1] in {'"', "'"}:
        closing = rest.find(rest[0], 1)
        if closing > 0:
            return rest[1:closing]
    if key == "text":
        # Unquoted text runs to the end of the payload
        return strip_quotes(rest)
    if not rest or rest[0].isspace():
        return ""
    return strip_quotes(rest.split(maxsplit=1)[0])


def parse_card_args(payload: str, default_lang: str | None = None) -> CardArgs:
    """Parse ``@card`` arguments in key=value or positional shorthand form."""
    card_type = "term"
    lang = (default_lang or "").strip().lower() or "en"
    key: str | None = None
    text: str | None = payload

    if _CARD_KV_RE.search(payload):
        values = {name: _kv_value(payload, name) for name in _CARD_KEYS}
        card_type = values["type"] or card_type
        lang = values["lang"] or lang
        key = values["key"]
        if values["text"] and values["text"].strip():
            text = values["text"]
    else:
        parts = payload.split(maxsplit=2)
        head = parts[0].lower() if parts else ""
        if head in _CARD_TYPES:
            card_type = head
            if len(parts) >= 2 and parts[1].lower() in _CARD_LANGS:
                lang = parts[1].lower()
                if len(parts) == 3:
                    text = parts[2]
            elif len(parts) >= 2:
                text = payload.strip()[len(parts[0]) :].strip()
        elif head in _CARD_LANGS:
            lang = head
            if len(parts) >= 2:
                text = payload.strip()[len(parts[0]) :].strip()

    card_type = card_type.lower()
    if card_type not in _CARD_TYPES:
        card_type = "term"
    lang = lang.lower()
    if lang not in _CARD_LANGS:
        lang = "en"
    if text is not None:
        text = strip_quotes(text)
    if key is not None:
        key = strip_quotes(key) or None
    return CardArgs(type=card_type, lang=lang, key=key, text=text)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class DirectiveResolver:
    """Resolves inline directives against the retrieval tools.

    Blocking: call it off the event loop.
    """

    def __init__(
        self,
        *,
        wikipedia: WikipediaTool,
        knowledge_base: KnowledgeBaseTool,
        concept_cards: ConceptCardTool,
    ) -> None:
        self._wikipedia = wikipedia
        self._knowledge_base = knowledge_base
        self._concept_cards = concept_cards

    def resolve(self, raw_text: str | None, language_hint: str | None = None) -> Directive:
        started = time.perf_counter()
        ok = False
        try:
            directive = self._resolve(raw_text or "", language_hint)
            ok = True
            return directive
        finally:
            record_latency(
                operation="directive.resolve",
                duration_ms=(time.perf_counter() - started) * 1000,
                ok=ok,
            )

    def _resolve(self, raw_text: str, language_hint: str | None) -> Directive:
        text = raw_text.strip()
        if not text:
            return Directive.none(raw_text)

        query = _strip_prefix(text, "@wiki:")
        if query is not None:
            return self._resolve_wiki(raw_text, query)
        query = _strip_prefix(text, "@kb:")
        if query is not None:
            return self._resolve_kb(raw_text, query)
        payload = _strip_prefix(text, "@card:")
        if payload is not None:
            return self._resolve_card(raw_text, payload, language_hint)
        return Directive.none(raw_text)

    def _resolve_wiki(self, raw_text: str, query: str) -> Directive:
        if not query:
            return Directive.none(raw_text)
        result = self._wikipedia.search(query)
        reference = result.reference_text.strip()
        logger.debug("Resolved wiki directive query=%r citations=%d", query, len(result.citations))
        return Directive(
            kind=DirectiveKind.wiki,
            cleaned_text=query,
            reference_text=reference,
            citations=list(result.citations),
            has_reference=bool(reference) or bool(result.citations),
            augmented_text=augment_user_text(REFERENCE_LABEL, reference, query),
        )

    def _resolve_kb(self, raw_text: str, query: str) -> Directive:
        if not query:
            return Directive.none(raw_text)
        query, top_k = extract_top_k(query)
        if not query:
            return Directive.none(raw_text)
        result = self._knowledge_base.search(query, top_k)
        reference = result.reference_text.strip()
        logger.debug(
            "Resolved kb directive query=%r top_k=%s citations=%d",
            query,
            top_k,
            len(result.citations),
        )
        return Directive(
            kind=DirectiveKind.kb,
            cleaned_text=query,
            reference_text=reference,
            citations=list(result.citations),
            has_reference=bool(reference) or bool(result.citations),
            augmented_text=augment_user_text(REFERENCE_LABEL, reference, query),
            top_k=top_k,
        )

    def _resolve_card(
        self,
        raw_text: str,
        payload: str,
        language_hint: str | None,
    ) -> Directive:
        if not payload:
            return Directive.none(raw_text)
        args = parse_card_args(payload, language_hint)
        lookup = self._concept_cards.lookup(args.type, args.lang, args.key, args.text)
        cleaned = args.text if args.text and args.text.strip() else payload
        reference = lookup.model_dump_json() if lookup.found else ""
        return Directive(
            kind=DirectiveKind.card,
            cleaned_text=cleaned,
            reference_text=reference,
            has_reference=lookup.found,
            augmented_text=augment_user_text(CONCEPT_CARD_LABEL, reference, cleaned),
            card_args=args,
        )
