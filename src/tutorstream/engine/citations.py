"""Citation builder: flattens retrieved snippets into one ordered list."""

from __future__ import annotations

from collections.abc import Iterable
from collections.abc import Sequence
from dataclasses import dataclass

from tutorstream.models.schemas import Citation

UNKNOWN_SOURCE = "Unknown"
DEFAULT_EXCERPT_MAX_CHARS = 500


@dataclass(frozen=True)
class CitationCandidate:
    """A retrieved snippet before normalization."""

    text: str | None
    source: str | None = None
    chunk_id: str | None = None
    id: str | None = None


def truncate_excerpt(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def candidates_from_citations(citations: Iterable[Citation]) -> list[CitationCandidate]:
    return [
        CitationCandidate(text=c.excerpt, source=c.source, chunk_id=c.chunk_id)
        for c in citations
    ]


def merge_citations(
    groups: Iterable[Sequence[CitationCandidate]],
    *,
    start_index: int = 0,
    max_excerpt_chars: int = DEFAULT_EXCERPT_MAX_CHARS,
) -> list[Citation]:
    """Concatenate candidate groups in the given order.

    Blank candidates are dropped and do not advance the running index
    used for synthesized ``chunk_<i>`` identifiers.  No re-ranking.
    """
    merged: list[Citation] = []
    index = start_index
    for group in groups:
        for candidate in group:
            text = candidate.text or ""
            if not text.strip():
                continue
            source = candidate.source if candidate.source and candidate.source.strip() else UNKNOWN_SOURCE
            chunk_id = candidate.chunk_id or candidate.id or f"chunk_{index}"
            merged.append(
                Citation(
                    chunk_id=chunk_id,
                    source=source,
                    excerpt=truncate_excerpt(text, max_excerpt_chars),
                )
            )
            index += 1
    return merged
