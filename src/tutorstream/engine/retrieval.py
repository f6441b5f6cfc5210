"""Retrieval collaborators and the tool wrappers the turn pipeline calls.

Backends (Wikipedia search, vector search, concept cards) are plain
synchronous protocols; callers run them off the event loop.  The tool
wrappers normalize backend output into ``RetrievalResult`` and never
raise: a failing backend yields an empty result.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Protocol
from typing import runtime_checkable
from urllib.error import URLError
from urllib.parse import urlencode
from urllib.request import Request
from urllib.request import urlopen

from pydantic import BaseModel

from tutorstream.engine.citations import truncate_excerpt
from tutorstream.models.schemas import Citation
from tutorstream.models.schemas import ConceptCard
from tutorstream.models.schemas import RetrievalResult

logger = logging.getLogger(__name__)

KB_DEFAULT_SOURCE = "KnowledgeBase"

# ---------------------------------------------------------------------------
# Backend protocols
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Document:
    """A chunk returned by vector similarity search."""

    text: str | None
    id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class WikipediaSearch(Protocol):
    def fetch_for_query(self, query: str) -> RetrievalResult: ...


@runtime_checkable
class VectorSearch(Protocol):
    def similarity_search(self, query: str, top_k: int) -> list[Document]: ...


@runtime_checkable
class ConceptCardService(Protocol):
    def lookup(
        self,
        card_type: str,
        lang: str,
        key: str | None,
        text: str | None,
    ) -> ConceptCard | None: ...


# ---------------------------------------------------------------------------
# Wikipedia REST client
# ---------------------------------------------------------------------------

_SEARCH_MATCH_RE = re.compile(r"</?span[^>]*>")


class WikipediaClient:
    """MediaWiki REST page search returning short excerpts."""

    SEARCH_URL = "https://en.wikipedia.org/w/rest.php/v1/search/page"
    USER_AGENT = "tutorstream/0.1 (tutoring chat backend)"

    def __init__(
        self,
        *,
        max_results: int = 2,
        max_chars_per_result: int = 500,
        timeout_seconds: float = 10.0,
        search_url: str | None = None,
    ) -> None:
        self._max_results = max_results
        self._max_chars = max_chars_per_result
        self._timeout = timeout_seconds
        self._search_url = search_url or self.SEARCH_URL

    def fetch_for_query(self, query: str) -> RetrievalResult:
        if not query or not query.strip():
            return RetrievalResult.empty()
        params = urlencode({"q": query.strip(), "limit": self._max_results})
        try:
            data = self._get_json(f"{self._search_url}?{params}")
        except (URLError, OSError, ValueError) as exc:
            logger.warning("Wikipedia search failed query=%r error=%s", query, exc)
            return RetrievalResult.empty()
        return self._parse(data)

    def _get_json(self, url: str) -> Any:
        request = Request(url, headers={"User-Agent": self.USER_AGENT}, method="GET")
        with urlopen(request, timeout=self._timeout) as response:
            return json.loads(response.read().decode("utf-8"))

    def _parse(self, data: Any) -> RetrievalResult:
        pages = data.get("pages") if isinstance(data, dict) else None
        if not isinstance(pages, list):
            return RetrievalResult.empty()

        citations: list[Citation] = []
        excerpts: list[str] = []
        for page in pages:
            if not isinstance(page, dict):
                continue
            title = str(page.get("title") or "").strip()
            if not title:
                continue
            excerpt = _SEARCH_MATCH_RE.sub("", str(page.get("excerpt") or ""))
            excerpt = truncate_excerpt(excerpt, self._max_chars)
            citations.append(
                Citation(
                    chunk_id=f"wiki_{title.replace(' ', '_')}_{len(citations)}",
                    source=f"Wikipedia: {title}",
                    excerpt=excerpt,
                )
            )
            excerpts.append(excerpt)
        return RetrievalResult(
            reference_text="\n\n".join(excerpts).strip(),
            citations=citations,
        )


# ---------------------------------------------------------------------------
# Tool wrappers
# ---------------------------------------------------------------------------


class WikipediaTool:
    def __init__(self, search: WikipediaSearch | None) -> None:
        self._search = search

    def search(self, query: str) -> RetrievalResult:
        if self._search is None or not query.strip():
            return RetrievalResult.empty()
        try:
            return self._search.fetch_for_query(query)
        except Exception:
            logger.exception("Wikipedia retrieval failed query=%r", query)
            return RetrievalResult.empty()


class KnowledgeBaseTool:
    """Vector search rendered as numbered ``[KB-n]`` reference lines."""

    def __init__(
        self,
        vector_search: VectorSearch | None,
        *,
        default_top_k: int = 8,
        excerpt_max_chars: int = 300,
    ) -> None:
        self._vector_search = vector_search
        self._default_top_k = default_top_k
        self._excerpt_max_chars = excerpt_max_chars

    def search(self, query: str, top_k: int | None = None) -> RetrievalResult:
        if self._vector_search is None or not query.strip():
            return RetrievalResult.empty()
        k = top_k if top_k is not None and top_k > 0 else self._default_top_k
        try:
            documents = self._vector_search.similarity_search(query, k)
        except Exception:
            logger.exception("Knowledge base retrieval failed query=%r", query)
            return RetrievalResult.empty()

        lines: list[str] = []
        citations: list[Citation] = []
        for i, doc in enumerate(documents or ()):
            if doc is None or not (doc.text or "").strip():
                continue
            source = str(doc.metadata.get("source") or "").strip() or KB_DEFAULT_SOURCE
            excerpt = truncate_excerpt(doc.text or "", self._excerpt_max_chars)
            citations.append(
                Citation(chunk_id=doc.id or f"kb_{i}", source=source, excerpt=excerpt)
            )
            lines.append(f"[KB-{i + 1}] {excerpt}\n")
        return RetrievalResult(reference_text="".join(lines), citations=citations)


class ConceptCardLookup(BaseModel):
    """Lookup outcome rendered as the reference block of a ``@card`` turn."""

    found: bool
    type: str
    lang: str
    key: str | None = None
    text: str | None = None
    card: ConceptCard | None = None


class ConceptCardTool:
    def __init__(self, service: ConceptCardService | None) -> None:
        self._service = service

    def lookup(
        self,
        card_type: str,
        lang: str,
        key: str | None = None,
        text: str | None = None,
    ) -> ConceptCardLookup:
        card: ConceptCard | None = None
        if self._service is not None:
            try:
                card = self._service.lookup(card_type, lang, key, text)
            except Exception:
                logger.exception(
                    "Concept card lookup failed type=%s lang=%s key=%s",
                    card_type,
                    lang,
                    key,
                )
        return ConceptCardLookup(
            found=card is not None,
            type=card_type,
            lang=lang,
            key=key,
            text=text,
            card=card,
        )
