"""Model stream provider abstraction."""

from __future__ import annotations

from collections.abc import AsyncIterator
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from typing import Protocol
from typing import runtime_checkable

from tutorstream.memory.schemas import MemoryEntry


class LLMError(Exception):
    """Raised by stream providers when generation fails."""


@dataclass(frozen=True)
class ProviderUsage:
    """Exact token counts reported by the provider."""

    prompt_tokens: int
    completion_tokens: int


@dataclass(frozen=True)
class StreamChunk:
    """One piece of generated text.

    The final chunk may carry ``usage`` and an empty ``text``.
    """

    text: str = ""
    usage: ProviderUsage | None = None


@dataclass(frozen=True)
class GenerationRequest:
    system_prompt: str
    user_text: str
    max_tokens: int | None = None
    memory: Sequence[MemoryEntry] = field(default_factory=tuple)
    model: str | None = None


@runtime_checkable
class ModelStreamProvider(Protocol):
    """Produces text chunks for one generation request.

    Failures surface as a single exception (normally ``LLMError``) raised
    from the iterator.
    """

    def stream(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]: ...
