"""Short-term memory data models."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel
from pydantic import Field

from tutorstream.models.schemas import MessageRole


class MemoryEntry(BaseModel):
    """One prior message replayed to the model as conversational context."""

    role: MessageRole
    content: str
    message_id: str | None = Field(
        default=None,
        description="Durable message this entry was loaded from.",
    )


@dataclass(frozen=True, order=True)
class MemoryCursor:
    """High-water mark of durable history already loaded into memory.

    Ordering follows the store's ``(created_at, id)`` ordering.
    """

    created_at: float
    message_id: str

    def as_key(self) -> tuple[float, str]:
        return (self.created_at, self.message_id)
