"""Pydantic models for conversations, messages and retrieval payloads.

Stored records (``Conversation``, ``Message``) round-trip through the
store backends as JSON.  Input models validate submission arguments;
result models shape what the service hands back.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Literal

from pydantic import BaseModel
from pydantic import Field

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class MessageRole(str, Enum):
    """Author of a message within a turn."""

    user = "user"
    assistant = "assistant"


class MessageStatus(str, Enum):
    """Lifecycle of a message.

    Assistant messages move ``queued -> streaming -> done|error|cancelled``.
    User messages are stored directly as ``done``.
    """

    queued = "queued"
    streaming = "streaming"
    done = "done"
    error = "error"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {MessageStatus.done, MessageStatus.error, MessageStatus.cancelled}
)


class ErrorCode(str, Enum):
    """Error codes surfaced on ``error`` events and rejected results."""

    invalid_argument = "invalid_argument"
    validation_error = "validation_error"
    not_found = "not_found"
    forbidden = "forbidden"
    rate_limited = "rate_limited"
    provider_error = "provider_error"
    storage_error = "storage_error"


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------


def _short_hex() -> str:
    return uuid.uuid4().hex[:16]


def new_conversation_id() -> str:
    return f"conv_{_short_hex()}"


def new_message_id() -> str:
    return f"msg_{_short_hex()}"


def new_request_id() -> str:
    """Correlation identifier attached to one streamed turn."""
    return f"req_{_short_hex()}"


def assistant_message_id(user_message_id: str) -> str:
    """Deterministic id of the assistant reply paired with a user message."""
    return f"{user_message_id}_a"


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------


class Conversation(BaseModel):
    """A tutoring conversation owned by one client."""

    id: str = Field(default_factory=new_conversation_id)
    client_id: str = Field(
        description="Opaque client identity (device or session id).",
    )
    title: str | None = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


class Message(BaseModel):
    """One user or assistant message."""

    id: str = Field(default_factory=new_message_id)
    conversation_id: str
    role: MessageRole
    content: str = ""
    difficulty: str | None = None
    language: str | None = None
    status: MessageStatus = MessageStatus.done
    error_code: str | None = None
    error_message: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    estimated_cost_usd: float | None = None
    client_message_id: str | None = Field(
        default=None,
        description="Client-supplied idempotency key for retried submissions.",
    )
    created_at: float = Field(default_factory=time.time)

    @property
    def sort_key(self) -> tuple[float, str]:
        return (self.created_at, self.id)


# ---------------------------------------------------------------------------
# Retrieval payloads
# ---------------------------------------------------------------------------


class Citation(BaseModel):
    """A normalized reference to a retrieved snippet."""

    chunk_id: str
    source: str
    excerpt: str


class RetrievalResult(BaseModel):
    """Reference text plus candidate citations returned by a collaborator."""

    reference_text: str = ""
    citations: list[Citation] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> RetrievalResult:
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.reference_text.strip() and not self.citations


class CardDetail(BaseModel):
    label: str
    value: str


class ConceptCard(BaseModel):
    """Short structured explanation of a term or symbol."""

    key: str
    title: str
    short: str = Field(description="One to three sentence definition.")
    details: list[CardDetail] = Field(default_factory=list)
    see_also: list[str] = Field(default_factory=list)


class TokenUsage(BaseModel):
    """Token counts and cost of one generated answer."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    estimated_cost_usd: float = 0.0


# ---------------------------------------------------------------------------
# Input / result models
# ---------------------------------------------------------------------------


class SubmitMessageInput(BaseModel):
    """Input for ``submit_message``."""

    content: str = Field(
        min_length=1,
        max_length=4000,
        description="User question, 1 to 4000 characters.",
    )
    difficulty: Literal["basic", "intermediate", "advanced"] | None = None
    language: Literal["en", "zh"] | None = None
    client_message_id: str | None = None


class SubmitMessageResult(BaseModel):
    """Output of ``submit_message``."""

    message_id: str = ""
    stream_url: str = ""
    status: Literal["queued", "rejected"] = "queued"
    error_code: ErrorCode | None = None
    message: str | None = None


class CreateConversationResult(BaseModel):
    """Output of ``create_conversation``."""

    conversation_id: str = ""
    status: Literal["created", "rejected"] = "created"
    error_code: ErrorCode | None = None
    message: str | None = None


class ConversationDetail(BaseModel):
    """Output of ``get_conversation``: the conversation and its ordered messages."""

    conversation: Conversation | None = None
    messages: list[Message] = Field(default_factory=list)
    status: Literal["ok", "rejected"] = "ok"
    error_code: ErrorCode | None = None
    message: str | None = None
    next_before: str | None = Field(
        default=None,
        description="Pass as ``before`` to fetch the next older page; absent on the last page.",
    )


class ConversationSummary(BaseModel):
    """One row of ``list_conversations``."""

    id: str
    title: str | None = None
    created_at: float
    updated_at: float
    last_message_preview: str | None = None


class ConversationList(BaseModel):
    """Output of ``list_conversations``: newest-updated conversations first."""

    items: list[ConversationSummary] = Field(default_factory=list)
    next_cursor: str | None = Field(
        default=None,
        description="Pass as ``cursor`` to fetch the next page; absent on the last page.",
    )
    status: Literal["ok", "rejected"] = "ok"
    error_code: ErrorCode | None = None
    message: str | None = None
