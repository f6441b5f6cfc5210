"""Conversation/message store protocol.

The store is the durable source of truth for conversations and messages.
Short-term chat memory is rebuilt from it whenever needed.
"""

from __future__ import annotations

from typing import Protocol
from typing import runtime_checkable

from tutorstream.models.schemas import Conversation
from tutorstream.models.schemas import Message
from tutorstream.models.schemas import MessageStatus
from tutorstream.models.schemas import TokenUsage


@runtime_checkable
class ConversationStore(Protocol):
    """Async key-value CRUD over conversations and messages."""

    async def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    async def save_conversation(self, conversation: Conversation) -> None: ...

    async def list_conversations(
        self,
        client_id: str,
        *,
        before: tuple[float, str] | None = None,
        limit: int | None = None,
    ) -> list[Conversation]:
        """Return the client's conversations, most recently updated first.

        Ordered descending by ``(updated_at, id)``; ``before`` keeps keys
        strictly lower than the given pair.
        """
        ...

    async def get_message(self, message_id: str) -> Message | None: ...

    async def save_message(self, message: Message) -> None: ...

    async def find_by_client_message_id(
        self, conversation_id: str, client_message_id: str
    ) -> Message | None: ...

    async def query_messages(
        self,
        conversation_id: str,
        *,
        before: float | None = None,
        after: tuple[float, str] | None = None,
        limit: int | None = None,
        tail: bool = False,
        before_key: tuple[float, str] | None = None,
    ) -> list[Message]:
        """Return messages ordered ascending by ``(created_at, id)``.

        ``before`` keeps ``created_at < before``; ``after`` keeps keys
        strictly greater than the ``(created_at, id)`` pair and
        ``before_key`` keeps keys strictly lower.  With ``tail`` the
        *last* ``limit`` matches are kept instead of the first.
        """
        ...

    async def mark_streaming(self, message_id: str) -> Message | None:
        """Move a non-terminal message to ``streaming``.

        Returns the updated message, or ``None`` when it is missing or
        already terminal.
        """
        ...

    async def finalize_message(
        self,
        message_id: str,
        *,
        status: MessageStatus,
        content: str,
        error_code: str | None = None,
        error_message: str | None = None,
        usage: TokenUsage | None = None,
    ) -> bool:
        """Write a terminal state unless one was already written.

        Returns ``True`` when this call performed the terminal write.
        """
        ...


def select_window(
    messages: list[Message],
    *,
    before: float | None,
    after: tuple[float, str] | None,
    limit: int | None,
    tail: bool,
    before_key: tuple[float, str] | None = None,
) -> list[Message]:
    """Apply ``query_messages`` bounds to an unordered candidate list."""
    selected = [
        m
        for m in messages
        if (before is None or m.created_at < before)
        and (after is None or m.sort_key > after)
        and (before_key is None or m.sort_key < before_key)
    ]
    selected.sort(key=lambda m: m.sort_key)
    if limit is not None:
        selected = selected[-limit:] if tail else selected[:limit]
    return selected


def conversation_key(conversation: Conversation) -> tuple[float, str]:
    return (conversation.updated_at, conversation.id)


def select_conversations(
    conversations: list[Conversation],
    *,
    before: tuple[float, str] | None,
    limit: int | None,
) -> list[Conversation]:
    """Apply ``list_conversations`` bounds to an unordered candidate list."""
    selected = [
        c for c in conversations if before is None or conversation_key(c) < before
    ]
    selected.sort(key=conversation_key, reverse=True)
    if limit is not None:
        selected = selected[:limit]
    return selected


def apply_terminal(
    message: Message,
    *,
    status: MessageStatus,
    content: str,
    error_code: str | None,
    error_message: str | None,
    usage: TokenUsage | None,
) -> Message:
    """Return a copy of *message* carrying the terminal fields."""
    if not status.is_terminal:
        raise ValueError(f"{status.value} is not a terminal status")
    return message.model_copy(
        update={
            "status": status,
            "content": content,
            "error_code": error_code,
            "error_message": error_message,
            "prompt_tokens": usage.prompt_tokens if usage else None,
            "completion_tokens": usage.completion_tokens if usage else None,
            "estimated_cost_usd": usage.estimated_cost_usd if usage else None,
        }
    )
