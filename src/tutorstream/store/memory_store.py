"""In-process conversation store.

Dict tables guarded by one ``asyncio.Lock``; used by tests and by
single-process deployments that do not configure Redis.
"""

from __future__ import annotations

import asyncio

from tutorstream.models.schemas import Conversation
from tutorstream.models.schemas import Message
from tutorstream.models.schemas import MessageStatus
from tutorstream.models.schemas import TokenUsage
from tutorstream.store.base import apply_terminal
from tutorstream.store.base import select_conversations
from tutorstream.store.base import select_window


class InMemoryConversationStore:
    """Async dict-backed implementation of ``ConversationStore``."""

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, Message] = {}
        self._lock = asyncio.Lock()

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy() if conversation else None

    async def save_conversation(self, conversation: Conversation) -> None:
        async with self._lock:
            self._conversations[conversation.id] = conversation.model_copy()

    async def list_conversations(
        self,
        client_id: str,
        *,
        before: tuple[float, str] | None = None,
        limit: int | None = None,
    ) -> list[Conversation]:
        candidates = [
            c.model_copy()
            for c in self._conversations.values()
            if c.client_id == client_id
        ]
        return select_conversations(candidates, before=before, limit=limit)

    async def get_message(self, message_id: str) -> Message | None:
        message = self._messages.get(message_id)
        return message.model_copy() if message else None

    async def save_message(self, message: Message) -> None:
        async with self._lock:
            self._messages[message.id] = message.model_copy()

    async def find_by_client_message_id(
        self, conversation_id: str, client_message_id: str
    ) -> Message | None:
        for message in self._messages.values():
            if (
                message.conversation_id == conversation_id
                and message.client_message_id == client_message_id
            ):
                return message.model_copy()
        return None

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
        candidates = [
            m.model_copy()
            for m in self._messages.values()
            if m.conversation_id == conversation_id
        ]
        return select_window(
            candidates,
            before=before,
            after=after,
            limit=limit,
            tail=tail,
            before_key=before_key,
        )

    async def mark_streaming(self, message_id: str) -> Message | None:
        async with self._lock:
            current = self._messages.get(message_id)
            if current is None or current.status.is_terminal:
                return None
            updated = current.model_copy(update={"status": MessageStatus.streaming})
            self._messages[message_id] = updated
            return updated.model_copy()

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
        async with self._lock:
            current = self._messages.get(message_id)
            if current is None or current.status.is_terminal:
                return False
            self._messages[message_id] = apply_terminal(
                current,
                status=status,
                content=content,
                error_code=error_code,
                error_message=error_message,
                usage=usage,
            )
            return True
