"""Memory primer: keeps chat memory in step with durable history.

Before each turn the primer makes chat memory reflect every stored
message older than the current turn, using the cursor kept next to the
memory window to load only what is new.  It falls back to a full rebuild
when there is no cursor, memory is empty, or the current turn predates
the cursor.

Appends are conditional on the cursor the primer started from.  When
another primer (in this process or another one sharing the backend)
moved the cursor first, the attempt is discarded and priming restarts
from the new state.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from tutorstream.config import MemoryConfig
from tutorstream.memory.chat_memory import ChatMemory
from tutorstream.memory.schemas import MemoryCursor
from tutorstream.memory.schemas import MemoryEntry
from tutorstream.models.schemas import Message
from tutorstream.models.schemas import MessageRole
from tutorstream.models.schemas import MessageStatus
from tutorstream.store.base import ConversationStore

logger = logging.getLogger(__name__)

_MAX_PRIME_ATTEMPTS = 3


class PrimeStrategy(str, Enum):
    rebuild = "rebuild"
    incremental = "incremental"


@dataclass(frozen=True)
class PrimeResult:
    strategy: PrimeStrategy
    loaded: int
    cursor: MemoryCursor | None


def to_memory_entries(messages: Iterable[Message]) -> list[MemoryEntry]:
    """Convert stored messages, skipping blanks and unanswered placeholders."""
    entries: list[MemoryEntry] = []
    for message in messages:
        if not message.content.strip():
            continue
        if (
            message.role == MessageRole.assistant
            and message.status == MessageStatus.queued
        ):
            continue
        entries.append(
            MemoryEntry(
                role=message.role,
                content=message.content,
                message_id=message.id,
            )
        )
    return entries


def _cursor_after(messages: list[Message]) -> MemoryCursor:
    last = messages[-1]
    return MemoryCursor(created_at=last.created_at, message_id=last.id)


class MemoryPrimer:
    """Primes chat memory from the conversation store."""

    def __init__(
        self,
        store: ConversationStore,
        memory: ChatMemory,
        config: MemoryConfig | None = None,
    ) -> None:
        self._store = store
        self._memory = memory
        self._config = config or MemoryConfig()

    async def prime(self, conversation_id: str, current_created_at: float) -> PrimeResult:
        """Load history strictly older than ``current_created_at`` into memory."""
        for attempt in range(1, _MAX_PRIME_ATTEMPTS + 1):
            cursor = await self._memory.get_cursor(conversation_id)
            existing = await self._memory.get(conversation_id)
            if (
                cursor is None
                or not existing
                or current_created_at < cursor.created_at
            ):
                result = await self._rebuild(conversation_id, current_created_at)
            else:
                result = await self._incremental(conversation_id, current_created_at, cursor)
            if result is not None:
                return result
            logger.debug(
                "Memory cursor moved while priming conversation=%s attempt=%d",
                conversation_id,
                attempt,
            )

        logger.warning(
            "Gave up priming chat memory conversation=%s attempts=%d",
            conversation_id,
            _MAX_PRIME_ATTEMPTS,
        )
        return PrimeResult(
            PrimeStrategy.incremental, 0, await self._memory.get_cursor(conversation_id)
        )

    async def _rebuild(
        self, conversation_id: str, current_created_at: float
    ) -> PrimeResult | None:
        await self._memory.clear(conversation_id)
        history = await self._store.query_messages(
            conversation_id,
            before=current_created_at,
            limit=self._config.history_limit,
            tail=True,
        )
        if not history:
            return PrimeResult(PrimeStrategy.rebuild, 0, None)
        cursor = _cursor_after(history)
        applied = await self._memory.append(
            conversation_id, to_memory_entries(history), expected=None, cursor=cursor
        )
        if not applied:
            return None
        logger.debug(
            "Rebuilt chat memory conversation=%s scanned=%d",
            conversation_id,
            len(history),
        )
        return PrimeResult(PrimeStrategy.rebuild, len(history), cursor)

    async def _incremental(
        self,
        conversation_id: str,
        current_created_at: float,
        cursor: MemoryCursor,
    ) -> PrimeResult | None:
        delta = await self._store.query_messages(
            conversation_id,
            before=current_created_at,
            after=cursor.as_key(),
            limit=self._config.history_limit,
        )
        if not delta:
            return PrimeResult(PrimeStrategy.incremental, 0, cursor)
        new_cursor = _cursor_after(delta)
        applied = await self._memory.append(
            conversation_id, to_memory_entries(delta), expected=cursor, cursor=new_cursor
        )
        if not applied:
            return None
        return PrimeResult(PrimeStrategy.incremental, len(delta), new_cursor)
