"""Short-term conversational memory.

Holds the recent window of a conversation that is replayed to the model,
together with the cursor recording how far durable history has been
loaded into it.  Window and cursor live in the same backend and change
together, so every process sharing a memory also shares its cursor.

The durable store stays authoritative: everything here can be dropped
and rebuilt by the memory primer.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from typing import Protocol
from typing import runtime_checkable

from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.exceptions import WatchError  # type: ignore[import-untyped]

from tutorstream.memory.schemas import MemoryCursor
from tutorstream.memory.schemas import MemoryEntry

logger = logging.getLogger(__name__)

_PREFIX = "tutorstream"
_MEMORY_KEY = f"{_PREFIX}:chat_memory"
_CURSOR_KEY = f"{_PREFIX}:memory_cursor"


@runtime_checkable
class ChatMemory(Protocol):
    """Capped window of memory entries plus a load cursor per conversation."""

    async def get(self, conversation_id: str) -> list[MemoryEntry]: ...

    async def get_cursor(self, conversation_id: str) -> MemoryCursor | None: ...

    async def append(
        self,
        conversation_id: str,
        entries: Sequence[MemoryEntry],
        *,
        expected: MemoryCursor | None,
        cursor: MemoryCursor,
    ) -> bool:
        """Append *entries* and move the cursor to *cursor*.

        Applies only while the stored cursor still equals *expected*;
        returns ``False`` without writing anything otherwise.
        """
        ...

    async def clear(self, conversation_id: str) -> None: ...


class InMemoryChatMemory:
    """Process-local chat memory keeping the last ``max_entries`` per conversation."""

    def __init__(self, max_entries: int = 20) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._max_entries = max_entries
        self._entries: dict[str, list[MemoryEntry]] = {}
        self._cursors: dict[str, MemoryCursor] = {}
        self._lock = asyncio.Lock()

    async def get(self, conversation_id: str) -> list[MemoryEntry]:
        return list(self._entries.get(conversation_id, ()))

    async def get_cursor(self, conversation_id: str) -> MemoryCursor | None:
        return self._cursors.get(conversation_id)

    async def append(
        self,
        conversation_id: str,
        entries: Sequence[MemoryEntry],
        *,
        expected: MemoryCursor | None,
        cursor: MemoryCursor,
    ) -> bool:
        async with self._lock:
            if self._cursors.get(conversation_id) != expected:
                return False
            if entries:
                window = self._entries.setdefault(conversation_id, [])
                window.extend(entries)
                del window[: -self._max_entries]
            self._cursors[conversation_id] = cursor
            return True

    async def clear(self, conversation_id: str) -> None:
        async with self._lock:
            self._entries.pop(conversation_id, None)
            self._cursors.pop(conversation_id, None)


def _dump_cursor(cursor: MemoryCursor) -> str:
    return json.dumps({"created_at": cursor.created_at, "message_id": cursor.message_id})


def _load_cursor(raw: bytes | str | None) -> MemoryCursor | None:
    if raw is None:
        return None
    data = json.loads(raw)
    return MemoryCursor(created_at=float(data["created_at"]), message_id=str(data["message_id"]))


class RedisChatMemory:
    """Chat memory stored as a capped Redis list plus a cursor key.

    Entries live at ``tutorstream:chat_memory:{conversation_id}`` as JSON
    strings (``LTRIM`` keeps the newest ``max_entries``); the cursor lives
    at ``tutorstream:memory_cursor:{conversation_id}``.  ``append`` runs
    under ``WATCH`` on the cursor key so concurrent primers never load the
    same message twice.
    """

    def __init__(self, redis: Redis, *, max_entries: int = 20, ttl: int = 86400) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._redis = redis
        self._max_entries = max_entries
        self._ttl = ttl

    async def get(self, conversation_id: str) -> list[MemoryEntry]:
        raw_entries = await self._redis.lrange(f"{_MEMORY_KEY}:{conversation_id}", 0, -1)
        return [MemoryEntry.model_validate_json(raw) for raw in raw_entries]

    async def get_cursor(self, conversation_id: str) -> MemoryCursor | None:
        return _load_cursor(await self._redis.get(f"{_CURSOR_KEY}:{conversation_id}"))

    async def append(
        self,
        conversation_id: str,
        entries: Sequence[MemoryEntry],
        *,
        expected: MemoryCursor | None,
        cursor: MemoryCursor,
    ) -> bool:
        list_key = f"{_MEMORY_KEY}:{conversation_id}"
        cursor_key = f"{_CURSOR_KEY}:{conversation_id}"
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(cursor_key)
                current = _load_cursor(await pipe.get(cursor_key))
                if current != expected:
                    await pipe.reset()
                    return False
                pipe.multi()
                if entries:
                    pipe.rpush(list_key, *(entry.model_dump_json() for entry in entries))
                    pipe.ltrim(list_key, -self._max_entries, -1)
                    pipe.expire(list_key, self._ttl)
                pipe.set(cursor_key, _dump_cursor(cursor), ex=self._ttl)
                await pipe.execute()
                return True
            except WatchError:
                logger.debug("Memory cursor moved concurrently conversation=%s", conversation_id)
                return False

    async def clear(self, conversation_id: str) -> None:
        await self._redis.delete(
            f"{_MEMORY_KEY}:{conversation_id}",
            f"{_CURSOR_KEY}:{conversation_id}",
        )
