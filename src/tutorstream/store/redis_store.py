"""Redis-backed conversation store.

Records are stored as JSON strings keyed by ``tutorstream:message:{id}``
and ``tutorstream:conversation:{id}``.  A sorted set per conversation,
``tutorstream:conv_messages:{conversation_id}``, scores message ids by
``created_at``; members with equal scores sort by id, which gives the
``(created_at, id)`` order the memory primer relies on.  The hash
``tutorstream:client_msg:{conversation_id}`` maps idempotency keys to
user message ids, and ``tutorstream:client_conversations:{client_id}``
scores a client's conversation ids by ``updated_at``.
"""

from __future__ import annotations

import logging

from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.exceptions import WatchError  # type: ignore[import-untyped]

from tutorstream.models.schemas import Conversation
from tutorstream.models.schemas import Message
from tutorstream.models.schemas import MessageStatus
from tutorstream.models.schemas import TokenUsage
from tutorstream.store.base import apply_terminal
from tutorstream.store.base import select_conversations
from tutorstream.store.base import select_window

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key prefixes
# ---------------------------------------------------------------------------

_PREFIX = "tutorstream"
_CONVERSATION_KEY = f"{_PREFIX}:conversation"
_MESSAGE_KEY = f"{_PREFIX}:message"
_CONV_MESSAGES_KEY = f"{_PREFIX}:conv_messages"
_CLIENT_MSG_KEY = f"{_PREFIX}:client_msg"
_CLIENT_CONVERSATIONS_KEY = f"{_PREFIX}:client_conversations"

_CLEAR_BATCH_SIZE = 100
_MAX_CAS_ATTEMPTS = 10


def _decode(raw: bytes | str) -> str:
    return raw.decode() if isinstance(raw, bytes) else raw


class RedisConversationStore:
    """``ConversationStore`` over ``redis.asyncio``."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    # -- conversations --

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        data = await self._redis.get(f"{_CONVERSATION_KEY}:{conversation_id}")
        if data is None:
            return None
        return Conversation.model_validate_json(data)

    async def save_conversation(self, conversation: Conversation) -> None:
        """Write the conversation and re-score it in its client's index."""
        pipe = self._redis.pipeline()
        pipe.set(
            f"{_CONVERSATION_KEY}:{conversation.id}",
            conversation.model_dump_json(),
        )
        pipe.zadd(
            f"{_CLIENT_CONVERSATIONS_KEY}:{conversation.client_id}",
            {conversation.id: conversation.updated_at},
        )
        await pipe.execute()

    async def list_conversations(
        self,
        client_id: str,
        *,
        before: tuple[float, str] | None = None,
        limit: int | None = None,
    ) -> list[Conversation]:
        index_key = f"{_CLIENT_CONVERSATIONS_KEY}:{client_id}"
        # Inclusive bound: ties on updated_at are broken by id below
        max_score: str | float = before[0] if before is not None else "+inf"
        raw_ids = await self._redis.zrevrangebyscore(index_key, max_score, "-inf")
        if not raw_ids:
            return []

        decoded_ids = [_decode(raw_id) for raw_id in raw_ids]
        pipe = self._redis.pipeline()
        for cid in decoded_ids:
            pipe.get(f"{_CONVERSATION_KEY}:{cid}")
        raw_results = await pipe.execute()

        stale_ids: list[str] = []
        conversations: list[Conversation] = []
        for cid, raw in zip(decoded_ids, raw_results):
            if raw is None:
                stale_ids.append(cid)
            else:
                conversations.append(Conversation.model_validate_json(raw))

        if stale_ids:
            logger.warning(
                "Pruning %d stale conversation ids from client=%s",
                len(stale_ids),
                client_id,
            )
            await self._redis.zrem(index_key, *stale_ids)

        return select_conversations(conversations, before=before, limit=limit)

    # -- messages --

    async def get_message(self, message_id: str) -> Message | None:
        data = await self._redis.get(f"{_MESSAGE_KEY}:{message_id}")
        if data is None:
            return None
        return Message.model_validate_json(data)

    async def save_message(self, message: Message) -> None:
        """Write the message and its ordering/idempotency indexes in one pipeline."""
        pipe = self._redis.pipeline()
        pipe.set(f"{_MESSAGE_KEY}:{message.id}", message.model_dump_json())
        pipe.zadd(
            f"{_CONV_MESSAGES_KEY}:{message.conversation_id}",
            {message.id: message.created_at},
        )
        if message.client_message_id:
            pipe.hsetnx(
                f"{_CLIENT_MSG_KEY}:{message.conversation_id}",
                message.client_message_id,
                message.id,
            )
        await pipe.execute()

    async def find_by_client_message_id(
        self, conversation_id: str, client_message_id: str
    ) -> Message | None:
        raw_id = await self._redis.hget(
            f"{_CLIENT_MSG_KEY}:{conversation_id}", client_message_id
        )
        if raw_id is None:
            return None
        return await self.get_message(_decode(raw_id))

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
        index_key = f"{_CONV_MESSAGES_KEY}:{conversation_id}"
        min_score: str | float = after[0] if after is not None else "-inf"
        max_score: str | float = f"({before}" if before is not None else "+inf"
        if before_key is not None and (before is None or before_key[0] < before):
            max_score = before_key[0]
        raw_ids = await self._redis.zrangebyscore(index_key, min_score, max_score)
        if not raw_ids:
            return []

        decoded_ids = [_decode(raw_id) for raw_id in raw_ids]
        pipe = self._redis.pipeline()
        for mid in decoded_ids:
            pipe.get(f"{_MESSAGE_KEY}:{mid}")
        raw_results = await pipe.execute()

        stale_ids: list[str] = []
        messages: list[Message] = []
        for mid, raw in zip(decoded_ids, raw_results):
            if raw is None:
                stale_ids.append(mid)
            else:
                messages.append(Message.model_validate_json(raw))

        if stale_ids:
            logger.warning(
                "Pruning %d stale message ids from conversation=%s",
                len(stale_ids),
                conversation_id,
            )
            await self._redis.zrem(index_key, *stale_ids)

        return select_window(
            messages,
            before=before,
            after=after,
            limit=limit,
            tail=tail,
            before_key=before_key,
        )

    # -- lifecycle transitions --

    async def mark_streaming(self, message_id: str) -> Message | None:
        updated = await self._compare_and_set(
            message_id,
            lambda current: current.model_copy(
                update={"status": MessageStatus.streaming}
            ),
        )
        return updated

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
        updated = await self._compare_and_set(
            message_id,
            lambda current: apply_terminal(
                current,
                status=status,
                content=content,
                error_code=error_code,
                error_message=error_message,
                usage=usage,
            ),
        )
        return updated is not None

    async def _compare_and_set(self, message_id: str, mutate) -> Message | None:
        """Apply *mutate* under ``WATCH`` while the message is non-terminal."""
        key = f"{_MESSAGE_KEY}:{message_id}"
        async with self._redis.pipeline(transaction=True) as pipe:
            for _ in range(_MAX_CAS_ATTEMPTS):
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        await pipe.reset()
                        return None
                    current = Message.model_validate_json(raw)
                    if current.status.is_terminal:
                        await pipe.reset()
                        return None
                    updated = mutate(current)
                    pipe.multi()
                    pipe.set(key, updated.model_dump_json())
                    await pipe.execute()
                    return updated
                except WatchError:
                    logger.debug("Concurrent write on %s, retrying", key)
                    continue
        raise RuntimeError(f"Could not update {key} after {_MAX_CAS_ATTEMPTS} attempts")

    # -- maintenance --

    async def clear(self) -> None:
        """Remove every ``tutorstream:*`` key in batches."""
        batch: list = []
        async for key in self._redis.scan_iter(match=f"{_PREFIX}:*"):
            batch.append(key)
            if len(batch) >= _CLEAR_BATCH_SIZE:
                await self._redis.delete(*batch)
                batch.clear()
        if batch:
            await self._redis.delete(*batch)
