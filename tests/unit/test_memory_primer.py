"""Unit tests for chat memory, cursors and the memory primer."""

from __future__ import annotations

import asyncio

import pytest

from tutorstream.config import MemoryConfig
from tutorstream.memory.chat_memory import InMemoryChatMemory
from tutorstream.memory.primer import MemoryPrimer
from tutorstream.memory.primer import PrimeStrategy
from tutorstream.memory.primer import to_memory_entries
from tutorstream.memory.schemas import MemoryCursor
from tutorstream.memory.schemas import MemoryEntry
from tutorstream.models.schemas import Message
from tutorstream.models.schemas import MessageRole
from tutorstream.models.schemas import MessageStatus
from tutorstream.store.memory_store import InMemoryConversationStore

CONV = "conv_mem"


async def _save_pair(store, index: int, created_at: float, *, answered: bool = True):
    user = Message(
        id=f"msg_{index:03d}",
        conversation_id=CONV,
        role=MessageRole.user,
        content=f"question {index}",
        created_at=created_at,
    )
    assistant = Message(
        id=f"msg_{index:03d}_a",
        conversation_id=CONV,
        role=MessageRole.assistant,
        content=f"answer {index}" if answered else "",
        status=MessageStatus.done if answered else MessageStatus.queued,
        created_at=created_at,
    )
    await store.save_message(user)
    await store.save_message(assistant)
    return user, assistant


def _primer(store, memory=None, *, max_rounds: int = 10):
    config = MemoryConfig(max_rounds=max_rounds)
    memory = memory or InMemoryChatMemory(max_entries=config.history_limit)
    return MemoryPrimer(store, memory, config), memory


# ---------------------------------------------------------------------------
# Chat memory
# ---------------------------------------------------------------------------


def _entries(*contents: str) -> list[MemoryEntry]:
    return [MemoryEntry(role=MessageRole.user, content=c) for c in contents]


class TestInMemoryChatMemory:
    async def test_keeps_newest_entries(self):
        memory = InMemoryChatMemory(max_entries=2)
        cursor = MemoryCursor(created_at=1.0, message_id="c")
        assert await memory.append(CONV, _entries("0", "1", "2"), expected=None, cursor=cursor)
        assert [e.content for e in await memory.get(CONV)] == ["1", "2"]
        assert await memory.get_cursor(CONV) == cursor

    async def test_append_requires_expected_cursor(self):
        memory = InMemoryChatMemory()
        first = MemoryCursor(created_at=1.0, message_id="a")
        second = MemoryCursor(created_at=2.0, message_id="b")
        await memory.append(CONV, _entries("a"), expected=None, cursor=first)

        assert not await memory.append(CONV, _entries("x"), expected=None, cursor=second)
        assert await memory.append(CONV, _entries("b"), expected=first, cursor=second)
        assert not await memory.append(CONV, _entries("y"), expected=first, cursor=second)

        assert [e.content for e in await memory.get(CONV)] == ["a", "b"]
        assert await memory.get_cursor(CONV) == second

    async def test_empty_append_still_moves_cursor(self):
        memory = InMemoryChatMemory()
        cursor = MemoryCursor(created_at=1.0, message_id="q")
        assert await memory.append(CONV, [], expected=None, cursor=cursor)
        assert await memory.get(CONV) == []
        assert await memory.get_cursor(CONV) == cursor

    async def test_clear_and_isolation(self):
        memory = InMemoryChatMemory()
        cursor = MemoryCursor(created_at=1.0, message_id="a")
        await memory.append(CONV, _entries("a"), expected=None, cursor=cursor)
        await memory.append("other", _entries("b"), expected=None, cursor=cursor)
        await memory.clear(CONV)
        assert await memory.get(CONV) == []
        assert await memory.get_cursor(CONV) is None
        assert len(await memory.get("other")) == 1
        assert await memory.get_cursor("other") == cursor

    def test_rejects_non_positive_window(self):
        with pytest.raises(ValueError):
            InMemoryChatMemory(max_entries=0)


class TestCursorOrdering:
    def test_ties_break_on_message_id(self):
        question = MemoryCursor(created_at=1.0, message_id="msg_1")
        answer = MemoryCursor(created_at=1.0, message_id="msg_1_a")
        assert question < answer
        assert answer.as_key() == (1.0, "msg_1_a")


# ---------------------------------------------------------------------------
# Primer
# ---------------------------------------------------------------------------


class TestToMemoryEntries:
    def test_skips_blank_and_queued_assistant(self):
        messages = [
            Message(id="u", conversation_id=CONV, role=MessageRole.user, content="hi"),
            Message(id="b", conversation_id=CONV, role=MessageRole.user, content="  "),
            Message(
                id="q",
                conversation_id=CONV,
                role=MessageRole.assistant,
                content="partial",
                status=MessageStatus.queued,
            ),
            Message(
                id="e",
                conversation_id=CONV,
                role=MessageRole.assistant,
                content="partial answer",
                status=MessageStatus.error,
            ),
        ]
        assert [e.message_id for e in to_memory_entries(messages)] == ["u", "e"]


class TestMemoryPrimer:
    async def test_first_turn_rebuilds_from_history(self):
        store = InMemoryConversationStore()
        await _save_pair(store, 1, 10.0)
        await _save_pair(store, 2, 20.0)
        primer, memory = _primer(store)

        result = await primer.prime(CONV, 30.0)

        assert result.strategy == PrimeStrategy.rebuild
        assert result.loaded == 4
        assert [e.content for e in await memory.get(CONV)] == [
            "question 1",
            "answer 1",
            "question 2",
            "answer 2",
        ]
        expected = MemoryCursor(created_at=20.0, message_id="msg_002_a")
        assert await memory.get_cursor(CONV) == expected

    async def test_never_loads_current_or_later_messages(self):
        store = InMemoryConversationStore()
        await _save_pair(store, 1, 10.0)
        await _save_pair(store, 2, 20.0, answered=False)
        primer, memory = _primer(store)

        await primer.prime(CONV, 20.0)

        assert [e.message_id for e in await memory.get(CONV)] == ["msg_001", "msg_001_a"]

    async def test_next_turn_loads_only_the_delta(self):
        store = InMemoryConversationStore()
        await _save_pair(store, 1, 10.0)
        primer, memory = _primer(store)
        await primer.prime(CONV, 20.0)

        await _save_pair(store, 2, 20.0)
        result = await primer.prime(CONV, 30.0)

        assert result.strategy == PrimeStrategy.incremental
        assert result.loaded == 2
        contents = [e.content for e in await memory.get(CONV)]
        assert contents == ["question 1", "answer 1", "question 2", "answer 2"]

    async def test_repeated_prime_adds_nothing(self):
        store = InMemoryConversationStore()
        await _save_pair(store, 1, 10.0)
        primer, memory = _primer(store)
        await primer.prime(CONV, 20.0)

        result = await primer.prime(CONV, 20.0)

        assert result.strategy == PrimeStrategy.incremental
        assert result.loaded == 0
        assert len(await memory.get(CONV)) == 2

    async def test_older_turn_forces_rebuild(self):
        store = InMemoryConversationStore()
        await _save_pair(store, 1, 10.0)
        await _save_pair(store, 2, 20.0)
        await _save_pair(store, 3, 30.0)
        primer, memory = _primer(store)
        await primer.prime(CONV, 40.0)

        result = await primer.prime(CONV, 20.0)

        assert result.strategy == PrimeStrategy.rebuild
        assert [e.message_id for e in await memory.get(CONV)] == ["msg_001", "msg_001_a"]
        assert (await memory.get_cursor(CONV)).created_at == 10.0

    async def test_lost_memory_forces_rebuild(self):
        store = InMemoryConversationStore()
        await _save_pair(store, 1, 10.0)
        primer, memory = _primer(store)
        await primer.prime(CONV, 20.0)
        await memory.clear(CONV)

        result = await primer.prime(CONV, 20.0)

        assert result.strategy == PrimeStrategy.rebuild
        assert len(await memory.get(CONV)) == 2

    async def test_rebuild_keeps_latest_history_window(self):
        store = InMemoryConversationStore()
        for i in range(1, 5):
            await _save_pair(store, i, float(i * 10))
        primer, memory = _primer(store, max_rounds=2)

        await primer.prime(CONV, 100.0)

        assert [e.content for e in await memory.get(CONV)] == [
            "question 3",
            "answer 3",
            "question 4",
            "answer 4",
        ]

    async def test_empty_history(self):
        primer, memory = _primer(InMemoryConversationStore())
        result = await primer.prime(CONV, 10.0)
        assert result.loaded == 0
        assert result.cursor is None
        assert await memory.get(CONV) == []
        assert await memory.get_cursor(CONV) is None


class _InterleavingMemory(InMemoryChatMemory):
    """Runs another primer just before the first append lands."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.before_first_append = None

    async def append(self, conversation_id, entries, *, expected, cursor):
        hook, self.before_first_append = self.before_first_append, None
        if hook is not None:
            await hook()
        return await super().append(conversation_id, entries, expected=expected, cursor=cursor)


class TestSharedMemory:
    async def test_primers_sharing_memory_load_each_message_once(self):
        store = InMemoryConversationStore()
        for i in range(1, 4):
            await _save_pair(store, i, float(i * 10))
        memory = InMemoryChatMemory(max_entries=20)
        worker_a, _ = _primer(store, memory)
        worker_b, _ = _primer(store, memory)

        await worker_a.prime(CONV, 20.0)
        await worker_b.prime(CONV, 30.0)
        await worker_a.prime(CONV, 40.0)

        ids = [e.message_id for e in await memory.get(CONV)]
        assert ids == [
            "msg_001",
            "msg_001_a",
            "msg_002",
            "msg_002_a",
            "msg_003",
            "msg_003_a",
        ]

    async def test_concurrent_move_restarts_priming(self):
        store = InMemoryConversationStore()
        await _save_pair(store, 1, 10.0)
        await _save_pair(store, 2, 20.0)
        memory = _InterleavingMemory(max_entries=20)
        worker_a, _ = _primer(store, memory)
        worker_b, _ = _primer(store, memory)
        await worker_a.prime(CONV, 20.0)

        async def other_worker():
            await worker_b.prime(CONV, 30.0)

        memory.before_first_append = other_worker
        result = await worker_a.prime(CONV, 30.0)

        assert result.strategy == PrimeStrategy.incremental
        assert result.loaded == 0
        ids = [e.message_id for e in await memory.get(CONV)]
        assert ids == ["msg_001", "msg_001_a", "msg_002", "msg_002_a"]

    async def test_concurrent_first_turns_do_not_duplicate(self):
        store = InMemoryConversationStore()
        await _save_pair(store, 1, 10.0)
        memory = InMemoryChatMemory(max_entries=20)
        worker_a, _ = _primer(store, memory)
        worker_b, _ = _primer(store, memory)

        await asyncio.gather(worker_a.prime(CONV, 20.0), worker_b.prime(CONV, 20.0))

        ids = [e.message_id for e in await memory.get(CONV)]
        assert ids == ["msg_001", "msg_001_a"]
