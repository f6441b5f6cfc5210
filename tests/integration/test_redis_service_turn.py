"""End-to-end turns through the service with Redis-backed state."""

from __future__ import annotations

import pytest

from tests.helpers.fakes import CLIENT_ID
from tests.helpers.fakes import collect
from tests.helpers.fakes import FakeWikipedia
from tests.helpers.fakes import ScriptedProvider
from tests.helpers.fakes import StallingProvider
from tutorstream import service
from tutorstream.config import AuditConfig
from tutorstream.models.events import DeltaEvent
from tutorstream.models.events import DoneEvent
from tutorstream.models.schemas import MessageStatus


@pytest.fixture
async def redis_service(redis_container, tmp_path):
    async def _configure(provider):
        await service.configure(
            redis_container,
            provider=provider,
            wikipedia=FakeWikipedia(),
            audit_config=AuditConfig(file_path=str(tmp_path / "audit.jsonl")),
        )

    yield _configure
    await service.shutdown()


class TestRedisServiceTurn:
    async def test_turn_persists_and_replays_memory(self, redis_service):
        provider = ScriptedProvider(chunks=["Red ", "giants ", "expand."])
        await redis_service(provider)
        cid = (await service.create_conversation(CLIENT_ID)).conversation_id

        first = await service.submit_message(cid, CLIENT_ID, "What is a red giant?")
        events = await collect(service.stream_answer(cid, first.message_id, CLIENT_ID))
        assert isinstance(events[-1], DoneEvent)

        second = await service.submit_message(cid, CLIENT_ID, "Why?")
        await collect(service.stream_answer(cid, second.message_id, CLIENT_ID))

        detail = await service.get_conversation(cid, CLIENT_ID)
        assert [m.status for m in detail.messages] == [MessageStatus.done] * 4
        assert detail.messages[1].content == "Red giants expand."
        assert [e.content for e in provider.requests[1].memory] == [
            "What is a red giant?",
            "Red giants expand.",
        ]

    async def test_client_disconnect_persists_partial_answer(self, redis_service):
        provider = StallingProvider(chunks=["Neutron ", "stars"])
        await redis_service(provider)
        cid = (await service.create_conversation(CLIENT_ID)).conversation_id
        submitted = await service.submit_message(cid, CLIENT_ID, "What is a neutron star?")

        stream = service.stream_answer(cid, submitted.message_id, CLIENT_ID)
        received = []
        async for event in stream:
            if isinstance(event, DeltaEvent):
                received.append(event.text)
            if len(received) == 2:
                break
        await stream.aclose()
        await service._get_orchestrator().drain()

        detail = await service.get_conversation(cid, CLIENT_ID)
        answer = detail.messages[-1]
        assert answer.status == MessageStatus.cancelled
        assert answer.content == "Neutron stars"
        assert provider.closed

    async def test_listing_and_paging_over_redis(self, redis_service):
        provider = ScriptedProvider(chunks=["Because of turbulence."])
        await redis_service(provider)
        older = (await service.create_conversation(CLIENT_ID, title="Older")).conversation_id
        newer = (await service.create_conversation(CLIENT_ID, title="Newer")).conversation_id
        submitted = await service.submit_message(older, CLIENT_ID, "Why do stars twinkle?")
        await collect(service.stream_answer(older, submitted.message_id, CLIENT_ID))

        listing = await service.list_conversations(CLIENT_ID, limit=1)
        assert [c.id for c in listing.items] == [older]
        assert listing.items[0].last_message_preview == "Because of turbulence."
        rest = await service.list_conversations(CLIENT_ID, cursor=listing.next_cursor)
        assert [c.id for c in rest.items] == [newer]

        page = await service.get_conversation(older, CLIENT_ID, limit=1)
        assert [m.role.value for m in page.messages] == ["assistant"]
        previous = await service.get_conversation(
            older, CLIENT_ID, limit=1, before=page.next_before
        )
        assert [m.content for m in previous.messages] == ["Why do stars twinkle?"]
        assert previous.next_before is None
