"""Service entry points for the tutoring stream backend.

``configure()`` wires the collaborators once per process; the public
coroutines below are what a transport layer (HTTP/SSE routes) calls.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from collections.abc import Callable
from contextlib import aclosing
from time import perf_counter

from pydantic import ValidationError
from redis.asyncio import Redis  # type: ignore[import-untyped]

from tutorstream.audit.store import AuditLogger
from tutorstream.config import AuditConfig
from tutorstream.config import LLMConfig
from tutorstream.config import MemoryConfig
from tutorstream.config import OutputLimitConfig
from tutorstream.config import PricingConfig
from tutorstream.config import RateLimitConfig
from tutorstream.config import RetrievalConfig
from tutorstream.engine.directives import DirectiveResolver
from tutorstream.engine.llm_adapters import build_stream_provider
from tutorstream.engine.orchestrator import StreamOrchestrator
from tutorstream.engine.provider import ModelStreamProvider
from tutorstream.engine.rate_limit import RateGate
from tutorstream.engine.retrieval import ConceptCardService
from tutorstream.engine.retrieval import ConceptCardTool
from tutorstream.engine.retrieval import KnowledgeBaseTool
from tutorstream.engine.retrieval import VectorSearch
from tutorstream.engine.retrieval import WikipediaClient
from tutorstream.engine.retrieval import WikipediaSearch
from tutorstream.engine.retrieval import WikipediaTool
from tutorstream.engine.usage import UsageEstimator
from tutorstream.memory.chat_memory import ChatMemory
from tutorstream.memory.chat_memory import InMemoryChatMemory
from tutorstream.memory.chat_memory import RedisChatMemory
from tutorstream.memory.primer import MemoryPrimer
from tutorstream.models.events import StreamEvent
from tutorstream.models.schemas import assistant_message_id
from tutorstream.models.schemas import Conversation
from tutorstream.models.schemas import ConversationDetail
from tutorstream.models.schemas import ConversationList
from tutorstream.models.schemas import ConversationSummary
from tutorstream.models.schemas import CreateConversationResult
from tutorstream.models.schemas import ErrorCode
from tutorstream.models.schemas import Message
from tutorstream.models.schemas import MessageRole
from tutorstream.models.schemas import MessageStatus
from tutorstream.models.schemas import SubmitMessageInput
from tutorstream.models.schemas import SubmitMessageResult
from tutorstream.observability import record_latency
from tutorstream.store.base import ConversationStore
from tutorstream.store.memory_store import InMemoryConversationStore
from tutorstream.store.redis_store import RedisConversationStore

logger = logging.getLogger(__name__)

STREAM_URL_TEMPLATE = "/api/v0/conversations/{conversation_id}/messages/{message_id}/stream"

LIST_LIMIT_DEFAULT = 20
LIST_LIMIT_MAX = 50
DETAIL_LIMIT_DEFAULT = 50
DETAIL_LIMIT_MAX = 200
PREVIEW_MAX_CHARS = 80
_PREVIEW_SCAN_MESSAGES = 4

# Module-level state, set by configure()
_store: ConversationStore | None = None
_redis: Redis | None = None
_orchestrator: StreamOrchestrator | None = None
_audit_logger: AuditLogger | None = None


async def configure(
    redis_url: str | None = None,
    *,
    store: ConversationStore | None = None,
    provider: ModelStreamProvider | None = None,
    llm_config: LLMConfig | None = None,
    rate_limit_config: RateLimitConfig | None = None,
    memory_config: MemoryConfig | None = None,
    output_limit_config: OutputLimitConfig | None = None,
    pricing_config: PricingConfig | None = None,
    retrieval_config: RetrievalConfig | None = None,
    audit_config: AuditConfig | None = None,
    wikipedia: WikipediaSearch | None = None,
    vector_search: VectorSearch | None = None,
    concept_cards: ConceptCardService | None = None,
    rate_clock: Callable[[], float] | None = None,
) -> None:
    """Initialize stores, memory, retrieval tools and the orchestrator.

    With ``redis_url`` conversations and chat memory live in Redis;
    otherwise both are process-local.  An explicit ``store`` wins over
    ``redis_url`` for conversations.
    """
    global _store, _redis, _orchestrator, _audit_logger
    if _redis is not None:
        try:
            await _redis.aclose()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            pass
        _redis = None

    llm_cfg = llm_config or LLMConfig()
    memory_cfg = memory_config or MemoryConfig()
    retrieval_cfg = retrieval_config or RetrievalConfig()

    memory: ChatMemory
    if redis_url is not None:
        _redis = Redis.from_url(redis_url)
        _store = store or RedisConversationStore(_redis)
        memory = RedisChatMemory(_redis, max_entries=memory_cfg.history_limit)
    else:
        _store = store or InMemoryConversationStore()
        memory = InMemoryChatMemory(max_entries=memory_cfg.history_limit)

    _audit_logger = AuditLogger(audit_config or AuditConfig())

    wikipedia_tool = WikipediaTool(
        wikipedia
        or WikipediaClient(
            max_results=retrieval_cfg.wiki_max_results,
            max_chars_per_result=retrieval_cfg.excerpt_max_chars,
        )
    )
    knowledge_base_tool = KnowledgeBaseTool(
        vector_search,
        default_top_k=retrieval_cfg.kb_default_top_k,
        excerpt_max_chars=retrieval_cfg.kb_excerpt_max_chars,
    )
    resolver = DirectiveResolver(
        wikipedia=wikipedia_tool,
        knowledge_base=knowledge_base_tool,
        concept_cards=ConceptCardTool(concept_cards),
    )
    _orchestrator = StreamOrchestrator(
        store=_store,
        provider=provider or build_stream_provider(llm_cfg),
        memory=memory,
        primer=MemoryPrimer(_store, memory, memory_cfg),
        resolver=resolver,
        wikipedia=wikipedia_tool,
        knowledge_base=knowledge_base_tool,
        rate_gate=RateGate(rate_limit_config, clock=rate_clock),
        usage_estimator=UsageEstimator(pricing_config, memory_cfg),
        audit=_audit_logger,
        llm_config=llm_cfg,
        output_limits=output_limit_config,
        retrieval_config=retrieval_cfg,
    )


async def shutdown() -> None:
    """Wait for pending finalizations and release backend clients."""
    global _store, _redis, _orchestrator, _audit_logger
    if _orchestrator is not None:
        await _orchestrator.drain()
        _orchestrator = None
    if _redis is not None:
        await _redis.aclose()
        _redis = None
    _store = None
    _audit_logger = None


def _get_store() -> ConversationStore:
    if _store is None:
        raise RuntimeError("Service not configured. Call configure() first.")
    return _store


def _get_orchestrator() -> StreamOrchestrator:
    if _orchestrator is None:
        raise RuntimeError("Service not configured. Call configure() first.")
    return _orchestrator


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _validation_message(exc: ValidationError) -> str:
    err = exc.errors()[0] if exc.errors() else {}
    return str(err.get("msg", "Invalid input"))


def _submit_rejected(error_code: ErrorCode, message: str) -> SubmitMessageResult:
    return SubmitMessageResult(status="rejected", error_code=error_code, message=message)


def _detail_rejected(error_code: ErrorCode, message: str) -> ConversationDetail:
    return ConversationDetail(status="rejected", error_code=error_code, message=message)


def _list_rejected(error_code: ErrorCode, message: str) -> ConversationList:
    return ConversationList(status="rejected", error_code=error_code, message=message)


def _clamp(limit: int, maximum: int) -> int:
    return min(max(1, limit), maximum)


def stream_url(conversation_id: str, message_id: str) -> str:
    return STREAM_URL_TEMPLATE.format(
        conversation_id=conversation_id, message_id=message_id
    )


async def _owned_conversation(
    store: ConversationStore, conversation_id: str, client_id: str
) -> Conversation | tuple[ErrorCode, str]:
    if not client_id or not client_id.strip():
        return ErrorCode.invalid_argument, "client_id is required"
    conversation = await store.get_conversation(conversation_id)
    if conversation is None:
        return ErrorCode.not_found, "Conversation not found"
    if conversation.client_id != client_id:
        return ErrorCode.forbidden, "Conversation belongs to another client"
    return conversation


async def _ensure_placeholder(store: ConversationStore, user_message: Message) -> None:
    assistant_id = assistant_message_id(user_message.id)
    if await store.get_message(assistant_id) is not None:
        return
    await store.save_message(
        Message(
            id=assistant_id,
            conversation_id=user_message.conversation_id,
            role=MessageRole.assistant,
            difficulty=user_message.difficulty,
            language=user_message.language,
            status=MessageStatus.queued,
            created_at=user_message.created_at,
        )
    )


async def _last_message_preview(
    store: ConversationStore, conversation_id: str
) -> str | None:
    # The newest rows may be an unanswered placeholder with no content yet
    recent = await store.query_messages(
        conversation_id, limit=_PREVIEW_SCAN_MESSAGES, tail=True
    )
    for message in reversed(recent):
        content = message.content
        if not content.strip():
            continue
        if len(content) > PREVIEW_MAX_CHARS:
            return content[:PREVIEW_MAX_CHARS] + "..."
        return content
    return None


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def create_conversation(
    client_id: str,
    title: str | None = None,
) -> CreateConversationResult:
    """Start a conversation owned by *client_id*."""
    start = perf_counter()
    ok = False
    try:
        store = _get_store()
        if not client_id or not client_id.strip():
            return CreateConversationResult(
                status="rejected",
                error_code=ErrorCode.invalid_argument,
                message="client_id is required",
            )
        conversation = Conversation(client_id=client_id, title=title)
        await store.save_conversation(conversation)
        ok = True
        return CreateConversationResult(conversation_id=conversation.id)
    finally:
        record_latency(
            operation="service.create_conversation",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


async def submit_message(
    conversation_id: str,
    client_id: str,
    content: str,
    difficulty: str | None = None,
    language: str | None = None,
    client_message_id: str | None = None,
) -> SubmitMessageResult:
    """Store a user question and queue its assistant answer.

    Args:
        conversation_id: Target conversation.
        client_id: Caller identity; must own the conversation.
        content: Question text, 1 to 4000 characters.
        difficulty: basic, intermediate or advanced.
        language: en or zh.
        client_message_id: Optional idempotency key for client retries.
    """
    start = perf_counter()
    ok = False
    try:
        store = _get_store()

        try:
            validated = SubmitMessageInput.model_validate(
                {
                    "content": content,
                    "difficulty": difficulty,
                    "language": language,
                    "client_message_id": client_message_id,
                }
            )
        except ValidationError as exc:
            return _submit_rejected(ErrorCode.validation_error, _validation_message(exc))
        if not validated.content.strip():
            return _submit_rejected(ErrorCode.validation_error, "content must not be blank")

        owned = await _owned_conversation(store, conversation_id, client_id)
        if isinstance(owned, tuple):
            return _submit_rejected(*owned)
        conversation = owned

        if validated.client_message_id:
            existing = await store.find_by_client_message_id(
                conversation_id, validated.client_message_id
            )
            if existing is not None and existing.content == validated.content:
                await _ensure_placeholder(store, existing)
                logger.info(
                    "Replayed submission conversation=%s message=%s",
                    conversation_id,
                    existing.id,
                )
                ok = True
                return SubmitMessageResult(
                    message_id=existing.id,
                    stream_url=stream_url(conversation_id, existing.id),
                )

        now = time.time()
        user_message = Message(
            conversation_id=conversation_id,
            role=MessageRole.user,
            content=validated.content,
            difficulty=validated.difficulty or "intermediate",
            language=validated.language or "en",
            status=MessageStatus.done,
            client_message_id=validated.client_message_id,
            created_at=now,
        )
        await store.save_message(user_message)
        await _ensure_placeholder(store, user_message)
        await store.save_conversation(conversation.model_copy(update={"updated_at": now}))

        ok = True
        return SubmitMessageResult(
            message_id=user_message.id,
            stream_url=stream_url(conversation_id, user_message.id),
        )
    finally:
        record_latency(
            operation="service.submit_message",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


async def stream_answer(
    conversation_id: str,
    message_id: str,
    client_id: str,
    client_ip: str | None = None,
) -> AsyncIterator[StreamEvent]:
    """Stream the answer events for a submitted user message."""
    orchestrator = _get_orchestrator()
    async with aclosing(
        orchestrator.stream(conversation_id, message_id, client_id, client_ip)
    ) as events:
        async for event in events:
            yield event


async def list_conversations(
    client_id: str,
    limit: int = LIST_LIMIT_DEFAULT,
    cursor: str | None = None,
) -> ConversationList:
    """List the client's conversations, most recently updated first.

    Args:
        client_id: Caller identity.
        limit: Page size, clamped to 1..50.
        cursor: ``next_cursor`` of the previous page.
    """
    start = perf_counter()
    ok = False
    try:
        store = _get_store()
        if not client_id or not client_id.strip():
            return _list_rejected(ErrorCode.invalid_argument, "client_id is required")
        size = _clamp(limit, LIST_LIMIT_MAX)

        before: tuple[float, str] | None = None
        if cursor and cursor.strip():
            anchor = await store.get_conversation(cursor)
            if anchor is None or anchor.client_id != client_id:
                return _list_rejected(ErrorCode.invalid_argument, "Invalid cursor")
            before = (anchor.updated_at, anchor.id)

        page = await store.list_conversations(client_id, before=before, limit=size + 1)
        next_cursor = None
        if len(page) > size:
            page = page[:size]
            next_cursor = page[-1].id

        items = [
            ConversationSummary(
                id=conversation.id,
                title=conversation.title,
                created_at=conversation.created_at,
                updated_at=conversation.updated_at,
                last_message_preview=await _last_message_preview(store, conversation.id),
            )
            for conversation in page
        ]
        ok = True
        return ConversationList(items=items, next_cursor=next_cursor)
    finally:
        record_latency(
            operation="service.list_conversations",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


async def get_conversation(
    conversation_id: str,
    client_id: str,
    limit: int = DETAIL_LIMIT_DEFAULT,
    before: str | None = None,
) -> ConversationDetail:
    """Return a conversation and its newest messages in (created_at, id) order.

    At most ``limit`` messages (clamped to 1..200) are returned.  Pass the
    returned ``next_before`` as ``before`` to page towards older messages.
    """
    start = perf_counter()
    ok = False
    try:
        store = _get_store()
        owned = await _owned_conversation(store, conversation_id, client_id)
        if isinstance(owned, tuple):
            return _detail_rejected(*owned)
        size = _clamp(limit, DETAIL_LIMIT_MAX)

        before_key: tuple[float, str] | None = None
        if before and before.strip():
            anchor = await store.get_message(before)
            if anchor is None or anchor.conversation_id != conversation_id:
                return _detail_rejected(ErrorCode.invalid_argument, "Invalid before")
            before_key = anchor.sort_key

        messages = await store.query_messages(
            conversation_id, before_key=before_key, limit=size + 1, tail=True
        )
        next_before = None
        if len(messages) > size:
            messages = messages[1:]
            next_before = messages[0].id
        ok = True
        return ConversationDetail(
            conversation=owned, messages=messages, next_before=next_before
        )
    finally:
        record_latency(
            operation="service.get_conversation",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )
