"""Stream orchestrator: drives one assistant turn from request to terminal state.

Per turn the orchestrator validates the request, moves the assistant
placeholder to ``streaming``, primes chat memory, resolves directives and
automatic retrieval, relays the provider's token stream as ``delta``
events, and finalizes the assistant message exactly once as ``done``,
``error`` or ``cancelled``.

Exactly-once finalization has two layers: a per-turn latch inside this
process and the store's compare-and-set ``finalize_message``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from collections.abc import Coroutine
from contextlib import aclosing
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Any

from tutorstream.audit.schemas import AuditEvent
from tutorstream.audit.schemas import AuditEventType
from tutorstream.audit.store import AuditLogger
from tutorstream.config import LLMConfig
from tutorstream.config import OutputLimitConfig
from tutorstream.config import RetrievalConfig
from tutorstream.engine.citations import candidates_from_citations
from tutorstream.engine.citations import merge_citations
from tutorstream.engine.directives import Directive
from tutorstream.engine.directives import DirectiveKind
from tutorstream.engine.directives import DirectiveResolver
from tutorstream.engine.prompt_builder import augment_user_text
from tutorstream.engine.prompt_builder import build_system_prompt
from tutorstream.engine.prompt_builder import REFERENCE_LABEL
from tutorstream.engine.provider import GenerationRequest
from tutorstream.engine.provider import ModelStreamProvider
from tutorstream.engine.provider import ProviderUsage
from tutorstream.engine.rate_limit import rate_key
from tutorstream.engine.rate_limit import RateGate
from tutorstream.engine.retrieval import KnowledgeBaseTool
from tutorstream.engine.retrieval import WikipediaTool
from tutorstream.engine.usage import UsageEstimator
from tutorstream.memory.chat_memory import ChatMemory
from tutorstream.memory.primer import MemoryPrimer
from tutorstream.models.events import DeltaEvent
from tutorstream.models.events import DoneEvent
from tutorstream.models.events import ErrorEvent
from tutorstream.models.events import MetaEvent
from tutorstream.models.events import StreamEvent
from tutorstream.models.schemas import assistant_message_id
from tutorstream.models.schemas import Citation
from tutorstream.models.schemas import ErrorCode
from tutorstream.models.schemas import Message
from tutorstream.models.schemas import MessageRole
from tutorstream.models.schemas import MessageStatus
from tutorstream.models.schemas import new_request_id
from tutorstream.models.schemas import RetrievalResult
from tutorstream.models.schemas import TokenUsage
from tutorstream.observability import record_latency
from tutorstream.observability import record_outcome
from tutorstream.store.base import ConversationStore

logger = logging.getLogger(__name__)

DEFAULT_DIFFICULTY = "intermediate"
DEFAULT_LANGUAGE = "en"
STREAM_FAILED_MESSAGE = "LLM stream failed"
STORAGE_FAILED_MESSAGE = "Failed to save the answer"

_FINALIZE_ATTEMPTS = 3
_FINALIZE_RETRY_DELAY_SECONDS = 0.05


class TurnRejected(Exception):
    """Pre-stream validation failure; nothing has been mutated."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class _WriteOutcome(str, Enum):
    """Result of writing a terminal state to the store."""

    won = "won"
    lost = "lost"  # another writer finalized first
    failed = "failed"  # the store kept raising


@dataclass
class _Turn:
    """Mutable state of one streamed turn."""

    conversation_id: str
    assistant_id: str
    request_id: str
    started: float = field(default_factory=time.perf_counter)
    parts: list[str] = field(default_factory=list)
    finalized: bool = False

    @property
    def content(self) -> str:
        return "".join(self.parts)

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000

    def claim(self) -> bool:
        """Take the right to finalize; only the first caller gets it."""
        if self.finalized:
            return False
        self.finalized = True
        return True


@dataclass(frozen=True)
class _Augmentation:
    """Automatic retrieval results gathered before generation."""

    knowledge_base: RetrievalResult = field(default_factory=RetrievalResult)
    wikipedia: RetrievalResult = field(default_factory=RetrievalResult)

    @property
    def reference_text(self) -> str:
        texts = (
            self.knowledge_base.reference_text.strip(),
            self.wikipedia.reference_text.strip(),
        )
        return "\n\n".join(t for t in texts if t)


class StreamOrchestrator:
    """Runs streamed answer turns against the configured collaborators."""

    def __init__(
        self,
        *,
        store: ConversationStore,
        provider: ModelStreamProvider,
        memory: ChatMemory,
        primer: MemoryPrimer,
        resolver: DirectiveResolver,
        wikipedia: WikipediaTool,
        knowledge_base: KnowledgeBaseTool,
        rate_gate: RateGate,
        usage_estimator: UsageEstimator | None = None,
        audit: AuditLogger | None = None,
        llm_config: LLMConfig | None = None,
        output_limits: OutputLimitConfig | None = None,
        retrieval_config: RetrievalConfig | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._memory = memory
        self._primer = primer
        self._resolver = resolver
        self._wikipedia = wikipedia
        self._knowledge_base = knowledge_base
        self._rate_gate = rate_gate
        self._usage = usage_estimator or UsageEstimator()
        self._audit = audit
        self._llm_config = llm_config or LLMConfig()
        self._output_limits = output_limits or OutputLimitConfig()
        self._retrieval = retrieval_config or RetrievalConfig()
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def stream(
        self,
        conversation_id: str,
        message_id: str,
        client_id: str,
        client_ip: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield the events of one turn.

        Pre-stream failures yield a single ``error`` event.  Closing the
        iterator before the terminal event finalizes the turn as
        ``cancelled`` on a detached task.
        """
        try:
            user_message = await self._admit(
                conversation_id, message_id, client_id, client_ip
            )
        except TurnRejected as exc:
            record_outcome("rejected")
            logger.info(
                "Rejected turn conversation=%s message=%s code=%s",
                conversation_id,
                message_id,
                exc.code.value,
            )
            yield ErrorEvent(code=exc.code, message=exc.message)
            return

        turn = _Turn(
            conversation_id=conversation_id,
            assistant_id=assistant_message_id(message_id),
            request_id=new_request_id(),
        )
        difficulty = user_message.difficulty or DEFAULT_DIFFICULTY
        language = user_message.language or DEFAULT_LANGUAGE
        exact_usage: ProviderUsage | None = None

        try:
            yield MetaEvent(
                request_id=turn.request_id,
                model=self._llm_config.model,
                difficulty=difficulty,
                language=language,
            )

            await self._primer.prime(conversation_id, user_message.created_at)
            memory_entries = await self._memory.get(conversation_id)

            directive = await asyncio.to_thread(
                self._resolver.resolve, user_message.content, language
            )
            augmentation = await self._augment(directive)
            user_text = augment_user_text(
                REFERENCE_LABEL,
                augmentation.reference_text,
                directive.generation_text,
            )
            has_reference = (
                directive.has_reference
                or self._retrieval.rag_enabled
                or self._retrieval.wikipedia_on_demand
            )
            system_prompt = build_system_prompt(
                difficulty, language, has_reference=has_reference
            )
            request = GenerationRequest(
                system_prompt=system_prompt,
                user_text=user_text,
                max_tokens=self._output_limits.max_tokens_for(difficulty),
                memory=tuple(memory_entries),
                model=self._llm_config.model,
            )

            async with aclosing(self._provider.stream(request)) as chunks:
                async for chunk in chunks:
                    if chunk.usage is not None:
                        exact_usage = chunk.usage
                    if not chunk.text or not chunk.text.strip():
                        continue
                    turn.parts.append(chunk.text)
                    yield DeltaEvent(text=chunk.text)
        except (GeneratorExit, asyncio.CancelledError):
            self._cancel(turn)
            raise
        except Exception as exc:
            message = str(exc) or STREAM_FAILED_MESSAGE
            logger.warning(
                "Turn failed conversation=%s message=%s request=%s error=%s",
                conversation_id,
                turn.assistant_id,
                turn.request_id,
                message,
            )
            if turn.claim():
                outcome = await self._shielded(
                    self._persist(
                        turn,
                        MessageStatus.error,
                        error_code=ErrorCode.provider_error,
                        error_message=message,
                    )
                )
                if outcome == _WriteOutcome.failed:
                    logger.error(
                        "Errored turn left unfinalized message=%s request=%s",
                        turn.assistant_id,
                        turn.request_id,
                    )
                self._record_turn(turn, MessageStatus.error)
            yield ErrorEvent(
                code=ErrorCode.provider_error,
                message=message,
                request_id=turn.request_id,
            )
        else:
            if not turn.claim():
                return
            usage = self._usage.resolve(
                exact_usage,
                prompt_chars=self._usage.prompt_chars(
                    system_prompt, user_text, memory_entries
                ),
                completion_chars=len(turn.content),
            )
            citations = self._merge_citations(directive, augmentation)
            outcome = await self._shielded(self._complete(turn, usage))
            if outcome == _WriteOutcome.failed:
                # Placeholder stays streaming so the turn can be streamed again
                self._record_turn(turn, MessageStatus.error)
                yield ErrorEvent(
                    code=ErrorCode.storage_error,
                    message=STORAGE_FAILED_MESSAGE,
                    request_id=turn.request_id,
                )
                return
            self._record_turn(turn, MessageStatus.done)
            yield DoneEvent(usage=usage, citations=citations)

    async def drain(self) -> None:
        """Wait for detached finalization tasks (shutdown and tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def _admit(
        self,
        conversation_id: str,
        message_id: str,
        client_id: str,
        client_ip: str | None,
    ) -> Message:
        if not client_id or not client_id.strip():
            raise TurnRejected(ErrorCode.invalid_argument, "client_id is required")
        if not self._rate_gate.admit(rate_key(client_id, client_ip)):
            await self._audit_event(
                AuditEventType.RATE_LIMITED,
                {"client_id": client_id, "client_ip": client_ip},
            )
            raise TurnRejected(ErrorCode.rate_limited, "Too many requests, try again later")

        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise TurnRejected(ErrorCode.not_found, "Conversation not found")
        if conversation.client_id != client_id:
            raise TurnRejected(ErrorCode.forbidden, "Conversation belongs to another client")

        user_message = await self._store.get_message(message_id)
        if user_message is None or user_message.conversation_id != conversation_id:
            raise TurnRejected(ErrorCode.not_found, "Message not found")
        if user_message.role != MessageRole.user:
            raise TurnRejected(ErrorCode.invalid_argument, "Message is not a user message")

        assistant_id = assistant_message_id(message_id)
        assistant = await self._store.get_message(assistant_id)
        if assistant is None:
            raise TurnRejected(ErrorCode.not_found, "Assistant message not found")
        if assistant.status.is_terminal:
            raise TurnRejected(ErrorCode.invalid_argument, "Answer already finalized")
        if await self._store.mark_streaming(assistant_id) is None:
            raise TurnRejected(ErrorCode.invalid_argument, "Answer already finalized")
        return user_message

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def _augment(self, directive: Directive) -> _Augmentation:
        query = directive.cleaned_text
        knowledge_base = RetrievalResult.empty()
        wikipedia = RetrievalResult.empty()
        if self._retrieval.rag_enabled and directive.kind != DirectiveKind.kb:
            knowledge_base = await asyncio.to_thread(self._knowledge_base.search, query)
        if self._retrieval.wikipedia_on_demand and directive.kind != DirectiveKind.wiki:
            wikipedia = await asyncio.to_thread(self._wikipedia.search, query)
        return _Augmentation(knowledge_base=knowledge_base, wikipedia=wikipedia)

    def _merge_citations(
        self,
        directive: Directive,
        augmentation: _Augmentation,
    ) -> list[Citation]:
        # Knowledge-base slot first, Wikipedia slot second
        kb_slot = (
            directive.citations
            if directive.kind == DirectiveKind.kb
            else augmentation.knowledge_base.citations
        )
        wiki_slot = (
            directive.citations
            if directive.kind == DirectiveKind.wiki
            else augmentation.wikipedia.citations
        )
        return merge_citations(
            [candidates_from_citations(kb_slot), candidates_from_citations(wiki_slot)],
            max_excerpt_chars=self._retrieval.excerpt_max_chars,
        )

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _shielded(
        self, coro: Coroutine[Any, Any, _WriteOutcome]
    ) -> _WriteOutcome:
        return await asyncio.shield(self._spawn(coro))

    def _cancel(self, turn: _Turn) -> None:
        if not turn.claim():
            return
        self._record_turn(turn, MessageStatus.cancelled)
        coro = self._persist(turn, MessageStatus.cancelled)
        try:
            self._spawn(coro)
        except RuntimeError:
            coro.close()
            logger.warning(
                "No running loop to persist cancelled turn message=%s",
                turn.assistant_id,
            )

    async def _complete(self, turn: _Turn, usage: TokenUsage) -> _WriteOutcome:
        outcome = await self._persist(turn, MessageStatus.done, usage=usage)
        if outcome == _WriteOutcome.won and self._audit is not None:
            try:
                await self._audit.record_usage(
                    turn.assistant_id,
                    self._llm_config.model,
                    int(turn.elapsed_ms),
                    usage.prompt_tokens,
                    usage.completion_tokens,
                    usage.estimated_cost_usd,
                )
            except Exception:
                logger.exception("Failed to record usage message=%s", turn.assistant_id)
        return outcome

    async def _persist(
        self,
        turn: _Turn,
        status: MessageStatus,
        *,
        error_code: ErrorCode | None = None,
        error_message: str | None = None,
        usage: TokenUsage | None = None,
    ) -> _WriteOutcome:
        """Write the terminal state, retrying while the store raises.

        A lost compare-and-set is final and never retried.
        """
        for attempt in range(1, _FINALIZE_ATTEMPTS + 1):
            try:
                won = await self._store.finalize_message(
                    turn.assistant_id,
                    status=status,
                    content=turn.content,
                    error_code=error_code.value if error_code else None,
                    error_message=error_message,
                    usage=usage,
                )
                break
            except Exception:
                if attempt == _FINALIZE_ATTEMPTS:
                    logger.exception(
                        "Failed to finalize message=%s status=%s attempts=%d",
                        turn.assistant_id,
                        status.value,
                        attempt,
                    )
                    return _WriteOutcome.failed
                logger.warning(
                    "Retrying finalize message=%s status=%s attempt=%d",
                    turn.assistant_id,
                    status.value,
                    attempt,
                    exc_info=True,
                )
                await asyncio.sleep(_FINALIZE_RETRY_DELAY_SECONDS * attempt)
        if not won:
            logger.warning(
                "Terminal state already written message=%s attempted=%s",
                turn.assistant_id,
                status.value,
            )
            return _WriteOutcome.lost
        await self._audit_event(
            AuditEventType.TURN_FINALIZED,
            {
                "conversation_id": turn.conversation_id,
                "message_id": turn.assistant_id,
                "request_id": turn.request_id,
                "status": status.value,
            },
        )
        return _WriteOutcome.won

    async def _audit_event(self, event_type: AuditEventType, payload: dict[str, Any]) -> None:
        if self._audit is None:
            return
        try:
            await self._audit.log(AuditEvent(event_type=event_type, payload=payload))
        except Exception:
            logger.exception("Failed to write audit event type=%s", event_type.value)

    def _record_turn(self, turn: _Turn, status: MessageStatus) -> None:
        record_outcome(status.value)
        record_latency(
            operation="orchestrator.turn",
            duration_ms=turn.elapsed_ms,
            ok=status != MessageStatus.error,
        )
