"""Models domain — stored records, retrieval payloads and stream events."""

from __future__ import annotations

from tutorstream.models.events import DeltaEvent
from tutorstream.models.events import DoneEvent
from tutorstream.models.events import ErrorEvent
from tutorstream.models.events import MetaEvent
from tutorstream.models.events import StreamEvent
from tutorstream.models.schemas import assistant_message_id
from tutorstream.models.schemas import CardDetail
from tutorstream.models.schemas import Citation
from tutorstream.models.schemas import ConceptCard
from tutorstream.models.schemas import Conversation
from tutorstream.models.schemas import ConversationDetail
from tutorstream.models.schemas import ConversationList
from tutorstream.models.schemas import ConversationSummary
from tutorstream.models.schemas import CreateConversationResult
from tutorstream.models.schemas import ErrorCode
from tutorstream.models.schemas import Message
from tutorstream.models.schemas import MessageRole
from tutorstream.models.schemas import MessageStatus
from tutorstream.models.schemas import new_conversation_id
from tutorstream.models.schemas import new_message_id
from tutorstream.models.schemas import new_request_id
from tutorstream.models.schemas import RetrievalResult
from tutorstream.models.schemas import SubmitMessageInput
from tutorstream.models.schemas import SubmitMessageResult
from tutorstream.models.schemas import TokenUsage

__all__ = [
    # Records
    "Conversation",
    "ConversationDetail",
    "ConversationList",
    "ConversationSummary",
    "Message",
    "MessageRole",
    "MessageStatus",
    # Retrieval
    "CardDetail",
    "Citation",
    "ConceptCard",
    "RetrievalResult",
    "TokenUsage",
    # Service I/O
    "CreateConversationResult",
    "ErrorCode",
    "SubmitMessageInput",
    "SubmitMessageResult",
    # Events
    "DeltaEvent",
    "DoneEvent",
    "ErrorEvent",
    "MetaEvent",
    "StreamEvent",
    # Identifiers
    "assistant_message_id",
    "new_conversation_id",
    "new_message_id",
    "new_request_id",
]
