"""Store domain — durable conversations and messages."""

from tutorstream.store.base import ConversationStore
from tutorstream.store.memory_store import InMemoryConversationStore
from tutorstream.store.redis_store import RedisConversationStore

__all__ = [
    "ConversationStore",
    "InMemoryConversationStore",
    "RedisConversationStore",
]
