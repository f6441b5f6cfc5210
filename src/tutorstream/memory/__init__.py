"""Memory domain — short-term chat memory primed from durable history."""

from tutorstream.memory.chat_memory import ChatMemory
from tutorstream.memory.chat_memory import InMemoryChatMemory
from tutorstream.memory.chat_memory import RedisChatMemory
from tutorstream.memory.primer import MemoryPrimer
from tutorstream.memory.primer import PrimeResult
from tutorstream.memory.primer import PrimeStrategy
from tutorstream.memory.schemas import MemoryCursor
from tutorstream.memory.schemas import MemoryEntry

__all__ = [
    "ChatMemory",
    "InMemoryChatMemory",
    "MemoryCursor",
    "MemoryEntry",
    "MemoryPrimer",
    "PrimeResult",
    "PrimeStrategy",
    "RedisChatMemory",
]
