# docvault/services/chat/__init__.py
from .memory import ChatMemory, MessageWindowChatMemory, TokenWindowChatMemory
from .memory_store import ChatMemoryStore, InMemoryChatMemoryStore, RedisChatMemoryStore
from .provider import ChatMemoryConfig, ChatMemoryProvider

__all__ = [
    "ChatMemory",
    "MessageWindowChatMemory",
    "TokenWindowChatMemory",
    "ChatMemoryStore",
    "InMemoryChatMemoryStore",
    "RedisChatMemoryStore",
    "ChatMemoryConfig",
    "ChatMemoryProvider",
]
