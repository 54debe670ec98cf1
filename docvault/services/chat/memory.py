# docvault/services/chat/memory.py
"""
有界对话窗口。

两种策略共用同一套淘汰规则：
- 从最旧的消息开始淘汰，SystemMessage 始终保留
- 淘汰一条带 tool_calls 的 AIMessage 时，紧随其后的 ToolMessage 一并淘汰
"""
import logging
from abc import ABC, abstractmethod
from typing import List, Sequence

from langchain_core.messages import AIMessage, BaseMessage, SystemMessage, ToolMessage

from docvault.services.chat.memory_store import ChatMemoryStore
from docvault.services.tokenizer import Tokenizer

logger = logging.getLogger(__name__)


def _evict_oldest(messages: List[BaseMessage]) -> bool:
    """
    原地淘汰最旧的一条非 system 消息 (及其附属的 tool 结果)。没有可淘汰的消息时返回 False。
    """
    for i, message in enumerate(messages):
        if isinstance(message, SystemMessage):
            continue
        del messages[i]
        if isinstance(message, AIMessage) and message.tool_calls:
            while i < len(messages) and isinstance(messages[i], ToolMessage):
                del messages[i]
        return True
    return False


class ChatMemory(ABC):

    def __init__(self, session_id: str, store: ChatMemoryStore):
        self.session_id = session_id
        self.store = store

    async def messages(self) -> List[BaseMessage]:
        return await self.store.get_messages(self.session_id)

    async def add(self, message: BaseMessage):
        await self.add_all([message])

    async def add_all(self, new_messages: Sequence[BaseMessage]):
        def _append(messages: List[BaseMessage]) -> List[BaseMessage]:
            for message in new_messages:
                if isinstance(message, SystemMessage):
                    # 只保留一条 system 消息，新内容覆盖旧内容
                    messages = [m for m in messages if not isinstance(m, SystemMessage)]
                    messages.insert(0, message)
                else:
                    messages.append(message)
            self._ensure_capacity(messages)
            return messages

        await self.store.modify_messages(self.session_id, _append)

    async def clear(self):
        await self.store.delete_messages(self.session_id)

    def _ensure_capacity(self, messages: List[BaseMessage]):
        while self._exceeds(messages):
            if not _evict_oldest(messages):
                logger.warning(f"会话 {self.session_id} 只剩 system 消息仍超出窗口限制")
                return

    @abstractmethod
    def _exceeds(self, messages: Sequence[BaseMessage]) -> bool: ...


class MessageWindowChatMemory(ChatMemory):

    def __init__(self, session_id: str, store: ChatMemoryStore, max_messages: int):
        super().__init__(session_id, store)
        if max_messages < 1:
            raise ValueError("max_messages must be >= 1")
        self.max_messages = max_messages

    def _exceeds(self, messages: Sequence[BaseMessage]) -> bool:
        return len(messages) > self.max_messages


class TokenWindowChatMemory(ChatMemory):

    def __init__(self, session_id: str, store: ChatMemoryStore, max_tokens: int, tokenizer: Tokenizer):
        super().__init__(session_id, store)
        if max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        self.max_tokens = max_tokens
        self.tokenizer = tokenizer

    def _exceeds(self, messages: Sequence[BaseMessage]) -> bool:
        return self.tokenizer.count_messages(messages) > self.max_tokens
