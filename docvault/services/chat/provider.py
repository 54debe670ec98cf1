# docvault/services/chat/provider.py
import logging
import uuid
from dataclasses import dataclass
from typing import Literal, Optional

from docvault.core.config import Settings
from docvault.core.exceptions import StartupError
from docvault.services.chat.memory import ChatMemory, MessageWindowChatMemory, TokenWindowChatMemory
from docvault.services.chat.memory_store import ChatMemoryStore
from docvault.services.tokenizer import Tokenizer, build_tokenizer

logger = logging.getLogger(__name__)


@dataclass
class ChatMemoryConfig:
    window: Literal["message", "token"] = "message"
    max_messages: Optional[int] = None
    max_tokens: Optional[int] = None
    tokenizer: Optional[Tokenizer] = None

    @classmethod
    def from_settings(cls, config: Settings, tokenizer: Optional[Tokenizer] = None) -> "ChatMemoryConfig":
        if tokenizer is None and config.CHAT_MEMORY_WINDOW == "token":
            try:
                tokenizer = build_tokenizer(
                    config.CHAT_MEMORY_TOKENIZER_PROVIDER, config.CHAT_MEMORY_TOKENIZER_MODEL
                )
            except ValueError as e:
                raise StartupError(str(e)) from e
        return cls(
            window=config.CHAT_MEMORY_WINDOW,
            max_messages=config.CHAT_MEMORY_MAX_MESSAGES,
            max_tokens=config.CHAT_MEMORY_MAX_TOKENS,
            tokenizer=tokenizer,
        )


class ChatMemoryProvider:
    """
    按会话提供有界对话窗口。构造时校验配置，check_connection() 在启动阶段校验存储连通性。
    """

    def __init__(self, config: ChatMemoryConfig, store: ChatMemoryStore):
        if config.window == "message":
            if not config.max_messages:
                raise StartupError("消息窗口模式必须配置 CHAT_MEMORY_MAX_MESSAGES")
        elif config.window == "token":
            if not config.max_tokens:
                raise StartupError("Token 窗口模式必须配置 CHAT_MEMORY_MAX_TOKENS")
            if config.tokenizer is None:
                raise StartupError("Token 窗口模式必须配置 tokenizer")
        else:
            raise StartupError(f"未知的对话窗口类型: {config.window}")
        self.config = config
        self.store = store

    async def check_connection(self):
        # 读取一个从未使用过的会话：空结果说明连接正常
        probe_id = str(uuid.uuid4())
        try:
            await self.store.get_messages(probe_id)
        except Exception as e:
            raise StartupError(f"对话记忆存储连接失败: {e}") from e
        logger.info(f"✅ 对话记忆存储已连接 (window={self.config.window})")

    def get(self, session_id: str) -> ChatMemory:
        if self.config.window == "token":
            return TokenWindowChatMemory(
                session_id, self.store, max_tokens=self.config.max_tokens, tokenizer=self.config.tokenizer
            )
        return MessageWindowChatMemory(session_id, self.store, max_messages=self.config.max_messages)

    @staticmethod
    def session_key(username: str, session_id: str) -> str:
        # 会话 key 带上用户名，不同用户的同名会话互不可见。用户名不含 "|"，前缀不会互相覆盖
        return f"{username}|{session_id}"

    def for_user(self, username: str, session_id: str) -> ChatMemory:
        return self.get(self.session_key(username, session_id))

    async def clear_user_sessions(self, username: str) -> int:
        deleted = await self.store.delete_sessions(self.session_key(username, ""))
        if deleted:
            logger.info(f"🧹 已清理用户 {username} 的 {deleted} 个对话会话")
        return deleted
