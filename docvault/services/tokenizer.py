# docvault/services/tokenizer.py
"""
Token 计数器。摄取时统计 embedding 输入 token，对话记忆的 token 窗口也依赖它。
"""
import logging
from typing import Optional, Protocol, Sequence

import tiktoken
from langchain_core.messages import BaseMessage

logger = logging.getLogger(__name__)

# 每条消息的固定开销 (role 与分隔符)，与 OpenAI chat 格式的计数方式一致
TOKENS_PER_MESSAGE = 3
FALLBACK_ENCODING = "cl100k_base"


class Tokenizer(Protocol):
    def count_text(self, text: str) -> int: ...

    def count_messages(self, messages: Sequence[BaseMessage]) -> int: ...


def _message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    # 多模态消息只统计文本片段
    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


class TiktokenTokenizer:

    def __init__(self, model_name: str):
        self.model_name = model_name
        try:
            self.encoding = tiktoken.encoding_for_model(model_name)
        except KeyError:
            logger.warning(f"tiktoken 不认识模型 {model_name}，回退到 {FALLBACK_ENCODING}")
            self.encoding = tiktoken.get_encoding(FALLBACK_ENCODING)

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        return len(self.encoding.encode(text, disallowed_special=()))

    def count_messages(self, messages: Sequence[BaseMessage]) -> int:
        total = 0
        for message in messages:
            total += TOKENS_PER_MESSAGE + self.count_text(_message_text(message))
            if message.type == "ai":
                for call in getattr(message, "tool_calls", None) or []:
                    total += self.count_text(call.get("name", "")) + self.count_text(str(call.get("args", "")))
        return total


def build_tokenizer(provider: Optional[str], model_name: str) -> Optional[Tokenizer]:
    """
    provider 为空时返回 None (由调用方决定是否允许)；未知 provider 抛出 ValueError。
    """
    if not provider:
        return None
    if provider.lower() == "openai":
        return TiktokenTokenizer(model_name)
    raise ValueError(f"Unsupported tokenizer provider: {provider}")
