# docvault/services/chat/memory_store.py
"""
对话窗口消息的持久化存储。窗口裁剪后的结果整体覆盖写回。

modify_messages() 把 "读取 -> 修改 -> 写回" 作为一个原子步骤：
默认实现按会话加进程内锁，Redis 实现用 WATCH/MULTI 乐观事务，跨进程同样生效。
"""
import asyncio
import json
import logging
import re
import weakref
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Sequence

from langchain_core.messages import BaseMessage, messages_from_dict, messages_to_dict
from redis.asyncio import Redis
from redis.exceptions import WatchError

logger = logging.getLogger(__name__)

MessageMutation = Callable[[List[BaseMessage]], List[BaseMessage]]

_GLOB_SPECIAL = re.compile(r"([\\*?\[\]])")


def _glob_escape(value: str) -> str:
    return _GLOB_SPECIAL.sub(r"\\\1", value)


class ChatMemoryStore(ABC):

    def __init__(self):
        self._session_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @abstractmethod
    async def get_messages(self, session_id: str) -> List[BaseMessage]:
        """不存在的会话返回空列表"""

    @abstractmethod
    async def update_messages(self, session_id: str, messages: Sequence[BaseMessage]): ...

    @abstractmethod
    async def delete_messages(self, session_id: str): ...

    @abstractmethod
    async def delete_sessions(self, prefix: str) -> int:
        """删除 id 以 prefix 开头的全部会话，返回删除数量"""

    async def modify_messages(self, session_id: str, mutate: MessageMutation) -> List[BaseMessage]:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        async with lock:
            messages = mutate(await self.get_messages(session_id))
            await self.update_messages(session_id, messages)
            return messages


class RedisChatMemoryStore(ChatMemoryStore):
    """
    每个会话一个 key，值为 LangChain 消息字典列表的 JSON。
    """

    def __init__(self, redis: Redis, key_prefix: str = "docvault:chat", ttl_seconds: Optional[int] = None):
        super().__init__()
        self.redis = redis
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}:{session_id}"

    @staticmethod
    def _decode(raw) -> List[BaseMessage]:
        if not raw:
            return []
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return messages_from_dict(json.loads(raw))

    @staticmethod
    def _encode(messages: Sequence[BaseMessage]) -> str:
        return json.dumps(messages_to_dict(list(messages)), ensure_ascii=False)

    async def get_messages(self, session_id: str) -> List[BaseMessage]:
        return self._decode(await self.redis.get(self._key(session_id)))

    async def update_messages(self, session_id: str, messages: Sequence[BaseMessage]):
        await self.redis.set(self._key(session_id), self._encode(messages), ex=self.ttl_seconds)

    async def modify_messages(self, session_id: str, mutate: MessageMutation) -> List[BaseMessage]:
        key = self._key(session_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    messages = mutate(self._decode(await pipe.get(key)))
                    pipe.multi()
                    pipe.set(key, self._encode(messages), ex=self.ttl_seconds)
                    await pipe.execute()
                    return messages
                except WatchError:
                    # 其他写入者先提交了，基于最新内容重来
                    logger.debug(f"会话 {session_id} 并发写入冲突，重试")
                    continue

    async def delete_messages(self, session_id: str):
        await self.redis.delete(self._key(session_id))

    async def delete_sessions(self, prefix: str) -> int:
        pattern = f"{_glob_escape(self._key(prefix))}*"
        deleted = 0
        async for key in self.redis.scan_iter(match=pattern):
            deleted += await self.redis.delete(key)
        return deleted

    async def close(self):
        await self.redis.aclose()


class InMemoryChatMemoryStore(ChatMemoryStore):
    """
    进程内实现，用于测试与本地开发。
    """

    def __init__(self):
        super().__init__()
        self._sessions: Dict[str, List[BaseMessage]] = {}

    async def get_messages(self, session_id: str) -> List[BaseMessage]:
        return list(self._sessions.get(session_id, []))

    async def update_messages(self, session_id: str, messages: Sequence[BaseMessage]):
        self._sessions[session_id] = list(messages)

    async def delete_messages(self, session_id: str):
        self._sessions.pop(session_id, None)

    async def delete_sessions(self, prefix: str) -> int:
        doomed = [sid for sid in self._sessions if sid.startswith(prefix)]
        for sid in doomed:
            del self._sessions[sid]
        return len(doomed)
