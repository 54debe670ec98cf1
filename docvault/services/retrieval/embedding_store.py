# docvault/services/retrieval/embedding_store.py
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from langchain_core.documents import Document


@dataclass
class EmbeddingMatch:
    id: str
    score: float
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_document(self) -> Document:
        return Document(page_content=self.text, metadata={**self.metadata, "score": self.score})


class EmbeddingStore(ABC):
    """
    向量库适配器。所有方法均为阻塞调用。

    每个向量的 metadata 至少包含 knowledge_id 与 permission 两个字段：
    前者用于按知识条目批量更新 / 删除，后者用于查询期的权限过滤。
    """

    @abstractmethod
    def check_connection_and_init(self):
        """
        校验连接并确保集合存在 (不存在则按当前配置创建)。失败抛出 StartupError。
        """

    @abstractmethod
    def upsert(
        self,
        segments: Sequence[Document],
        embeddings: Sequence[List[float]],
    ) -> List[str]:
        """
        单批写入。任一条失败时整批回滚 (按 knowledge_id 删除) 并抛出异常。
        """

    @abstractmethod
    def set_payload(self, knowledge_id: str, field_name: str, value: Any) -> int:
        """
        将 knowledge_id 匹配的所有向量的 metadata[field_name] 设为 value，返回更新条数。
        """

    @abstractmethod
    def delete_by_knowledge_id(self, knowledge_id: str) -> int: ...

    @abstractmethod
    def query(
        self,
        vector: List[float],
        permission_queries: Sequence[str],
        knowledge_ids: Optional[Sequence[str]] = None,
        top_k: int = 5,
        min_score: float = 0.0,
    ) -> List[EmbeddingMatch]:
        """
        相似度检索。permission_queries 中至少一个探针必须是 metadata.permission 的子串，
        knowledge_ids 非空时额外限定知识条目。
        """

    @abstractmethod
    def count(self, knowledge_id: Optional[str] = None) -> int: ...

    @abstractmethod
    def delete_all(self): ...


def require_permission_queries(permission_queries: Sequence[str]):
    # 没有权限探针的查询等价于全库检索，直接拒绝
    if not permission_queries:
        raise ValueError("permission_queries must not be empty")
