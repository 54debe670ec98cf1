# docvault/services/retrieval/retriever.py
import asyncio
import logging
from typing import List, Optional, Sequence

from langchain_core.documents import Document
from langchain_core.embeddings import Embeddings

from docvault.services.retrieval.embedding_store import EmbeddingStore
from docvault.services.security.identity import Identity

logger = logging.getLogger(__name__)


class PermissionAwareRetriever:
    """
    按调用方身份过滤的向量检索：查询向量由 embed_model 生成，
    权限探针来自 Identity，不存在不带权限过滤的检索路径。
    """

    def __init__(self, embedding_store: EmbeddingStore, embed_model: Embeddings, top_k: int = 5, min_score: float = 0.0):
        self.embedding_store = embedding_store
        self.embed_model = embed_model
        self.top_k = top_k
        self.min_score = min_score

    async def retrieve(
        self,
        query: str,
        identity: Identity,
        knowledge_ids: Optional[Sequence[str]] = None,
        top_k: Optional[int] = None,
    ) -> List[Document]:
        vector = await asyncio.to_thread(self.embed_model.embed_query, query)
        matches = await asyncio.to_thread(
            self.embedding_store.query,
            vector,
            identity.metadata_queries(),
            knowledge_ids,
            top_k or self.top_k,
            self.min_score,
        )
        logger.info(f"🔍 检索完成: user={identity.username or '<anonymous>'} hits={len(matches)}")
        return [m.to_document() for m in matches]
