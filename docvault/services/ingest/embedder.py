# docvault/services/ingest/embedder.py
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from langchain_core.documents import Document
from langchain_core.embeddings import Embeddings

from docvault.services.tokenizer import Tokenizer

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingResult:
    embeddings: List[List[float]]
    token_count: Optional[int] = None


class SegmentEmbedder:
    """
    为一个文档的全部切片计算向量。token 用量由 tokenizer 在本地统计，
    未配置 tokenizer 时不报告用量。
    """

    def __init__(self, embed_model: Embeddings, tokenizer: Optional[Tokenizer] = None, batch_size: int = 10):
        self.embed_model = embed_model
        self.tokenizer = tokenizer
        # DashScope 单次请求最多 10 条文本
        self.batch_size = batch_size

    def embed(self, segments: Sequence[Document]) -> EmbeddingResult:
        texts = [s.page_content for s in segments]
        embeddings: List[List[float]] = []
        for start in range(0, len(texts), self.batch_size):
            embeddings.extend(self.embed_model.embed_documents(texts[start:start + self.batch_size]))

        if len(embeddings) != len(texts):
            raise ValueError(f"Embedding 数量不匹配: 输入 {len(texts)}，返回 {len(embeddings)}")

        token_count = None
        if self.tokenizer is not None:
            token_count = sum(self.tokenizer.count_text(t) for t in texts)
        logger.debug(f"已计算 {len(embeddings)} 个切片的向量 (tokens={token_count})")
        return EmbeddingResult(embeddings=embeddings, token_count=token_count)
