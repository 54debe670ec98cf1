# docvault/services/ingest/orchestrator.py
"""
摄取编排器

submit() 只负责调度并立即返回；流水线在线程中执行 (asyncio.to_thread)，
并发度由信号量限制。每次摄取结束时由唯一的完成处理器回写终态：
SUCCEEDED (附 token 数) 或 FAILED (无 token 数)。失败只记录日志，不向调用方抛出，也不自动重试。
"""
import asyncio
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

from langchain_core.documents import Document
from langchain_text_splitters import TextSplitter

from docvault.core.exceptions import IngestionFailure, IngestionInProgressError
from docvault.domain import metadata_keys
from docvault.domain.models import IngestionStatus, Knowledge
from docvault.services.ingest.embedder import SegmentEmbedder
from docvault.services.ingest.loader import load_document
from docvault.services.ingest.transformers import (
    DocumentTransformerPipeline,
    TextSegmentTransformerPipeline,
)
from docvault.services.knowledge.registry import KnowledgeRegistry
from docvault.services.retrieval.embedding_store import EmbeddingStore
from docvault.services.security.permission_metadata import permissions_to_metadata_entry

logger = logging.getLogger(__name__)

Loader = Callable[[Path, Optional[str]], List[Document]]


@dataclass
class IngestionRequest:
    knowledge_id: uuid.UUID
    file_path: Path
    content_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    # 交给编排器的临时文件，结束后删除
    delete_after: bool = False

    @classmethod
    def for_knowledge(cls, knowledge: Knowledge, file_path: Path, delete_after: bool = False) -> "IngestionRequest":
        return cls(
            knowledge_id=knowledge.id,
            file_path=Path(file_path),
            content_type=knowledge.content_type,
            metadata={
                metadata_keys.CHECKSUM: knowledge.checksum,
                metadata_keys.CONTENT_TYPE: knowledge.content_type,
                metadata_keys.SOURCE: knowledge.source,
                metadata_keys.PERMISSION: permissions_to_metadata_entry(knowledge.permission_map()),
            },
            delete_after=delete_after,
        )


@dataclass
class IngestionOutcome:
    segment_count: int
    token_count: Optional[int]
    # 写入向量时使用的权限编码，完成时与最新权限表比对
    permission: str


class IngestionOrchestrator:

    def __init__(
        self,
        registry: KnowledgeRegistry,
        embedding_store: EmbeddingStore,
        embedder: SegmentEmbedder,
        splitter: TextSplitter,
        document_transformer: Optional[DocumentTransformerPipeline] = None,
        segment_transformer: Optional[TextSegmentTransformerPipeline] = None,
        loader: Loader = load_document,
        max_workers: int = 4,
    ):
        self.registry = registry
        self.embedding_store = embedding_store
        self.embedder = embedder
        self.splitter = splitter
        self.document_transformer = document_transformer or DocumentTransformerPipeline()
        self.segment_transformer = segment_transformer or TextSegmentTransformerPipeline()
        self.loader = loader
        self.max_workers = max_workers
        self._semaphore = asyncio.Semaphore(max_workers)
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._reserved: Set[str] = set()

    def is_in_flight(self, knowledge_id) -> bool:
        key = str(knowledge_id)
        return key in self._in_flight or key in self._reserved

    @contextmanager
    def reserve(self, knowledge_id) -> Iterator[None]:
        """
        重新摄取的准备阶段 (写入新文件、重置记录) 先占住槽位，
        期间同一知识的其他重新摄取请求直接失败。持有者在 with 块内调用 submit()。
        """
        key = str(knowledge_id)
        if self.is_in_flight(key):
            raise IngestionInProgressError(knowledge_id)
        self._reserved.add(key)
        try:
            yield
        finally:
            self._reserved.discard(key)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def submit(self, request: IngestionRequest) -> asyncio.Task:
        key = str(request.knowledge_id)
        if key in self._in_flight:
            raise IngestionInProgressError(request.knowledge_id)

        task = asyncio.create_task(self._run(request), name=f"ingest-{key}")
        self._in_flight[key] = task

        def _release(t: asyncio.Task):
            if self._in_flight.get(key) is t:
                del self._in_flight[key]

        task.add_done_callback(_release)
        logger.info(f"📥 已调度摄取任务: 知识 {key} ({request.file_path.name})")
        return task

    async def wait_idle(self):
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def shutdown(self):
        # 不取消进行中的摄取，等待其自然结束
        if self._in_flight:
            logger.info(f"等待 {len(self._in_flight)} 个摄取任务结束...")
        await self.wait_idle()

    async def _run(self, request: IngestionRequest):
        kid = request.knowledge_id
        try:
            async with self._semaphore:
                try:
                    outcome = await asyncio.to_thread(self._ingest, request)
                except Exception as e:
                    logger.error(f"❌ 知识 {kid} 摄取失败: {e}", exc_info=True, extra={"knowledge_id": kid})
                    outcome = None
                await self._complete(request, outcome)
        except Exception as e:
            # 完成处理器本身失败 (例如数据库不可用)，条目会由 Watchdog 置为 FAILED
            logger.error(f"❌ 知识 {kid} 摄取完成处理失败: {e}", exc_info=True, extra={"knowledge_id": kid})
        finally:
            if request.delete_after:
                request.file_path.unlink(missing_ok=True)

    def _ingest(self, request: IngestionRequest) -> IngestionOutcome:
        kid = str(request.knowledge_id)
        logger.info(f"开始摄取知识 {kid}")

        documents = self.loader(request.file_path, request.content_type)

        ingested_at = datetime.now(timezone.utc).isoformat()
        for doc in documents:
            doc.metadata.update(request.metadata)
            doc.metadata[metadata_keys.KNOWLEDGE_ID] = kid
            doc.metadata[metadata_keys.INGESTED_AT] = ingested_at

        documents = self.document_transformer.transform(documents)
        segments = self.splitter.split_documents(documents)
        segments = self.segment_transformer.transform(segments)
        if not segments:
            raise IngestionFailure(f"知识 {kid} 没有可写入的切片")

        # 先算完全部向量再写入，避免半成品对检索可见
        result = self.embedder.embed(segments)

        # 重新摄取时清掉旧版本的切片
        self.embedding_store.delete_by_knowledge_id(kid)
        self.embedding_store.upsert(segments, result.embeddings)

        logger.info(f"✅ 知识 {kid} 摄取完成: {len(segments)} 个切片, tokens={result.token_count}")
        return IngestionOutcome(
            segment_count=len(segments),
            token_count=result.token_count,
            permission=request.metadata.get(metadata_keys.PERMISSION, ""),
        )

    async def _complete(self, request: IngestionRequest, outcome: Optional[IngestionOutcome]):
        kid = request.knowledge_id
        if outcome is None:
            await self.registry.set_ingestion_status(kid, IngestionStatus.FAILED, None)
            return

        knowledge = await self.registry.find(kid)
        if knowledge is None:
            logger.warning(f"知识 {kid} 在摄取期间已被删除，清理刚写入的向量。")
            await asyncio.to_thread(self.embedding_store.delete_by_knowledge_id, str(kid))
            return

        if not await self.registry.set_ingestion_status(kid, IngestionStatus.SUCCEEDED, outcome.token_count):
            # 条目已被 Watchdog 置为 FAILED：丢弃迟到的结果，FAILED 的知识不应在检索中可见
            logger.warning(f"知识 {kid} 已不在 PENDING，丢弃迟到的摄取结果并清理向量。")
            await asyncio.to_thread(self.embedding_store.delete_by_knowledge_id, str(kid))
            return

        # 摄取期间权限发生变化时，写入的是旧快照，需要补推一次
        if permissions_to_metadata_entry(knowledge.permission_map()) != outcome.permission:
            logger.info(f"知识 {kid} 摄取期间权限已变化，重新同步权限元数据。")
            await self.registry.sync_permissions(kid)
