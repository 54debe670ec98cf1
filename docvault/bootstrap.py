# docvault/bootstrap.py
"""
组装入口：按配置显式构建所有组件，并执行启动自检。
API 进程 (lifespan) 与 Worker 进程 (on_startup) 共用。
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from langchain_core.embeddings import Embeddings
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import async_sessionmaker

from docvault.core.config import Settings
from docvault.core.exceptions import StartupError
from docvault.services.chat.memory_store import ChatMemoryStore, RedisChatMemoryStore
from docvault.services.chat.provider import ChatMemoryConfig, ChatMemoryProvider
from docvault.services.factories import setup_embed_model
from docvault.services.ingest.embedder import SegmentEmbedder
from docvault.services.ingest.orchestrator import IngestionOrchestrator
from docvault.services.ingest.splitter import build_splitter
from docvault.services.knowledge.knowledge_service import KnowledgeService
from docvault.services.knowledge.permission_sync import PermissionMetadataSynchronizer
from docvault.services.knowledge.registry import KnowledgeRegistry
from docvault.services.retrieval.embedding_store import EmbeddingStore
from docvault.services.retrieval.factory import create_embedding_store
from docvault.services.retrieval.retriever import PermissionAwareRetriever
from docvault.services.security.knowledge_access import KnowledgeAccess
from docvault.services.storage.file_storage import FileStorage, create_file_storage
from docvault.services.tokenizer import Tokenizer, build_tokenizer
from docvault.services.user.user_service import UserService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    session_maker: async_sessionmaker
    file_storage: FileStorage
    embedding_store: EmbeddingStore
    synchronizer: PermissionMetadataSynchronizer
    registry: KnowledgeRegistry
    orchestrator: IngestionOrchestrator
    knowledge_service: KnowledgeService
    knowledge_access: KnowledgeAccess
    retriever: PermissionAwareRetriever
    chat_memory: ChatMemoryProvider

    async def close(self):
        await self.orchestrator.shutdown()
        if isinstance(self.chat_memory.store, RedisChatMemoryStore):
            await self.chat_memory.store.close()


def build_registry(
    config: Settings,
    session_maker: async_sessionmaker,
    *,
    file_storage: Optional[FileStorage] = None,
    embedding_store: Optional[EmbeddingStore] = None,
) -> KnowledgeRegistry:
    """
    只构建元数据层 (Worker 进程不需要嵌入模型与对话记忆)。
    """
    file_storage = file_storage or create_file_storage(config)
    embedding_store = embedding_store or create_embedding_store(config)
    synchronizer = PermissionMetadataSynchronizer(
        embedding_store,
        max_attempts=config.PERMISSION_SYNC_MAX_ATTEMPTS,
        wait_seconds=config.PERMISSION_SYNC_WAIT_SECONDS,
    )
    return KnowledgeRegistry(
        session_maker,
        file_storage,
        embedding_store,
        synchronizer,
        reject_duplicate_checksum=config.KNOWLEDGE_REJECT_DUPLICATE_CHECKSUM,
    )


def build_services(
    config: Settings,
    session_maker: async_sessionmaker,
    *,
    file_storage: Optional[FileStorage] = None,
    embedding_store: Optional[EmbeddingStore] = None,
    embed_model: Optional[Embeddings] = None,
    tokenizer: Optional[Tokenizer] = None,
    chat_memory_store: Optional[ChatMemoryStore] = None,
) -> Services:
    """
    关键字参数用于替换具体实现 (测试时注入内存版本)，未提供时按配置创建。
    """
    registry = build_registry(config, session_maker, file_storage=file_storage, embedding_store=embedding_store)
    file_storage = registry.file_storage
    embedding_store = registry.embedding_store
    embed_model = embed_model or setup_embed_model(config.EMBED_MODEL)
    if tokenizer is None:
        try:
            tokenizer = build_tokenizer(config.CHAT_MEMORY_TOKENIZER_PROVIDER, config.CHAT_MEMORY_TOKENIZER_MODEL)
        except ValueError as e:
            raise StartupError(str(e)) from e

    orchestrator = IngestionOrchestrator(
        registry=registry,
        embedding_store=embedding_store,
        embedder=SegmentEmbedder(embed_model, tokenizer),
        splitter=build_splitter(config.CHUNK_SIZE, config.CHUNK_OVERLAP),
        max_workers=config.INGESTION_MAX_WORKERS,
    )
    knowledge_service = KnowledgeService(registry, file_storage, orchestrator, config.TEMP_DIR)

    if chat_memory_store is None:
        chat_memory_store = RedisChatMemoryStore(
            Redis.from_url(config.REDIS_URL, decode_responses=True),
            key_prefix=config.CHAT_MEMORY_KEY_PREFIX,
        )
    chat_config = ChatMemoryConfig.from_settings(config, tokenizer)

    return Services(
        session_maker=session_maker,
        file_storage=file_storage,
        embedding_store=embedding_store,
        synchronizer=registry.synchronizer,
        registry=registry,
        orchestrator=orchestrator,
        knowledge_service=knowledge_service,
        knowledge_access=KnowledgeAccess(registry, knowledge_service),
        retriever=PermissionAwareRetriever(
            embedding_store, embed_model, top_k=config.TOP_K, min_score=config.MIN_SCORE
        ),
        chat_memory=ChatMemoryProvider(chat_config, chat_memory_store),
    )


async def run_startup_checks(services: Services):
    """
    启动自检：任一失败抛出 StartupError，不做重试。
    """
    logger.info("⏳ 正在检查向量库...")
    await asyncio.to_thread(services.embedding_store.check_connection_and_init)

    logger.info("⏳ 正在检查文件存储...")
    await asyncio.to_thread(services.file_storage.check_connection)

    logger.info("⏳ 正在检查对话记忆存储...")
    await services.chat_memory.check_connection()

    async with services.session_maker() as db:
        await UserService.ensure_wildcard_user(db)
