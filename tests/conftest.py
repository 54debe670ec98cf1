import asyncio
import threading
import pytest
import pytest_asyncio
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence
from unittest.mock import patch
from httpx import AsyncClient, ASGITransport

from langchain_core.documents import Document
from langchain_core.messages import BaseMessage
from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import create_async_engine

from docvault.bootstrap import Services, build_services
from docvault.core.config import settings
from docvault.core.exceptions import EmbeddingStoreError
from docvault.core.security import create_access_token
from docvault.db.session import build_session_maker
from docvault.domain import metadata_keys
from docvault.main import app
from docvault.services.chat.memory_store import InMemoryChatMemoryStore
from docvault.services.retrieval.embedding_store import (
    EmbeddingMatch,
    EmbeddingStore,
    require_permission_queries,
)
from docvault.services.retrieval.es_client import get_es_client
from docvault.services.storage.file_storage import LocalFileStorage, get_minio_client

# ==========================================
# 1. 数据库 Fixtures
# ==========================================

@pytest_asyncio.fixture(name="session_maker")
async def session_maker_fixture(tmp_path):
    # 编排器在后台任务中并发打开 session，使用文件库而不是 :memory: + StaticPool
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield build_session_maker(engine)

    await engine.dispose()


@pytest_asyncio.fixture(name="db_session")
async def db_session_fixture(session_maker):
    async with session_maker() as session:
        yield session

# ==========================================
# 2. 存储 Fakes
# ==========================================

class FakeEmbeddingStore(EmbeddingStore):
    """
    进程内向量库：权限过滤与 Elasticsearch 实现一样按子串匹配。
    fail_set_payload / fail_upsert 用于模拟存储故障；
    hold_next_set_payload() 让下一次 set_payload 在写入前阻塞，用于构造并发交错。
    """

    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}
        self.fail_set_payload = 0
        self.fail_upsert = False
        self.set_payload_calls: List[tuple] = []
        self._hold: Optional[tuple] = None
        self._next_id = 0

    def check_connection_and_init(self):
        pass

    def upsert(self, segments: Sequence[Document], embeddings: Sequence[List[float]]) -> List[str]:
        if self.fail_upsert:
            raise EmbeddingStoreError("upsert failed")
        ids = []
        for segment, vector in zip(segments, embeddings):
            self._next_id += 1
            record_id = f"v{self._next_id}"
            self.records[record_id] = {
                "text": segment.page_content,
                "vector": list(vector),
                "metadata": dict(segment.metadata),
            }
            ids.append(record_id)
        return ids

    def hold_next_set_payload(self) -> tuple:
        """返回 (entered, release) 两个 threading.Event"""
        entered, release = threading.Event(), threading.Event()
        self._hold = (entered, release)
        return entered, release

    def set_payload(self, knowledge_id: str, field_name: str, value: Any) -> int:
        self.set_payload_calls.append((knowledge_id, field_name, value))
        if self._hold is not None:
            entered, release = self._hold
            self._hold = None
            entered.set()
            release.wait(timeout=5)
        if self.fail_set_payload:
            self.fail_set_payload -= 1
            raise EmbeddingStoreError("set_payload failed")
        updated = 0
        for record in self.records.values():
            if record["metadata"].get(metadata_keys.KNOWLEDGE_ID) == str(knowledge_id):
                record["metadata"][field_name] = value
                updated += 1
        return updated

    def delete_by_knowledge_id(self, knowledge_id: str) -> int:
        doomed = [
            rid for rid, r in self.records.items()
            if r["metadata"].get(metadata_keys.KNOWLEDGE_ID) == str(knowledge_id)
        ]
        for rid in doomed:
            del self.records[rid]
        return len(doomed)

    def query(
        self,
        vector: List[float],
        permission_queries: Sequence[str],
        knowledge_ids: Optional[Sequence[str]] = None,
        top_k: int = 5,
        min_score: float = 0.0,
    ) -> List[EmbeddingMatch]:
        require_permission_queries(permission_queries)
        matches = []
        for rid, record in self.records.items():
            metadata = record["metadata"]
            entry = metadata.get(metadata_keys.PERMISSION) or ""
            if not any(q in entry for q in permission_queries):
                continue
            if knowledge_ids and metadata.get(metadata_keys.KNOWLEDGE_ID) not in {str(k) for k in knowledge_ids}:
                continue
            matches.append(EmbeddingMatch(id=rid, score=1.0, text=record["text"], metadata=dict(metadata)))
        return [m for m in matches if m.score >= min_score][:top_k]

    def count(self, knowledge_id: Optional[str] = None) -> int:
        if knowledge_id is None:
            return len(self.records)
        return sum(
            1 for r in self.records.values()
            if r["metadata"].get(metadata_keys.KNOWLEDGE_ID) == str(knowledge_id)
        )

    def delete_all(self):
        self.records.clear()

    def permissions_of(self, knowledge_id) -> set:
        return {
            r["metadata"].get(metadata_keys.PERMISSION)
            for r in self.records.values()
            if r["metadata"].get(metadata_keys.KNOWLEDGE_ID) == str(knowledge_id)
        }


@pytest.fixture
def embedding_store() -> FakeEmbeddingStore:
    return FakeEmbeddingStore()


@pytest.fixture
def file_storage(tmp_path) -> LocalFileStorage:
    return LocalFileStorage(tmp_path / "files")

# ==========================================
# 3. Embedding & Tokenizer Fakes
# ==========================================

class FakeEmbeddings:
    """
    用于测试的伪造 Embedding 类，返回固定维度的浮点数向量。
    fail=True 时模拟模型服务不可用。
    """
    def __init__(self, dims: int = 8):
        self.dims = dims
        self.fail = False

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        if self.fail:
            raise RuntimeError("embedding service unavailable")
        return [[0.1] * self.dims for _ in texts]

    def embed_query(self, text: str) -> List[float]:
        return [0.1] * self.dims


class FakeTokenizer:
    """
    按空白切词计数，避免测试中下载 tiktoken 编码表。
    """
    def count_text(self, text: str) -> int:
        return len(text.split())

    def count_messages(self, messages: Sequence[BaseMessage]) -> int:
        return sum(self.count_text(str(m.content)) for m in messages)


@pytest.fixture
def fake_embeddings() -> FakeEmbeddings:
    return FakeEmbeddings()


@pytest.fixture
def fake_tokenizer() -> FakeTokenizer:
    return FakeTokenizer()

# ==========================================
# 4. 组装
# ==========================================

@pytest.fixture
def test_settings(tmp_path):
    return settings.model_copy(update={
        "TEMP_DIR": tmp_path / "tmp",
        "CHUNK_SIZE": 20,
        "CHUNK_OVERLAP": 0,
        "PERMISSION_SYNC_MAX_ATTEMPTS": 2,
        "PERMISSION_SYNC_WAIT_SECONDS": 0.0,
        "CHAT_MEMORY_WINDOW": "message",
        "CHAT_MEMORY_MAX_MESSAGES": 4,
    })


@pytest_asyncio.fixture
async def services(
    test_settings, session_maker, file_storage, embedding_store, fake_embeddings, fake_tokenizer
) -> AsyncGenerator[Services, None]:
    services = build_services(
        test_settings,
        session_maker,
        file_storage=file_storage,
        embedding_store=embedding_store,
        embed_model=fake_embeddings,
        tokenizer=fake_tokenizer,
        chat_memory_store=InMemoryChatMemoryStore(),
    )
    yield services
    await services.close()


@pytest.fixture
def write_file(tmp_path):
    def _write(name: str, content: str) -> Path:
        path = tmp_path / "uploads" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path
    return _write


@pytest.fixture
def wait_ingestion(services):
    async def _wait():
        await services.orchestrator.wait_idle()
        # 让 done callback 先执行
        await asyncio.sleep(0)
    return _wait

# ==========================================
# 5. HTTP Client
# ==========================================

@pytest_asyncio.fixture
async def async_client(services) -> AsyncGenerator[AsyncClient, None]:
    # 绕过 lifespan，直接注入测试组装好的 services
    app.state.services = services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.state.services = None


@pytest.fixture
def auth_headers():
    def _headers(username: str, roles: Optional[List[str]] = None) -> Dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(username, roles=roles)}"}
    return _headers

# ==========================================
# 6. 外部客户端 Mocks
# ==========================================

@pytest.fixture
def mock_minio():
    get_minio_client.cache_clear()
    with patch("docvault.services.storage.file_storage.Minio") as mock:
        client = mock.return_value
        client.bucket_exists.return_value = True
        yield client
    get_minio_client.cache_clear()


@pytest.fixture
def mock_es_client():
    get_es_client.cache_clear()
    with patch("docvault.services.retrieval.es_client.Elasticsearch") as mock_cls:
        client = mock_cls.return_value
        client.ping.return_value = True
        client.indices.exists.return_value = False
        yield client
    get_es_client.cache_clear()

