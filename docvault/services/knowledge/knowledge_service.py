# docvault/services/knowledge/knowledge_service.py
import asyncio
import logging
import os
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from docvault.core.exceptions import (
    EmptyFileError,
    IllegalPermissionModificationError,
)
from docvault.domain.models import IngestionStatus, Knowledge, KnowledgeType
from docvault.domain.permission import Permission
from docvault.services.ingest.orchestrator import IngestionOrchestrator, IngestionRequest
from docvault.services.knowledge.registry import KnowledgeId, KnowledgeRegistry
from docvault.services.storage.file_storage import FileStorage
from docvault.services.util import generate_checksum

logger = logging.getLogger(__name__)

TEXT_CONTENT_TYPE = "text/plain"


@dataclass
class NamedFile:
    name: str
    content_type: str
    content: bytes


class KnowledgeService:
    """
    知识源管理：文件入库、更新源文件、失败重试、下载，以及权限变更规则。
    文件按 checksum 只存一份；编排器拿到的是临时目录中的副本。
    """

    def __init__(
        self,
        registry: KnowledgeRegistry,
        file_storage: FileStorage,
        orchestrator: IngestionOrchestrator,
        temp_dir: Path,
    ):
        self.registry = registry
        self.file_storage = file_storage
        self.orchestrator = orchestrator
        self.temp_dir = Path(temp_dir)

    # ------------------------------------------------------------------
    # 源文件
    # ------------------------------------------------------------------

    async def add_source(
        self,
        file_path: Path,
        file_name: str,
        content_type: str,
        owner: Optional[str] = None,
        label: Optional[str] = None,
        knowledge_type: KnowledgeType = KnowledgeType.FILE,
    ) -> Knowledge:
        file_path = Path(file_path)
        if file_path.stat().st_size == 0:
            raise EmptyFileError(file_name)

        checksum = await asyncio.to_thread(generate_checksum, file_path)
        await self._store_file(checksum, file_path, file_name, content_type)

        knowledge = await self.registry.create(
            knowledge_type=knowledge_type,
            checksum=checksum,
            content_type=content_type,
            source=file_name,
            label=label or file_name,
            owner=owner,
        )
        await self._submit(knowledge, file_path)
        return knowledge

    async def add_text(self, text: str, label: Optional[str] = None, owner: Optional[str] = None) -> Knowledge:
        if not text.strip():
            raise EmptyFileError(label or "text")
        path = await asyncio.to_thread(self._write_temp_text, text)
        try:
            name = label or f"text-{uuid.uuid4().hex[:8]}.txt"
            return await self.add_source(
                path, name, TEXT_CONTENT_TYPE, owner=owner, label=label, knowledge_type=KnowledgeType.TEXT
            )
        finally:
            path.unlink(missing_ok=True)

    async def update_source(
        self,
        knowledge_id: KnowledgeId,
        file_path: Path,
        file_name: str,
        content_type: str,
    ) -> Knowledge:
        file_path = Path(file_path)
        knowledge = await self.registry.get(knowledge_id)
        if file_path.stat().st_size == 0:
            raise EmptyFileError(file_name)

        # 从写入新文件到提交摄取，整个过程占住该知识
        with self.orchestrator.reserve(knowledge.id):
            checksum = await asyncio.to_thread(generate_checksum, file_path)
            if checksum == knowledge.checksum:
                logger.info(f"知识 {knowledge.id} 源文件内容未变化 (checksum={checksum})，跳过更新。")
                return knowledge

            old_checksum = knowledge.checksum
            await self._store_file(checksum, file_path, file_name, content_type)

            # 旧版本的切片不再对应当前内容
            await asyncio.to_thread(self.registry.embedding_store.delete_by_knowledge_id, str(knowledge.id))

            knowledge = await self.registry.reset_for_ingestion(
                knowledge.id, checksum=checksum, source=file_name, content_type=content_type
            )
            if await self.registry.count_checksum(old_checksum) == 0:
                try:
                    await asyncio.to_thread(self.file_storage.delete, old_checksum)
                except Exception as e:
                    logger.error(f"⚠️ 清理旧文件 {old_checksum} 失败: {e}", exc_info=True)

            await self._submit(knowledge, file_path)
        return knowledge

    async def retry_failed_ingestion(self, knowledge_id: KnowledgeId) -> Knowledge:
        knowledge = await self.registry.get(knowledge_id)
        if knowledge.ingestion_status != IngestionStatus.FAILED:
            logger.info(f"知识 {knowledge.id} 状态为 {knowledge.ingestion_status.value}，无需重试。")
            return knowledge

        with self.orchestrator.reserve(knowledge.id):
            knowledge = await self.registry.get(knowledge.id)
            if knowledge.ingestion_status != IngestionStatus.FAILED:
                return knowledge
            stored = await asyncio.to_thread(self.file_storage.get, knowledge.checksum)
            path = await asyncio.to_thread(self._write_temp_bytes, stored.content, Path(knowledge.source).suffix)
            try:
                knowledge = await self.registry.reset_for_ingestion(knowledge.id)
                logger.info(f"🔄 重新摄取失败的知识 {knowledge.id}")
                await self._submit(knowledge, path)
            finally:
                path.unlink(missing_ok=True)
        return knowledge

    async def get_file(self, knowledge_id: KnowledgeId) -> NamedFile:
        knowledge = await self.registry.get(knowledge_id)
        stored = await asyncio.to_thread(self.file_storage.get, knowledge.checksum)
        return NamedFile(name=knowledge.source, content_type=knowledge.content_type, content=stored.content)

    async def delete(self, knowledge_id: KnowledgeId):
        await self.registry.delete(knowledge_id)

    # ------------------------------------------------------------------
    # 权限
    # ------------------------------------------------------------------

    async def set_permission(self, knowledge_id: KnowledgeId, username: str, permission: Permission) -> Knowledge:
        knowledge = await self.registry.get(knowledge_id)
        if knowledge.ingestion_status != IngestionStatus.SUCCEEDED:
            raise IllegalPermissionModificationError("只能修改已成功摄取的知识的权限")
        if permission == Permission.NONE:
            raise IllegalPermissionModificationError("不能显式设置 NONE，请移除权限条目")
        if permission == Permission.OWNER:
            raise IllegalPermissionModificationError("不能授予 OWNER 权限")
        if knowledge.owner() == username:
            raise IllegalPermissionModificationError("不能修改拥有者的权限")
        return await self.registry.set_permission(knowledge.id, username, permission)

    async def remove_permission(self, knowledge_id: KnowledgeId, username: str) -> Knowledge:
        knowledge = await self.registry.get(knowledge_id)
        if knowledge.owner() == username:
            raise IllegalPermissionModificationError("不能移除拥有者的权限")
        return await self.registry.remove_permission(knowledge.id, username)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    async def _store_file(self, checksum: str, file_path: Path, file_name: str, content_type: str):
        # 同一内容只存一份
        if await asyncio.to_thread(self.file_storage.exists, checksum):
            logger.info(f"文件 {checksum} 已存在于文件存储，复用。")
            return
        await asyncio.to_thread(
            self.file_storage.store,
            checksum,
            file_path,
            {"name": file_name, "content_type": content_type},
        )

    async def _submit(self, knowledge: Knowledge, source_path: Path):
        # 拷贝一份交给编排器，调用方可以立即清理自己的文件
        suffix = Path(knowledge.source).suffix
        copy_path = await asyncio.to_thread(self._copy_to_temp, source_path, suffix)
        try:
            self.orchestrator.submit(IngestionRequest.for_knowledge(knowledge, copy_path, delete_after=True))
        except Exception:
            copy_path.unlink(missing_ok=True)
            raise

    def _temp_path(self, suffix: str) -> Path:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(suffix=suffix, dir=self.temp_dir)
        # 只需要文件名，句柄立即关闭
        os.close(fd)
        return Path(name)

    def _copy_to_temp(self, source_path: Path, suffix: str) -> Path:
        target = self._temp_path(suffix)
        shutil.copyfile(source_path, target)
        return target

    def _write_temp_bytes(self, content: bytes, suffix: str) -> Path:
        target = self._temp_path(suffix)
        target.write_bytes(content)
        return target

    def _write_temp_text(self, text: str) -> Path:
        target = self._temp_path(".txt")
        target.write_text(text, encoding="utf-8")
        return target
