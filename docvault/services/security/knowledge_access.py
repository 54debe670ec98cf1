# docvault/services/security/knowledge_access.py
import asyncio
import logging
from pathlib import Path
from typing import Optional, Sequence

from docvault.core.exceptions import ForbiddenError, KnowledgeNotFoundError
from docvault.domain.models import Knowledge
from docvault.domain.permission import ANY_USERNAME, Permission
from docvault.services.knowledge.knowledge_service import KnowledgeService, NamedFile
from docvault.services.knowledge.registry import KnowledgeId, KnowledgeRegistry
from docvault.services.security.identity import Identity
from docvault.services.util import generate_checksum

logger = logging.getLogger(__name__)


class KnowledgeAccess:
    """
    带身份校验的知识管理入口 (API 层只调用这里)。

    - 读：权限为 NONE 时按 "不存在" 处理，不泄露条目存在性
    - 写：匿名 / 只读调用方返回 Forbidden
    - 管理员不受限制
    """

    def __init__(self, registry: KnowledgeRegistry, knowledge_service: KnowledgeService):
        self.registry = registry
        self.knowledge_service = knowledge_service

    async def list(self, identity: Identity) -> Sequence[Knowledge]:
        if identity.is_admin:
            return await self.registry.list_all()
        if identity.is_anonymous:
            return await self.registry.list_visible([ANY_USERNAME])
        return await self.registry.list_visible([identity.username, ANY_USERNAME])

    async def get(self, identity: Identity, knowledge_id: KnowledgeId) -> Knowledge:
        knowledge = await self.registry.get(knowledge_id)
        if identity.is_admin:
            return knowledge
        if not knowledge.get_permission(identity.username).grants_read():
            raise KnowledgeNotFoundError(knowledge_id)
        return knowledge

    async def get_file(self, identity: Identity, knowledge_id: KnowledgeId) -> NamedFile:
        knowledge = await self.get(identity, knowledge_id)
        return await self.knowledge_service.get_file(knowledge.id)

    async def add_source(
        self,
        identity: Identity,
        file_path: Path,
        file_name: str,
        content_type: str,
        label: Optional[str] = None,
    ) -> Knowledge:
        self._require_authenticated(identity)
        existing = await self._find_visible_duplicate(identity, file_path)
        if existing is not None:
            logger.info(f"用户 {identity.username} 已可见相同内容的知识 {existing.id}，直接返回。")
            return existing
        return await self.knowledge_service.add_source(
            file_path, file_name, content_type, owner=identity.username, label=label
        )

    async def add_text(self, identity: Identity, text: str, label: Optional[str] = None) -> Knowledge:
        self._require_authenticated(identity)
        return await self.knowledge_service.add_text(text, label=label, owner=identity.username)

    async def update_source(
        self,
        identity: Identity,
        knowledge_id: KnowledgeId,
        file_path: Path,
        file_name: str,
        content_type: str,
    ) -> Knowledge:
        await self._enforce_editable(identity, knowledge_id)
        return await self.knowledge_service.update_source(knowledge_id, file_path, file_name, content_type)

    async def delete(self, identity: Identity, knowledge_id: KnowledgeId):
        await self._enforce_editable(identity, knowledge_id)
        await self.knowledge_service.delete(knowledge_id)

    async def retry_failed_ingestion(self, identity: Identity, knowledge_id: KnowledgeId) -> Knowledge:
        await self._enforce_editable(identity, knowledge_id)
        return await self.knowledge_service.retry_failed_ingestion(knowledge_id)

    async def set_permission(
        self,
        identity: Identity,
        knowledge_id: KnowledgeId,
        username: str,
        permission: Permission,
    ) -> Knowledge:
        await self._enforce_editable(identity, knowledge_id)
        return await self.knowledge_service.set_permission(knowledge_id, username, permission)

    async def remove_permission(self, identity: Identity, knowledge_id: KnowledgeId, username: str) -> Knowledge:
        await self._enforce_editable(identity, knowledge_id)
        return await self.knowledge_service.remove_permission(knowledge_id, username)

    async def add_tag(self, identity: Identity, knowledge_id: KnowledgeId, tag: str) -> Knowledge:
        await self._enforce_editable(identity, knowledge_id)
        return await self.registry.add_tag(knowledge_id, tag)

    async def remove_tag(self, identity: Identity, knowledge_id: KnowledgeId, tag: str) -> Knowledge:
        await self._enforce_editable(identity, knowledge_id)
        return await self.registry.remove_tag(knowledge_id, tag)

    async def set_label(self, identity: Identity, knowledge_id: KnowledgeId, label: Optional[str]) -> Knowledge:
        await self._enforce_editable(identity, knowledge_id)
        return await self.registry.set_label(knowledge_id, label)

    # ------------------------------------------------------------------

    @staticmethod
    def _require_authenticated(identity: Identity):
        if identity.is_anonymous:
            raise ForbiddenError("匿名用户不能添加知识")

    async def _enforce_editable(self, identity: Identity, knowledge_id: KnowledgeId) -> Knowledge:
        knowledge = await self.registry.get(knowledge_id)
        if identity.is_admin:
            return knowledge
        if identity.is_anonymous:
            raise ForbiddenError("匿名用户不能修改知识")
        permission = knowledge.get_permission(identity.username)
        if permission == Permission.NONE:
            raise KnowledgeNotFoundError(knowledge_id)
        if not permission.grants_write():
            raise ForbiddenError(f"用户 {identity.username} 对知识 {knowledge_id} 只有只读权限")
        return knowledge

    async def _find_visible_duplicate(self, identity: Identity, file_path: Path) -> Optional[Knowledge]:
        checksum = await asyncio.to_thread(generate_checksum, Path(file_path))
        for candidate in await self.registry.find_by_checksum(checksum):
            if candidate.get_permission(identity.username).grants_read():
                return candidate
        return None
