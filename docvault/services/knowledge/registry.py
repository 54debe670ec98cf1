# docvault/services/knowledge/registry.py
import asyncio
import logging
import uuid
import weakref
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Union

from sqlalchemy.ext.asyncio import async_sessionmaker

from docvault.core.exceptions import (
    DuplicateChecksumError,
    KnowledgeNotFoundError,
    PermissionSyncError,
)
from docvault.domain.models import (
    IngestionStatus,
    Knowledge,
    KnowledgeType,
    User,
)
from docvault.domain.permission import Permission
from docvault.services.knowledge import knowledge_crud
from docvault.services.knowledge.permission_sync import PermissionMetadataSynchronizer
from docvault.services.retrieval.embedding_store import EmbeddingStore
from docvault.services.security.permission_metadata import username_probe
from docvault.services.storage.file_storage import FileStorage

logger = logging.getLogger(__name__)

KnowledgeId = Union[uuid.UUID, str]


def as_knowledge_id(knowledge_id: KnowledgeId) -> uuid.UUID:
    if isinstance(knowledge_id, uuid.UUID):
        return knowledge_id
    try:
        return uuid.UUID(str(knowledge_id))
    except ValueError:
        # 非法 id 与不存在的 id 同样对待
        raise KnowledgeNotFoundError(knowledge_id)


class KnowledgeRegistry:
    """
    知识元数据的唯一写入口。

    - 状态流转：create -> PENDING，编排器回写 SUCCEEDED / FAILED
    - 权限变更：与 permission_version 自增在同一事务内提交，之后立即同步到向量库；
      同步失败时保持待同步状态，由 Worker 定时任务补偿 (至少一次投递)
    - 删除：先提交数据库删除，再尽力清理向量与文件
    """

    MAX_PUSH_ROUNDS = 3

    def __init__(
        self,
        session_maker: async_sessionmaker,
        file_storage: FileStorage,
        embedding_store: EmbeddingStore,
        synchronizer: PermissionMetadataSynchronizer,
        reject_duplicate_checksum: bool = False,
    ):
        self.session_maker = session_maker
        self.file_storage = file_storage
        self.embedding_store = embedding_store
        self.synchronizer = synchronizer
        self.reject_duplicate_checksum = reject_duplicate_checksum
        # 按知识 id 串行化权限推送；锁不再被持有时自动回收
        self._sync_locks: "weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    async def get(self, knowledge_id: KnowledgeId) -> Knowledge:
        knowledge = await self.find(knowledge_id)
        if not knowledge:
            raise KnowledgeNotFoundError(knowledge_id)
        return knowledge

    async def find(self, knowledge_id: KnowledgeId) -> Optional[Knowledge]:
        async with self.session_maker() as db:
            return await knowledge_crud.get_knowledge(db, as_knowledge_id(knowledge_id))

    async def list_all(self) -> Sequence[Knowledge]:
        async with self.session_maker() as db:
            return await knowledge_crud.list_knowledge(db)

    async def list_visible(self, usernames: Iterable[str]) -> Sequence[Knowledge]:
        async with self.session_maker() as db:
            return await knowledge_crud.list_visible_knowledge(db, usernames)

    async def find_by_checksum(
        self,
        checksum: str,
        knowledge_type: Optional[KnowledgeType] = None,
    ) -> Sequence[Knowledge]:
        async with self.session_maker() as db:
            return await knowledge_crud.find_by_checksum(db, checksum, knowledge_type)

    async def count_checksum(self, checksum: str) -> int:
        async with self.session_maker() as db:
            return await knowledge_crud.count_checksum(db, checksum)

    async def get_permission(self, knowledge_id: KnowledgeId, username: Optional[str]) -> Permission:
        knowledge = await self.get(knowledge_id)
        return knowledge.get_permission(username)

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def create(
        self,
        knowledge_type: KnowledgeType,
        checksum: str,
        content_type: str,
        source: str,
        label: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> Knowledge:
        async with self.session_maker() as db:
            if self.reject_duplicate_checksum:
                existing = await knowledge_crud.find_by_checksum(db, checksum, knowledge_type)
                if existing:
                    raise DuplicateChecksumError(checksum)

            knowledge = Knowledge(
                type=knowledge_type,
                checksum=checksum,
                content_type=content_type,
                source=source,
                label=label,
                ingestion_status=IngestionStatus.PENDING,
            )
            if owner:
                await self._ensure_user(db, owner)
                knowledge.put_permission(owner, Permission.OWNER)
                knowledge.permission_version += 1
            knowledge = await knowledge_crud.save_knowledge(db, knowledge)

        logger.info(f"📝 已登记知识 {knowledge.id} (type={knowledge_type.value}, checksum={checksum}, owner={owner})")
        return knowledge

    async def set_ingestion_status(
        self,
        knowledge_id: KnowledgeId,
        status: IngestionStatus,
        token_count: Optional[int] = None,
    ) -> bool:
        """
        PENDING -> SUCCEEDED / FAILED。条目不存在 (摄取期间被删除) 或已不在 PENDING
        (例如被 Watchdog 置为 FAILED) 时丢弃本次回写并返回 False。
        """
        async with self.session_maker() as db:
            applied = await knowledge_crud.transition_ingestion_status(
                db, as_knowledge_id(knowledge_id), status, token_count
            )
        if not applied:
            logger.warning(f"知识 {knowledge_id} 不存在或已不在 PENDING，丢弃摄取状态回写 (status={status.value})")
            return False
        logger.info(f"知识 {knowledge_id} 摄取状态 -> {status.value} (tokens={token_count})")
        return True

    async def reset_for_ingestion(
        self,
        knowledge_id: KnowledgeId,
        checksum: Optional[str] = None,
        source: Optional[str] = None,
        content_type: Optional[str] = None,
        label: Optional[str] = None,
    ) -> Knowledge:
        """
        完整重新摄取的入口：回到 PENDING 并清空 token 计数。
        """
        async with self.session_maker() as db:
            knowledge = await knowledge_crud.get_knowledge(db, as_knowledge_id(knowledge_id))
            if not knowledge:
                raise KnowledgeNotFoundError(knowledge_id)
            if checksum is not None:
                knowledge.checksum = checksum
            if source is not None:
                knowledge.source = source
            if content_type is not None:
                knowledge.content_type = content_type
            if label is not None:
                knowledge.label = label
            knowledge.ingestion_status = IngestionStatus.PENDING
            knowledge.token_count = None
            return await knowledge_crud.save_knowledge(db, knowledge)

    async def delete(self, knowledge_id: KnowledgeId):
        async with self.session_maker() as db:
            knowledge = await knowledge_crud.get_knowledge(db, as_knowledge_id(knowledge_id))
            if not knowledge:
                raise KnowledgeNotFoundError(knowledge_id)
            checksum = knowledge.checksum
            await knowledge_crud.delete_knowledge(db, knowledge)
            remaining = await knowledge_crud.count_checksum(db, checksum)

        logger.info(f"🗑️ 知识 {knowledge_id} 元数据已删除，开始清理向量与文件...")

        # 以下清理均为尽力而为，失败只记录日志
        try:
            await asyncio.to_thread(self.embedding_store.delete_by_knowledge_id, str(knowledge_id))
        except Exception as e:
            logger.error(f"⚠️ 清理知识 {knowledge_id} 的向量失败: {e}", exc_info=True)

        if remaining == 0:
            try:
                await asyncio.to_thread(self.file_storage.delete, checksum)
            except Exception as e:
                logger.error(f"⚠️ 清理文件 {checksum} 失败: {e}", exc_info=True)
        else:
            logger.info(f"文件 {checksum} 仍被 {remaining} 个知识引用，保留。")

    # ------------------------------------------------------------------
    # 权限
    # ------------------------------------------------------------------

    async def set_permission(self, knowledge_id: KnowledgeId, username: str, permission: Permission) -> Knowledge:
        # 用户名不能包含分隔符，否则编码后无法做子串匹配
        username_probe(username)
        async with self.session_maker() as db:
            knowledge = await knowledge_crud.get_knowledge(db, as_knowledge_id(knowledge_id))
            if not knowledge:
                raise KnowledgeNotFoundError(knowledge_id)
            await self._ensure_user(db, username)
            knowledge.put_permission(username, permission)
            await knowledge_crud.bump_permission_version(db, knowledge.id)
            knowledge = await knowledge_crud.save_knowledge(db, knowledge)

        logger.info(f"🔑 知识 {knowledge_id}: {username} -> {permission.value}")
        await self._push_permissions(knowledge.id)
        return knowledge

    async def remove_permission(self, knowledge_id: KnowledgeId, username: str) -> Knowledge:
        async with self.session_maker() as db:
            knowledge = await knowledge_crud.get_knowledge(db, as_knowledge_id(knowledge_id))
            if not knowledge:
                raise KnowledgeNotFoundError(knowledge_id)
            if not knowledge.drop_permission(username):
                logger.info(f"知识 {knowledge_id} 没有 {username} 的权限条目，无需移除。")
                return knowledge
            await knowledge_crud.bump_permission_version(db, knowledge.id)
            knowledge = await knowledge_crud.save_knowledge(db, knowledge)

        logger.info(f"🔑 知识 {knowledge_id}: 移除 {username} 的权限")
        await self._push_permissions(knowledge.id)
        return knowledge

    async def sync_permissions(self, knowledge_id: KnowledgeId) -> bool:
        """
        将当前权限表重新推送到向量库 (幂等)。知识不存在时返回 False。
        """
        try:
            kid = as_knowledge_id(knowledge_id)
        except KnowledgeNotFoundError:
            return False
        return await self._push_permissions(kid)

    async def resync_pending_permissions(self, limit: int = 100) -> int:
        async with self.session_maker() as db:
            pending = await knowledge_crud.list_pending_permission_sync(db, limit)
        if not pending:
            return 0

        logger.info(f"🔁 发现 {len(pending)} 个待同步权限的知识，开始补偿同步...")
        synced = 0
        for knowledge in pending:
            if await self._push_permissions(knowledge.id):
                synced += 1
        return synced

    async def _push_permissions(self, knowledge_id: KnowledgeId) -> bool:
        """
        把数据库中的当前权限表推送到向量库。

        同一知识的推送在进程内串行执行，每次推送都重新读取最新权限表，
        不使用调用方手里的快照。推送完成后如果版本又前进了 (其他进程的并发变更)，
        已同步版本只记到本次写入的版本，再补推一轮；仍未追上时保持待同步，由 Worker 补偿。
        """
        kid = as_knowledge_id(knowledge_id)
        async with self._sync_lock(kid):
            for _ in range(self.MAX_PUSH_ROUNDS):
                knowledge = await self.find(kid)
                if knowledge is None:
                    return False
                version = knowledge.permission_version
                try:
                    await self.synchronizer.aupdate_permission_metadata(knowledge)
                except PermissionSyncError as e:
                    # 向量库中可能残留任意旧版本，确保该版本处于待同步状态
                    logger.warning(f"⚠️ 知识 {kid} 权限同步失败，已加入待同步队列: {e}")
                    await self._mark_pending(kid, version)
                    return False

                async with self.session_maker() as db:
                    await knowledge_crud.set_permission_synced_version(db, kid, version)
                    current = await knowledge_crud.get_permission_version(db, kid)
                if current is None or current == version:
                    return True
                logger.info(f"🔁 知识 {kid} 推送期间权限版本 {version} -> {current}，继续补推。")
            return False

    async def _mark_pending(self, kid: uuid.UUID, version: int):
        async with self.session_maker() as db:
            knowledge = await knowledge_crud.get_knowledge(db, kid)
            if knowledge and knowledge.permission_synced_version >= version:
                await knowledge_crud.set_permission_synced_version(db, kid, version - 1)

    def _sync_lock(self, kid: uuid.UUID) -> asyncio.Lock:
        lock = self._sync_locks.get(kid)
        if lock is None:
            lock = asyncio.Lock()
            self._sync_locks[kid] = lock
        return lock

    # ------------------------------------------------------------------
    # 标签 / 名称
    # ------------------------------------------------------------------

    async def add_tag(self, knowledge_id: KnowledgeId, tag: str) -> Knowledge:
        async with self.session_maker() as db:
            knowledge = await knowledge_crud.get_knowledge(db, as_knowledge_id(knowledge_id))
            if not knowledge:
                raise KnowledgeNotFoundError(knowledge_id)
            if tag not in knowledge.tags:
                knowledge.tags = [*knowledge.tags, tag]
            return await knowledge_crud.save_knowledge(db, knowledge)

    async def remove_tag(self, knowledge_id: KnowledgeId, tag: str) -> Knowledge:
        async with self.session_maker() as db:
            knowledge = await knowledge_crud.get_knowledge(db, as_knowledge_id(knowledge_id))
            if not knowledge:
                raise KnowledgeNotFoundError(knowledge_id)
            knowledge.tags = [t for t in knowledge.tags if t != tag]
            return await knowledge_crud.save_knowledge(db, knowledge)

    async def set_label(self, knowledge_id: KnowledgeId, label: Optional[str]) -> Knowledge:
        async with self.session_maker() as db:
            knowledge = await knowledge_crud.get_knowledge(db, as_knowledge_id(knowledge_id))
            if not knowledge:
                raise KnowledgeNotFoundError(knowledge_id)
            knowledge.label = label
            return await knowledge_crud.save_knowledge(db, knowledge)

    # ------------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------------

    async def fail_stale_ingestions(self, older_than: datetime) -> List[uuid.UUID]:
        async with self.session_maker() as db:
            stale = await knowledge_crud.list_stale_pending(db, older_than)
            failed = []
            for knowledge in stale:
                # 列出之后可能已完成或被重置，条件更新只处理仍然超时的行
                applied = await knowledge_crud.transition_ingestion_status(
                    db, knowledge.id, IngestionStatus.FAILED, None, updated_before=older_than
                )
                if applied:
                    logger.warning(f"⏰ 发现超时任务: 知识 {knowledge.id} 自 {knowledge.last_updated_at} 起一直为 PENDING，强制置为失败。")
                    failed.append(knowledge.id)
            return failed

    async def _ensure_user(self, db, username: str):
        # 权限表外键指向 user 表，首次被授权的用户 (包括通配用户) 自动登记
        if await db.get(User, username) is None:
            db.add(User(username=username))
            await db.flush()
