# docvault/services/knowledge/knowledge_crud.py
"""
Knowledge 表的持久化操作。只负责读写，不包含业务规则；
事务边界由调用方 (KnowledgeRegistry) 通过 session 控制。
"""
import uuid
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import update
from sqlmodel import col, func, select
from sqlmodel.ext.asyncio.session import AsyncSession

from docvault.domain.models import (
    IngestionStatus,
    Knowledge,
    KnowledgePermission,
    KnowledgeType,
)
from docvault.domain.permission import Permission


async def get_knowledge(db: AsyncSession, knowledge_id: uuid.UUID) -> Optional[Knowledge]:
    return await db.get(Knowledge, knowledge_id)


async def save_knowledge(db: AsyncSession, knowledge: Knowledge, commit: bool = True) -> Knowledge:
    knowledge.last_updated_at = datetime.now()
    db.add(knowledge)
    if commit:
        await db.commit()
        await db.refresh(knowledge)
    return knowledge


async def bump_permission_version(db: AsyncSession, knowledge_id: uuid.UUID):
    """
    在数据库中原子自增，避免并发变更互相覆盖。调用方负责提交并 refresh。
    """
    stmt = (
        update(Knowledge)
        .where(col(Knowledge.id) == knowledge_id)
        .values(permission_version=Knowledge.permission_version + 1)
        .execution_options(synchronize_session=False)
    )
    await db.exec(stmt)


async def get_permission_version(db: AsyncSession, knowledge_id: uuid.UUID) -> Optional[int]:
    stmt = select(Knowledge.permission_version).where(col(Knowledge.id) == knowledge_id)
    return (await db.exec(stmt)).first()


async def set_permission_synced_version(db: AsyncSession, knowledge_id: uuid.UUID, version: int):
    # 不刷新 last_updated_at，避免干扰摄取超时判断
    stmt = (
        update(Knowledge)
        .where(col(Knowledge.id) == knowledge_id)
        .values(permission_synced_version=version)
        .execution_options(synchronize_session=False)
    )
    await db.exec(stmt)
    await db.commit()


async def transition_ingestion_status(
    db: AsyncSession,
    knowledge_id: uuid.UUID,
    status: IngestionStatus,
    token_count: Optional[int],
    updated_before: Optional[datetime] = None,
) -> bool:
    """
    只更新仍处于 PENDING 的行。返回 False 表示条目不存在或已离开 PENDING。
    updated_before 额外要求该行在此之前未被改动 (超时判定用)。
    """
    conditions = [
        col(Knowledge.id) == knowledge_id,
        col(Knowledge.ingestion_status) == IngestionStatus.PENDING,
    ]
    if updated_before is not None:
        conditions.append(col(Knowledge.last_updated_at) < updated_before)
    stmt = (
        update(Knowledge)
        .where(*conditions)
        .values(ingestion_status=status, token_count=token_count, last_updated_at=datetime.now())
        .execution_options(synchronize_session=False)
    )
    result = await db.exec(stmt)
    await db.commit()
    return result.rowcount > 0


async def delete_knowledge(db: AsyncSession, knowledge: Knowledge):
    await db.delete(knowledge)
    await db.commit()


async def count_checksum(db: AsyncSession, checksum: str) -> int:
    stmt = select(func.count()).select_from(Knowledge).where(Knowledge.checksum == checksum)
    return (await db.exec(stmt)).one()


async def find_by_checksum(
    db: AsyncSession,
    checksum: str,
    knowledge_type: Optional[KnowledgeType] = None,
) -> Sequence[Knowledge]:
    stmt = select(Knowledge).where(Knowledge.checksum == checksum)
    if knowledge_type is not None:
        stmt = stmt.where(Knowledge.type == knowledge_type)
    return (await db.exec(stmt.order_by(col(Knowledge.created_at)))).all()


async def list_knowledge(db: AsyncSession) -> Sequence[Knowledge]:
    stmt = select(Knowledge).order_by(col(Knowledge.created_at))
    return (await db.exec(stmt)).all()


async def list_visible_knowledge(db: AsyncSession, usernames: Iterable[str]) -> Sequence[Knowledge]:
    """
    返回任一 username 拥有 NONE 以上权限的知识。
    用子查询而不是 join + distinct，避免 JSON 列参与去重。
    """
    granted = select(KnowledgePermission.knowledge_id).where(
        col(KnowledgePermission.username).in_(list(usernames)),
        KnowledgePermission.permission != Permission.NONE,
    )
    stmt = (
        select(Knowledge)
        .where(col(Knowledge.id).in_(granted))
        .order_by(col(Knowledge.created_at))
    )
    return (await db.exec(stmt)).all()


async def list_pending_permission_sync(db: AsyncSession, limit: int = 100) -> Sequence[Knowledge]:
    stmt = (
        select(Knowledge)
        .where(col(Knowledge.permission_synced_version) < col(Knowledge.permission_version))
        .order_by(col(Knowledge.last_updated_at))
        .limit(limit)
    )
    return (await db.exec(stmt)).all()


async def list_stale_pending(db: AsyncSession, older_than: datetime) -> Sequence[Knowledge]:
    stmt = select(Knowledge).where(
        Knowledge.ingestion_status == IngestionStatus.PENDING,
        Knowledge.last_updated_at < older_than,
    )
    return (await db.exec(stmt)).all()
