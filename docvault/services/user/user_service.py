import logging
from typing import Optional

from sqlmodel.ext.asyncio.session import AsyncSession

from docvault.core.exceptions import KnowledgeNotFoundError, UserNotFoundError
from docvault.domain.models.user import User
from docvault.domain.permission import ANY_USERNAME, Permission
from docvault.services.chat.provider import ChatMemoryProvider
from docvault.services.knowledge.registry import KnowledgeRegistry
from docvault.services.security.permission_metadata import username_probe

logger = logging.getLogger(__name__)


class UserService:
    @staticmethod
    async def get_by_username(db: AsyncSession, username: str) -> Optional[User]:
        return await db.get(User, username)

    @staticmethod
    async def register(db: AsyncSession, username: str) -> User:
        """
        幂等注册：用户已存在时直接返回。
        """
        username_probe(username)
        user = await db.get(User, username)
        if user:
            return user
        user = User(username=username)
        db.add(user)
        await db.commit()
        await db.refresh(user)
        logger.info(f"👤 新用户已注册: {username}")
        return user

    @staticmethod
    async def ensure_wildcard_user(db: AsyncSession) -> User:
        return await UserService.register(db, ANY_USERNAME)

    @staticmethod
    async def delete_user(
        db: AsyncSession,
        registry: KnowledgeRegistry,
        username: str,
        chat_memory: Optional[ChatMemoryProvider] = None,
    ):
        """
        注销用户：
        - 该用户拥有的知识整体删除 (元数据、向量、无人引用的文件)
        - 其他知识上的授权通过 registry 移除，向量库的权限元数据同步更新
        - 该用户的对话会话一并清理
        """
        if username == ANY_USERNAME:
            raise ValueError("通配用户不能删除")
        user = await db.get(User, username)
        if not user:
            raise UserNotFoundError(username)

        owned = [p.knowledge_id for p in user.permissions if p.permission == Permission.OWNER]
        granted = [p.knowledge_id for p in user.permissions if p.permission != Permission.OWNER]
        for knowledge_id in owned:
            try:
                await registry.delete(knowledge_id)
            except KnowledgeNotFoundError:
                logger.info(f"知识 {knowledge_id} 已被删除，跳过")
        for knowledge_id in granted:
            try:
                await registry.remove_permission(knowledge_id, username)
            except KnowledgeNotFoundError:
                logger.info(f"知识 {knowledge_id} 已被删除，跳过")

        if chat_memory is not None:
            await chat_memory.clear_user_sessions(username)

        # 权限条目已在其他 session 中删除，重新加载关联后再删除用户
        await db.refresh(user, attribute_names=["permissions"])
        await db.delete(user)
        await db.commit()
        logger.info(f"👤 用户 {username} 已删除 (删除了 {len(owned)} 个自有知识，移除了 {len(granted)} 个授权)")
