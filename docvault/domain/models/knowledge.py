# docvault/domain/models/knowledge.py
import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, TYPE_CHECKING

from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field, Relationship

from docvault.domain.permission import ANY_USERNAME, Permission

if TYPE_CHECKING:
    from .user import User


class KnowledgeType(str, Enum):
    FILE = "FILE"
    TEXT = "TEXT"


class IngestionStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class KnowledgePermission(SQLModel, table=True):
    """
    Knowledge 与 User 的权限关联表。username 可以是通配用户 "*"。
    """
    __tablename__ = "knowledge_permission"

    knowledge_id: uuid.UUID = Field(foreign_key="knowledge.id", primary_key=True)
    username: str = Field(foreign_key="user.username", primary_key=True)
    permission: Permission = Field(default=Permission.READONLY)

    knowledge: "Knowledge" = Relationship(back_populates="permissions")
    user: Optional["User"] = Relationship(back_populates="permissions")


class Knowledge(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    type: KnowledgeType = Field(nullable=False)
    checksum: str = Field(index=True, nullable=False, description="源文件 MD5，同时是文件存储中的对象名")
    ingestion_status: IngestionStatus = Field(default=IngestionStatus.PENDING, nullable=False)
    token_count: Optional[int] = Field(default=None, description="摄取时 embedding 消耗的 token 数")

    created_at: datetime = Field(default_factory=datetime.now)
    last_updated_at: datetime = Field(default_factory=datetime.now)

    source: str = Field(nullable=False)
    content_type: str = Field(default="application/octet-stream")
    label: Optional[str] = Field(default=None)
    # JSON 列：修改时必须整体重新赋值，原地 append 不会被 SQLAlchemy 追踪
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    # 权限同步 outbox：permission_synced_version < permission_version 表示向量库 payload 待同步
    permission_version: int = Field(default=0, nullable=False)
    permission_synced_version: int = Field(default=0, nullable=False)

    permissions: List[KnowledgePermission] = Relationship(
        back_populates="knowledge",
        sa_relationship_kwargs={"lazy": "selectin", "cascade": "all, delete-orphan"},
    )

    def permission_map(self) -> Dict[str, Permission]:
        return {p.username: p.permission for p in self.permissions}

    def get_permission(self, username: Optional[str]) -> Permission:
        """
        解析顺序：用户的显式条目 -> 通配用户条目 -> NONE
        """
        entries = self.permission_map()
        if username is not None and username in entries:
            return entries[username]
        return entries.get(ANY_USERNAME, Permission.NONE)

    def owner(self) -> Optional[str]:
        for entry in self.permissions:
            if entry.permission == Permission.OWNER:
                return entry.username
        return None

    def put_permission(self, username: str, permission: Permission):
        for entry in self.permissions:
            if entry.username == username:
                entry.permission = permission
                return
        self.permissions.append(
            KnowledgePermission(knowledge_id=self.id, username=username, permission=permission)
        )

    def drop_permission(self, username: str) -> bool:
        for entry in list(self.permissions):
            if entry.username == username:
                self.permissions.remove(entry)
                return True
        return False

    @property
    def needs_permission_sync(self) -> bool:
        return self.permission_synced_version < self.permission_version


class KnowledgeRead(SQLModel):
    id: uuid.UUID
    type: KnowledgeType
    checksum: str
    ingestion_status: IngestionStatus
    token_count: Optional[int] = None
    created_at: datetime
    last_updated_at: datetime
    source: str
    content_type: str
    label: Optional[str] = None
    tags: List[str] = []
    permissions: Dict[str, Permission] = {}

    @classmethod
    def from_knowledge(cls, knowledge: Knowledge) -> "KnowledgeRead":
        return cls(
            id=knowledge.id,
            type=knowledge.type,
            checksum=knowledge.checksum,
            ingestion_status=knowledge.ingestion_status,
            token_count=knowledge.token_count,
            created_at=knowledge.created_at,
            last_updated_at=knowledge.last_updated_at,
            source=knowledge.source,
            content_type=knowledge.content_type,
            label=knowledge.label,
            tags=list(knowledge.tags or []),
            permissions=knowledge.permission_map(),
        )
