# docvault/domain/models/user.py
from datetime import datetime
from typing import List, TYPE_CHECKING

from sqlmodel import SQLModel, Field, Relationship

if TYPE_CHECKING:
    from .knowledge import KnowledgePermission


class User(SQLModel, table=True):
    # 用户名即身份标识，来自 JWT 的 sub 字段
    username: str = Field(primary_key=True, max_length=255)
    created_at: datetime = Field(default_factory=datetime.now)

    permissions: List["KnowledgePermission"] = Relationship(
        back_populates="user",
        sa_relationship_kwargs={"lazy": "selectin", "cascade": "all, delete-orphan"},
    )


class UserRead(SQLModel):
    username: str
    created_at: datetime
