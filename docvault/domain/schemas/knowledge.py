# docvault/domain/schemas/knowledge.py
from typing import Optional
from pydantic import BaseModel, Field

from docvault.domain.permission import Permission


class PermissionSetRequest(BaseModel):
    permission: Permission = Permission.READONLY


class LabelUpdateRequest(BaseModel):
    label: Optional[str] = None


class TagRequest(BaseModel):
    tag: str = Field(min_length=1, max_length=64)


class TextKnowledgeCreate(BaseModel):
    text: str = Field(min_length=1)
    label: Optional[str] = None


class PermissionRead(BaseModel):
    knowledge_id: str
    username: str
    permission: Permission
