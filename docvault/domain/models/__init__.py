# docvault/domain/models/__init__.py
from .knowledge import (
    Knowledge, KnowledgeRead, KnowledgePermission, KnowledgeType, IngestionStatus
)
from .user import User, UserRead

__all__ = [
    "Knowledge", "KnowledgeRead", "KnowledgePermission", "KnowledgeType", "IngestionStatus",
    "User", "UserRead",
]
