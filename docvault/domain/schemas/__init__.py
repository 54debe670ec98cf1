from .auth import TokenPayload
from .chat import ChatHistoryRead, ChatMessageCreate, ChatMessageRead
from .knowledge import (
    LabelUpdateRequest, PermissionRead, PermissionSetRequest, TagRequest, TextKnowledgeCreate
)
from .retrieval import SearchHit, SearchRequest

__all__ = [
    "TokenPayload",
    "ChatHistoryRead", "ChatMessageCreate", "ChatMessageRead",
    "LabelUpdateRequest", "PermissionRead", "PermissionSetRequest", "TagRequest", "TextKnowledgeCreate",
    "SearchHit", "SearchRequest",
]
