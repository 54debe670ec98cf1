# docvault/domain/schemas/retrieval.py
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    knowledge_ids: Optional[List[str]] = None
    top_k: Optional[int] = Field(default=None, ge=1, le=100)


class SearchHit(BaseModel):
    text: str
    score: float
    knowledge_id: Optional[str] = None
    metadata: Dict[str, Any] = {}
