# docvault/api/routes/retrieval.py
import logging
from typing import List

from fastapi import APIRouter, Depends

from docvault.api import deps
from docvault.bootstrap import Services
from docvault.domain import metadata_keys
from docvault.domain.schemas import SearchHit, SearchRequest
from docvault.services.security.identity import Identity

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/search", response_model=List[SearchHit])
async def search(
    req: SearchRequest,
    identity: Identity = Depends(deps.get_identity),
    services: Services = Depends(deps.get_services),
):
    """按调用方身份过滤的向量检索"""
    docs = await services.retriever.retrieve(
        req.query, identity, knowledge_ids=req.knowledge_ids, top_k=req.top_k
    )
    hits = []
    for doc in docs:
        metadata = dict(doc.metadata)
        score = metadata.pop("score", 0.0)
        # 权限元数据只用于过滤，不返回给调用方
        metadata.pop(metadata_keys.PERMISSION, None)
        hits.append(SearchHit(
            text=doc.page_content,
            score=score,
            knowledge_id=metadata.get(metadata_keys.KNOWLEDGE_ID),
            metadata=metadata,
        ))
    return hits
