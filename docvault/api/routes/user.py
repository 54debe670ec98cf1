# docvault/api/routes/user.py
import logging

from fastapi import APIRouter, Depends, HTTPException

from docvault.api import deps
from docvault.bootstrap import Services
from docvault.domain.models.user import UserRead
from docvault.services.security.identity import Identity
from docvault.services.user.user_service import UserService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/me", response_model=UserRead)
async def read_me(
    identity: Identity = Depends(deps.get_authenticated_identity),
    services: Services = Depends(deps.get_services),
):
    """当前用户 (首次请求时已自动登记)"""
    async with services.session_maker() as db:
        return await UserService.register(db, identity.username)


@router.delete("/me")
async def delete_me(
    identity: Identity = Depends(deps.get_authenticated_identity),
    services: Services = Depends(deps.get_services),
):
    """注销当前用户：删除其拥有的知识，移除其他授权，清理对话会话"""
    try:
        async with services.session_maker() as db:
            await UserService.delete_user(db, services.registry, identity.username, services.chat_memory)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"message": "User deleted"}
