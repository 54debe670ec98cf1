# docvault/api/routes/chat.py
import logging

from fastapi import APIRouter, Depends
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from docvault.api import deps
from docvault.bootstrap import Services
from docvault.domain.schemas import ChatHistoryRead, ChatMessageCreate, ChatMessageRead
from docvault.services.chat import ChatMemory
from docvault.services.security.identity import Identity

logger = logging.getLogger(__name__)
router = APIRouter()

_ROLE_TO_MESSAGE = {
    "system": SystemMessage,
    "user": HumanMessage,
    "assistant": AIMessage,
}
_TYPE_TO_ROLE = {"system": "system", "human": "user", "ai": "assistant", "tool": "tool"}


def _memory_for(services: Services, identity: Identity, session_id: str) -> ChatMemory:
    return services.chat_memory.for_user(identity.username, session_id)


def _to_read(session_id: str, messages: list[BaseMessage]) -> ChatHistoryRead:
    return ChatHistoryRead(
        session_id=session_id,
        messages=[
            ChatMessageRead(role=_TYPE_TO_ROLE.get(m.type, m.type), content=str(m.content))
            for m in messages
        ],
    )


@router.get("/sessions/{session_id}/messages", response_model=ChatHistoryRead)
async def get_history(
    session_id: str,
    identity: Identity = Depends(deps.get_authenticated_identity),
    services: Services = Depends(deps.get_services),
):
    """获取会话窗口内的消息"""
    memory = _memory_for(services, identity, session_id)
    return _to_read(session_id, await memory.messages())


@router.post("/sessions/{session_id}/messages", response_model=ChatHistoryRead)
async def add_message(
    session_id: str,
    req: ChatMessageCreate,
    identity: Identity = Depends(deps.get_authenticated_identity),
    services: Services = Depends(deps.get_services),
):
    memory = _memory_for(services, identity, session_id)
    await memory.add(_ROLE_TO_MESSAGE[req.role](content=req.content))
    return _to_read(session_id, await memory.messages())


@router.delete("/sessions/{session_id}/messages")
async def clear_history(
    session_id: str,
    identity: Identity = Depends(deps.get_authenticated_identity),
    services: Services = Depends(deps.get_services),
):
    await _memory_for(services, identity, session_id).clear()
    return {"message": "History cleared"}
