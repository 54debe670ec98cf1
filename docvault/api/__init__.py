from fastapi import APIRouter
from .routes import chat, knowledge, retrieval, user

api_router = APIRouter()
api_router.include_router(knowledge.router, prefix="/knowledge", tags=["Knowledge"])
api_router.include_router(retrieval.router, prefix="/retrieval", tags=["Retrieval"])
api_router.include_router(chat.router, prefix="/chat", tags=["Chat"])
api_router.include_router(user.router, prefix="/users", tags=["Users"])
