# docvault/domain/schemas/chat.py
from typing import List, Literal
from pydantic import BaseModel, Field


class ChatMessageCreate(BaseModel):
    role: Literal["system", "user", "assistant"] = "user"
    content: str = Field(min_length=1)


class ChatMessageRead(BaseModel):
    role: str
    content: str


class ChatHistoryRead(BaseModel):
    session_id: str
    messages: List[ChatMessageRead]
