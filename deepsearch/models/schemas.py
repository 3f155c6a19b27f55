from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from deepsearch.models.messages import ConversationTurn


# --- Requests ---


class ChatRequest(BaseModel):
    chat_id: str = Field(min_length=1)
    messages: list[ConversationTurn]
    is_new_chat: bool = False
    # Keep the partial answer if the stream is cut off.
    best_effort_save: bool = False


# --- Responses ---


class ChatSummary(BaseModel):
    id: str
    title: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ChatDetailResponse(BaseModel):
    chat: ChatSummary
    messages: list[ConversationTurn]
