from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException
from sse_starlette.sse import EventSourceResponse

from deepsearch.api.deps import get_chat_service
from deepsearch.errors import ChatNotFound, ChatOwnershipError, PersistenceError
from deepsearch.models.schemas import ChatDetailResponse, ChatRequest, ChatSummary
from deepsearch.services import logger as log_service
from deepsearch.services.chat_service import ChatService

router = APIRouter(prefix="/api", tags=["chat"])


def _require_user(user_id: str | None) -> str:
    # Identity comes from the sign-in gate in front of this service.
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


@router.post("/chat")
async def chat(
    request: ChatRequest,
    x_user_id: str | None = Header(default=None),
    service: ChatService = Depends(get_chat_service),
):
    """Run one chat turn and stream its events as SSE."""
    user_id = _require_user(x_user_id)
    try:
        await service.prepare_chat(
            user_id=user_id,
            chat_id=request.chat_id,
            messages=request.messages,
            is_new_chat=request.is_new_chat,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (ChatNotFound, ChatOwnershipError):
        raise HTTPException(status_code=404, detail="Chat not found or unauthorized")
    except PersistenceError as e:
        log_service.log_event(event_type="db_error", message="Failed to prepare chat", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to save chat")

    async def event_generator():
        async for event in service.stream_chat(
            user_id=user_id,
            chat_id=request.chat_id,
            messages=request.messages,
            is_new_chat=request.is_new_chat,
            best_effort_save=request.best_effort_save,
        ):
            yield event.to_sse()

    return EventSourceResponse(event_generator())


@router.get("/chats", response_model=list[ChatSummary])
async def list_chats(
    x_user_id: str | None = Header(default=None),
    service: ChatService = Depends(get_chat_service),
):
    user_id = _require_user(x_user_id)
    rows = await service.store.list_chats(user_id)
    return [ChatSummary(**row) for row in rows]


@router.get("/chats/{chat_id}", response_model=ChatDetailResponse)
async def get_chat(
    chat_id: str,
    x_user_id: str | None = Header(default=None),
    service: ChatService = Depends(get_chat_service),
):
    user_id = _require_user(x_user_id)
    chat = await service.store.get(chat_id)
    if chat is None or chat.user_id != user_id:
        raise HTTPException(status_code=404, detail="Chat not found")
    return ChatDetailResponse(
        chat=ChatSummary(
            id=chat.id,
            title=chat.title,
            created_at=chat.created_at,
            updated_at=chat.updated_at,
        ),
        messages=chat.messages,
    )
