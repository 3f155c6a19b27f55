from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from deepsearch.api.deps import build_agent_factory, build_registry
from deepsearch.api.routes import chat
from deepsearch.config import settings
from deepsearch.llm_client import get_client
from deepsearch.services.chat_service import ChatService
from deepsearch.services.conversation_store import get_conversation_store
from deepsearch.services.result_cache import get_cache_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    cache_store = get_cache_store(enabled=settings.cache_enabled, redis_url=settings.redis_url)
    store = await get_conversation_store(settings.database_url)
    app.state.chat_service = ChatService(
        store,
        build_agent_factory(get_client(), build_registry(cache_store)),
        title_max_chars=settings.chat_title_max_chars,
    )
    yield
    for resource in (cache_store, store):
        close = getattr(resource, "close", None)
        if close is not None:
            await close()


app = FastAPI(
    title="DeepSearch",
    description="Conversational research assistant with web search and page extraction",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "deepsearch"}
