from __future__ import annotations

from fastapi import Request

from deepsearch.agents.agent_loop import AgentLoop
from deepsearch.config import settings
from deepsearch.llm_client import ModelProvider
from deepsearch.research_core.crawl.service import CrawlService
from deepsearch.services.chat_service import AgentFactory, ChatService
from deepsearch.services.result_cache import CacheStore
from deepsearch.services.tracing import LoggingTraceSink
from deepsearch.tools.registry import ToolRegistry
from deepsearch.tools.web_tools import build_research_tools


def build_crawler() -> CrawlService:
    return CrawlService(
        max_concurrency=settings.crawl_max_concurrency,
        per_url_timeout=settings.crawl_per_url_timeout_seconds,
        max_retries=settings.crawl_max_retries,
        backoff_seconds=settings.crawl_backoff_seconds,
        max_page_chars=settings.extractor_max_page_chars,
        user_agent=settings.crawl_user_agent,
    )


def build_registry(cache_store: CacheStore | None) -> ToolRegistry:
    return build_research_tools(
        crawler=build_crawler(),
        store=cache_store,
        ttl_seconds=settings.cache_ttl_seconds,
        cache_prefix=settings.cache_key_prefix,
        result_count=settings.search_result_count,
    )


def build_agent_factory(
    model: ModelProvider,
    registry: ToolRegistry,
    *,
    max_steps: int | None = None,
) -> AgentFactory:
    def factory(chat_id: str) -> AgentLoop:
        return AgentLoop(
            model,
            registry,
            max_steps=max_steps or settings.agent_max_steps,
            trace_sink=LoggingTraceSink(trace_id=chat_id),
            chat_id=chat_id,
        )

    return factory


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service
