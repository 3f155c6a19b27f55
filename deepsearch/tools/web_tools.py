"""The `search` and `extract` tools, memoized through the result cache."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from deepsearch.research_core.crawl.service import CrawlService
from deepsearch.research_core.models.interfaces import CrawlOutcome
from deepsearch.services.result_cache import CacheStore, memoize
from deepsearch.tools import search_provider
from deepsearch.tools.registry import ToolRegistry, ToolSpec
from deepsearch.tools.search_provider import SearchResponse

SEARCH_TOOL = "search"
EXTRACT_TOOL = "extract"
MAX_EXTRACT_URLS = 10

SearchFn = Callable[..., Awaitable[SearchResponse]]


class SearchArgs(BaseModel):
    query: str = Field(min_length=1, description="The query to search the web for")


class ExtractArgs(BaseModel):
    urls: list[str] = Field(
        min_length=1,
        max_length=MAX_EXTRACT_URLS,
        description="Full http(s) URLs of the pages to read, most relevant first.",
    )


def outcome_to_tool_output(outcome: CrawlOutcome) -> dict[str, Any]:
    if outcome.success:
        row: dict[str, Any] = {"url": outcome.url, "content": outcome.content, "success": True}
        if outcome.title:
            row["title"] = outcome.title
        return row
    return {"url": outcome.url, "content": f"Error: {outcome.error}", "success": False}


def _all_succeeded(rows: list[dict[str, Any]]) -> bool:
    return all(row.get("success") for row in rows)


def build_research_tools(
    *,
    crawler: CrawlService,
    store: CacheStore | None,
    ttl_seconds: int,
    cache_prefix: str = "",
    search_fn: SearchFn | None = None,
    result_count: int = 10,
) -> ToolRegistry:
    """Registry with the web search and page extraction tools."""
    run_search = search_fn or search_provider.search

    async def _search(query: str, num: int) -> list[dict[str, Any]]:
        response = await run_search(query, max_results=num)
        return search_provider.results_to_dicts(response.results)

    async def _extract(urls: list[str]) -> list[dict[str, Any]]:
        batch = await crawler.crawl_all(urls)
        return [outcome_to_tool_output(o) for o in batch.outcomes]

    cached_search = memoize(
        SEARCH_TOOL,
        _search,
        store=store,
        ttl_seconds=ttl_seconds,
        prefix=cache_prefix,
    )
    # Batches with failed URLs are not stored, so those URLs get re-attempted.
    cached_extract = memoize(
        EXTRACT_TOOL,
        _extract,
        store=store,
        ttl_seconds=ttl_seconds,
        prefix=cache_prefix,
        should_cache=_all_succeeded,
    )

    async def execute_search(args: SearchArgs) -> list[dict[str, Any]]:
        return await cached_search(args.query, result_count)

    async def execute_extract(args: ExtractArgs) -> list[dict[str, Any]]:
        return await cached_extract(args.urls)

    return ToolRegistry(
        [
            ToolSpec(
                name=SEARCH_TOOL,
                description=(
                    "Search the web. Returns up to 10 results with title, link, snippet "
                    "and, when known, the publication date."
                ),
                args_model=SearchArgs,
                executor=execute_search,
            ),
            ToolSpec(
                name=EXTRACT_TOOL,
                description=(
                    "Fetch web pages and return their main readable text. Use it on the most "
                    "promising links from search results. Each entry reports success; failed "
                    "pages carry an error message instead of content."
                ),
                args_model=ExtractArgs,
                executor=execute_extract,
            ),
        ]
    )
