from __future__ import annotations

from tavily import AsyncTavilyClient

from deepsearch.config import settings
from deepsearch.errors import SearchProviderError
from deepsearch.tools.serper_search import SearchResult


async def search(query: str, *, max_results: int = 10) -> list[SearchResult]:
    """Execute a Tavily web search, mapped onto the Serper result shape."""
    if not settings.tavily_api_key:
        raise SearchProviderError("TAVILY_API_KEY is not configured")

    client = AsyncTavilyClient(api_key=settings.tavily_api_key)
    try:
        response = await client.search(
            query=query,
            search_depth="basic",
            max_results=max_results,
            topic="general",
        )
    except Exception as exc:  # tavily raises its own error types plus httpx errors
        raise SearchProviderError(f"Tavily request failed for '{query}': {exc}") from exc

    return [
        SearchResult(
            title=r.get("title", ""),
            link=r.get("url", ""),
            snippet=r.get("content", ""),
            date=r.get("published_date"),
        )
        for r in response.get("results", [])
    ]
