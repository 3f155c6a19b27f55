from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from deepsearch.config import settings
from deepsearch.errors import SearchProviderError
from deepsearch.tools import serper_search, tavily_search
from deepsearch.tools.serper_search import SearchResult


@dataclass
class SearchResponse:
    results: list[SearchResult]
    provider: str
    fallback_from: str | None = None
    fallback_reason: str | None = None


async def search(query: str, *, max_results: int = 10) -> SearchResponse:
    """Search via Serper, optionally falling back to Tavily on failure.

    Results are passed through in provider order. Raises SearchProviderError
    when no provider succeeds.
    """
    fallback = settings.search_fallback_provider.lower().strip()
    if fallback and fallback != "tavily":
        raise ValueError(f"Unsupported SEARCH_FALLBACK_PROVIDER: {settings.search_fallback_provider}")

    try:
        results = await serper_search.search(
            query,
            max_results=max_results,
            timeout=settings.search_timeout_seconds,
        )
        return SearchResponse(results=results, provider="serper")
    except SearchProviderError as e:
        if fallback != "tavily":
            raise
        logger.warning(f"Serper search failed, falling back to Tavily: {e}")
        fallback_results = await tavily_search.search(query, max_results=max_results)
        return SearchResponse(
            results=fallback_results,
            provider="tavily",
            fallback_from="serper",
            fallback_reason=str(e),
        )


def results_to_dicts(results: list[SearchResult]) -> list[dict]:
    return serper_search.results_to_dicts(results)
