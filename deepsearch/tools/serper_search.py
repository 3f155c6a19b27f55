from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from deepsearch.config import settings
from deepsearch.errors import SearchProviderError

SERPER_SEARCH_URL = "https://google.serper.dev/search"


@dataclass
class SearchResult:
    title: str
    link: str
    snippet: str
    date: str | None = None


async def search(
    query: str,
    *,
    max_results: int = 10,
    timeout: float = 30.0,
) -> list[SearchResult]:
    """Execute a Serper (Google) web search and normalize organic results."""
    if not settings.serper_api_key:
        raise SearchProviderError("SERPER_API_KEY is not configured")

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(
                SERPER_SEARCH_URL,
                json={"q": query, "num": max_results},
                headers={
                    "X-API-KEY": settings.serper_api_key,
                    "Content-Type": "application/json",
                },
            )
            response.raise_for_status()
            payload = response.json()
    except httpx.HTTPStatusError as exc:
        raise SearchProviderError(
            f"Serper returned HTTP {exc.response.status_code} for '{query}'"
        ) from exc
    except (httpx.HTTPError, ValueError) as exc:
        raise SearchProviderError(f"Serper request failed for '{query}': {exc}") from exc

    organic = payload.get("organic", []) if isinstance(payload, dict) else []
    return [
        SearchResult(
            title=item.get("title", ""),
            link=item.get("link", ""),
            snippet=item.get("snippet", ""),
            date=item.get("date"),
        )
        for item in organic[:max_results]
        if isinstance(item, dict)
    ]


def results_to_dicts(results: list[SearchResult]) -> list[dict[str, Any]]:
    """Convert SearchResult list to JSON-serializable dicts (date only when known)."""
    dicts: list[dict[str, Any]] = []
    for r in results:
        item: dict[str, Any] = {"title": r.title, "link": r.link, "snippet": r.snippet}
        if r.date:
            item["date"] = r.date
        dicts.append(item)
    return dicts
