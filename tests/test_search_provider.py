from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest

from deepsearch.config import settings
from deepsearch.errors import SearchProviderError
from deepsearch.tools import search_provider, serper_search, tavily_search
from deepsearch.tools.serper_search import SearchResult


class _FakeResponse:
    def __init__(self, payload: dict, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("POST", serper_search.SERPER_SEARCH_URL)
            raise httpx.HTTPStatusError(
                "error",
                request=request,
                response=httpx.Response(self.status_code, request=request),
            )

    def json(self) -> dict:
        return self._payload


@pytest.mark.asyncio
async def test_serper_maps_organic_results(monkeypatch):
    monkeypatch.setattr(settings, "serper_api_key", "test-key")
    captured: list[dict] = []

    async def fake_post(self, url: str, **kwargs):  # noqa: ARG001
        captured.append(kwargs)
        return _FakeResponse(
            {
                "organic": [
                    {"title": "One", "link": "https://one.com", "snippet": "first", "date": "Mar 3, 2024"},
                    {"title": "Two", "link": "https://two.com", "snippet": "second"},
                    {"title": "Three", "link": "https://three.com", "snippet": "third"},
                ]
            }
        )

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

    results = await serper_search.search("rivers", max_results=2)

    assert captured[0]["json"] == {"q": "rivers", "num": 2}
    assert captured[0]["headers"]["X-API-KEY"] == "test-key"
    assert [r.link for r in results] == ["https://one.com", "https://two.com"]
    assert results[0].date == "Mar 3, 2024"
    assert serper_search.results_to_dicts(results)[1] == {
        "title": "Two",
        "link": "https://two.com",
        "snippet": "second",
    }


@pytest.mark.asyncio
async def test_serper_http_error_raises_provider_error(monkeypatch):
    monkeypatch.setattr(settings, "serper_api_key", "test-key")

    async def fake_post(self, url: str, **kwargs):  # noqa: ARG001
        return _FakeResponse({}, status_code=403)

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

    with pytest.raises(SearchProviderError, match="HTTP 403"):
        await serper_search.search("rivers")


@pytest.mark.asyncio
async def test_serper_requires_api_key(monkeypatch):
    monkeypatch.setattr(settings, "serper_api_key", "")
    with pytest.raises(SearchProviderError):
        await serper_search.search("rivers")


async def _failing_serper(query, **kwargs):
    raise SearchProviderError("serper down")


@pytest.mark.asyncio
async def test_search_provider_falls_back_to_tavily(monkeypatch):
    monkeypatch.setattr(settings, "search_fallback_provider", "tavily")
    monkeypatch.setattr(serper_search, "search", _failing_serper)

    async def fake_tavily(query, *, max_results=10):
        return [SearchResult(title="T", link="https://t.com", snippet="from tavily")]

    monkeypatch.setattr(tavily_search, "search", fake_tavily)

    response = await search_provider.search("rivers", max_results=5)

    assert response.provider == "tavily"
    assert response.fallback_from == "serper"
    assert "serper down" in response.fallback_reason
    assert response.results[0].link == "https://t.com"


@pytest.mark.asyncio
async def test_search_provider_raises_without_fallback(monkeypatch):
    monkeypatch.setattr(settings, "search_fallback_provider", "")
    monkeypatch.setattr(serper_search, "search", _failing_serper)

    with pytest.raises(SearchProviderError):
        await search_provider.search("rivers")


@pytest.mark.asyncio
async def test_search_provider_raises_when_fallback_unsupported():
    with patch("deepsearch.tools.search_provider.settings") as mock_settings:
        mock_settings.search_fallback_provider = "unknown-provider"

        with pytest.raises(ValueError):
            await search_provider.search("rivers")
