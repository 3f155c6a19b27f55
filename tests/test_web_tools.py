from __future__ import annotations

import pytest

from deepsearch.errors import ToolArgumentError
from deepsearch.research_core.crawl.service import CrawlService
from deepsearch.research_core.models.interfaces import CrawlOutcome
from deepsearch.tools.web_tools import build_research_tools, outcome_to_tool_output
from tests.fakes import fake_fetcher, fake_search


def test_outcome_to_tool_output():
    ok = CrawlOutcome(url="https://a.com", success=True, content="body", title="A")
    failed = CrawlOutcome(url="https://b.com", success=False, error="HTTP 404 from https://b.com")

    assert outcome_to_tool_output(ok) == {"url": "https://a.com", "content": "body", "success": True, "title": "A"}
    assert outcome_to_tool_output(failed) == {
        "url": "https://b.com",
        "content": "Error: HTTP 404 from https://b.com",
        "success": False,
    }


@pytest.mark.asyncio
async def test_search_maps_results_and_is_memoized(cache_store, crawler):
    calls: list[tuple[str, int]] = []

    async def counting_search(query, *, max_results=10):
        calls.append((query, max_results))
        return await fake_search(query, max_results=max_results)

    registry = build_research_tools(
        crawler=crawler,
        store=cache_store,
        ttl_seconds=60,
        cache_prefix="test",
        search_fn=counting_search,
    )

    first = await registry.execute("search", {"query": "river quality"})
    second = await registry.execute("search", {"query": "river quality"})

    assert calls == [("river quality", 10)]
    assert first == second
    assert first[0] == {
        "title": "Page One",
        "link": "https://a.example.com/one",
        "snippet": "alpha",
        "date": "2024-01-01",
    }
    assert "date" not in first[1]
    assert all(key.startswith("test:search:") for key in cache_store.data)


@pytest.mark.asyncio
async def test_extract_reports_failures_and_skips_caching_them(cache_store):
    fetched: list[str] = []

    async def recording_fetcher(url, attempt):
        fetched.append(url)
        return await fake_fetcher(url, attempt)

    crawler = CrawlService(max_retries=0, backoff_seconds=0, fetcher=recording_fetcher, extract_in_thread=False)
    registry = build_research_tools(crawler=crawler, store=cache_store, ttl_seconds=60, search_fn=fake_search)
    urls = ["https://a.example.com/one", "https://c.example.com/empty"]

    rows = await registry.execute("extract", {"urls": urls})

    assert [r["success"] for r in rows] == [True, False]
    assert rows[0]["title"] == "Page One"
    assert rows[1]["content"].startswith("Error: ")
    assert cache_store.data == {}

    await registry.execute("extract", {"urls": urls})
    assert fetched.count("https://c.example.com/empty") == 2


@pytest.mark.asyncio
async def test_successful_extract_batch_is_cached(cache_store):
    fetched: list[str] = []

    async def recording_fetcher(url, attempt):
        fetched.append(url)
        return await fake_fetcher(url, attempt)

    crawler = CrawlService(fetcher=recording_fetcher, extract_in_thread=False)
    registry = build_research_tools(crawler=crawler, store=cache_store, ttl_seconds=60, search_fn=fake_search)

    await registry.execute("extract", {"urls": ["https://a.example.com/one"]})
    await registry.execute("extract", {"urls": ["https://a.example.com/one"]})

    assert fetched == ["https://a.example.com/one"]


@pytest.mark.asyncio
async def test_extract_rejects_empty_and_oversized_url_lists(crawler):
    registry = build_research_tools(crawler=crawler, store=None, ttl_seconds=60, search_fn=fake_search)

    with pytest.raises(ToolArgumentError):
        await registry.execute("extract", {"urls": []})
    with pytest.raises(ToolArgumentError):
        await registry.execute("extract", {"urls": [f"https://e.com/{i}" for i in range(11)]})
