from __future__ import annotations

import pytest

from deepsearch.research_core.crawl.service import CrawlService
from tests.fakes import MemoryCacheStore, fake_fetcher


@pytest.fixture
def crawler() -> CrawlService:
    return CrawlService(
        max_concurrency=3,
        per_url_timeout=2,
        max_retries=0,
        backoff_seconds=0,
        fetcher=fake_fetcher,
        extract_in_thread=False,
    )


@pytest.fixture
def cache_store() -> MemoryCacheStore:
    return MemoryCacheStore()
