from __future__ import annotations

import asyncio
import functools
import time
from typing import Awaitable, Callable
from urllib.parse import urlparse

import httpx
from loguru import logger

from deepsearch.errors import CrawlOutcomeFailure, ExtractionError, FetchError, FetchTimeout
from deepsearch.research_core.models.interfaces import CrawlBatch, CrawlOutcome, FetchedPage
from deepsearch.tools.content_extractor import ExtractedContent, extract_main_content

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")
MAX_REDIRECTS = 5

Fetcher = Callable[[str, int], Awaitable[FetchedPage]]


def is_valid_url(url: str) -> bool:
    try:
        result = urlparse(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except Exception:
        return False


class CrawlService:
    """Bounded-concurrency bulk fetch + extract with per-URL retries.

    Every input URL yields exactly one outcome, in input order. Per-URL
    failures (timeouts, HTTP/network errors, unextractable pages) become
    failed outcomes; they never abort the batch.

    The per-URL timeout spans fetch and extraction. Extraction only yields to
    the timeout when ``extract_in_thread`` is set.
    """

    def __init__(
        self,
        *,
        max_concurrency: int = 3,
        per_url_timeout: float = 15.0,
        max_retries: int = 2,
        backoff_seconds: float = 0.25,
        max_page_chars: int = 12000,
        user_agent: str = "DeepSearchBot/1.0",
        fetcher: Fetcher | None = None,
        extract_in_thread: bool = True,
    ):
        self.max_concurrency = max_concurrency
        self.per_url_timeout = per_url_timeout
        self.max_retries = max_retries
        self.backoff_seconds = max(float(backoff_seconds), 0.0)
        self.max_page_chars = max_page_chars
        self.user_agent = user_agent
        self.extract_in_thread = extract_in_thread
        self._fetcher = fetcher

    async def crawl_all(
        self,
        urls: list[str],
        *,
        max_concurrency: int | None = None,
        per_url_timeout: float | None = None,
        max_retries: int | None = None,
    ) -> CrawlBatch:
        concurrency = self.max_concurrency if max_concurrency is None else max_concurrency
        timeout = self.per_url_timeout if per_url_timeout is None else per_url_timeout
        retries = self.max_retries if max_retries is None else max_retries
        if concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {concurrency}")
        if timeout <= 0:
            raise ValueError(f"per_url_timeout must be > 0, got {timeout}")
        if retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {retries}")

        if not urls:
            return CrawlBatch(outcomes=[])

        started = time.monotonic()
        if self._fetcher is not None:
            batch = await self._run_pool(urls, self._fetcher, concurrency, timeout, retries)
        else:
            async with httpx.AsyncClient(
                timeout=timeout,
                follow_redirects=True,
                max_redirects=MAX_REDIRECTS,
                headers={"User-Agent": self.user_agent},
            ) as client:
                fetch = functools.partial(self._fetch_with_httpx, client)
                batch = await self._run_pool(urls, fetch, concurrency, timeout, retries)

        logger.info(
            f"Crawled {len(urls)} urls in {int((time.monotonic() - started) * 1000)}ms: "
            f"{len(batch.succeeded)} ok, {len(batch.failed)} failed"
        )
        return batch

    async def _run_pool(
        self,
        urls: list[str],
        fetch: Fetcher,
        concurrency: int,
        timeout: float,
        retries: int,
    ) -> CrawlBatch:
        # Workers complete in any order; slots keep outcomes aligned with input.
        slots: list[CrawlOutcome | None] = [None] * len(urls)
        queue: asyncio.Queue[tuple[int, str]] = asyncio.Queue()
        for item in enumerate(urls):
            queue.put_nowait(item)

        async def worker() -> None:
            while True:
                try:
                    index, url = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                slots[index] = await self._crawl_one(url, fetch, timeout, retries)

        workers = [asyncio.create_task(worker()) for _ in range(min(concurrency, len(urls)))]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        return CrawlBatch(outcomes=[outcome for outcome in slots if outcome is not None])

    async def _crawl_one(
        self,
        url: str,
        fetch: Fetcher,
        timeout: float,
        retries: int,
    ) -> CrawlOutcome:
        started = time.monotonic()
        if not is_valid_url(url):
            return self._failed(url, FetchError(f"Invalid URL: {url}"), 0, started)

        max_attempts = retries + 1
        last_error: CrawlOutcomeFailure | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                page, extracted = await asyncio.wait_for(
                    self._fetch_and_extract(url, fetch, attempt),
                    timeout=timeout,
                )
                return CrawlOutcome(
                    url=url,
                    success=True,
                    content=extracted.text,
                    title=extracted.title,
                    final_url=page.final_url,
                    attempts=attempt,
                    timing_ms=int((time.monotonic() - started) * 1000),
                )
            except asyncio.TimeoutError:
                last_error = FetchTimeout(f"Timed out after {timeout:g}s fetching {url}")
            except CrawlOutcomeFailure as exc:
                last_error = exc
            except Exception as exc:
                last_error = FetchError(f"Failed to fetch {url}: {exc}", transient=True)

            if not last_error.transient or attempt >= max_attempts:
                break
            logger.debug(f"Retrying {url} after attempt {attempt}: {last_error}")
            await asyncio.sleep(self.backoff_seconds * attempt)

        return self._failed(url, last_error, attempt, started)

    async def _fetch_and_extract(
        self,
        url: str,
        fetch: Fetcher,
        attempt: int,
    ) -> tuple[FetchedPage, ExtractedContent]:
        """One attempt at a URL; the per-URL timeout covers both halves."""
        page = await fetch(url, attempt)
        try:
            extracted = await self._extract(page)
        except CrawlOutcomeFailure:
            raise
        except Exception as exc:
            raise ExtractionError(f"Failed to extract content from {url}: {exc}") from exc
        return page, extracted

    async def _extract(self, page: FetchedPage) -> ExtractedContent:
        if self.extract_in_thread:
            return await asyncio.to_thread(
                extract_main_content,
                page.url,
                page.body,
                max_chars=self.max_page_chars,
            )
        return extract_main_content(page.url, page.body, max_chars=self.max_page_chars)

    @staticmethod
    def _failed(url: str, error: CrawlOutcomeFailure, attempts: int, started: float) -> CrawlOutcome:
        logger.warning(f"Crawl failed for {url} ({error.kind}): {error}")
        return CrawlOutcome(
            url=url,
            success=False,
            error=str(error),
            error_kind=error.kind,
            attempts=attempts,
            timing_ms=int((time.monotonic() - started) * 1000),
        )

    async def _fetch_with_httpx(self, client: httpx.AsyncClient, url: str, _attempt: int) -> FetchedPage:
        try:
            response = await client.get(url)
        except httpx.TimeoutException as exc:
            raise FetchTimeout(f"Timed out fetching {url}: {exc}") from exc
        except httpx.TooManyRedirects as exc:
            raise FetchError(f"Too many redirects fetching {url}") from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Network error fetching {url}: {exc}", transient=True) from exc

        status = response.status_code
        if status >= 400:
            raise FetchError(
                f"HTTP {status} from {url}",
                transient=status == 429 or status >= 500,
                status_code=status,
            )

        content_type = response.headers.get("content-type", "").lower()
        if content_type and not any(t in content_type for t in HTML_CONTENT_TYPES):
            raise FetchError(f"Unsupported content type '{content_type}' at {url}")

        return FetchedPage(
            url=url,
            final_url=str(response.url),
            status_code=status,
            content_type=content_type,
            body=response.text,
        )


async def crawl_all(
    urls: list[str],
    *,
    max_concurrency: int = 3,
    per_url_timeout: float = 15.0,
    max_retries: int = 2,
) -> CrawlBatch:
    """Crawl ``urls`` with a default service."""
    service = CrawlService(
        max_concurrency=max_concurrency,
        per_url_timeout=per_url_timeout,
        max_retries=max_retries,
    )
    return await service.crawl_all(urls)
