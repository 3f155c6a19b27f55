from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class FetchedPage:
    url: str
    final_url: str
    status_code: int
    content_type: str
    body: str


@dataclass(slots=True)
class CrawlOutcome:
    url: str
    success: bool
    content: str = ""
    error: str | None = None
    error_kind: str | None = None
    title: str = ""
    final_url: str | None = None
    attempts: int = 0
    timing_ms: int = 0


@dataclass(slots=True)
class CrawlBatch:
    outcomes: list[CrawlOutcome] = field(default_factory=list)

    @property
    def overall_success(self) -> bool:
        return all(o.success for o in self.outcomes)

    @property
    def succeeded(self) -> list[CrawlOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> list[CrawlOutcome]:
        return [o for o in self.outcomes if not o.success]

    def __len__(self) -> int:
        return len(self.outcomes)
