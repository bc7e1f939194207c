"""In-memory site and a recording fetcher for the crawl tests."""

from __future__ import annotations

import asyncio
from typing import Optional

from chapter_scraper import (
    AdmissionLimiter,
    CrawlRunState,
    FetchError,
    FetchedPage,
    ResultChannel,
    SelectorConfig,
    SelectorExtractor,
    get_run_logger,
)

BASE = "https://book.example.com/"


def chapter_page(text: str, next_href: Optional[str] = None) -> str:
    nav = f'<a title="Next chapter" href="{next_href}">Next</a>' if next_href else ""
    return f"<html><head><title>{text}</title></head><body><nav>{nav}</nav><main><p>{text}</p></main></body></html>"


def chapter_url(i: int) -> str:
    return f"{BASE}ch{i}.html"


def make_chain(n: int) -> dict[str, str]:
    """Pages ch1..chN, each linking to the next with a relative href."""
    pages = {}
    for i in range(1, n + 1):
        pages[chapter_url(i)] = chapter_page(f"Chapter {i}", f"ch{i + 1}.html" if i < n else None)
    return pages


class FakeFetcher:
    def __init__(self, pages: dict[str, str], delays: Optional[dict] = None, failures: Optional[dict] = None):
        self.pages = pages
        self.delays = delays or {}
        self.failures = failures or {}
        self.calls: list[str] = []
        self.completed: list[str] = []
        self.in_flight = 0
        self.peak = 0

    async def fetch(self, url: str) -> FetchedPage:
        self.calls.append(url)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(url, 0))
            if url in self.failures:
                raise self.failures[url]
            if url not in self.pages:
                raise FetchError(url, "HTTP 404", status_code=404)
            self.completed.append(url)
            return FetchedPage(url=url, body=self.pages[url])
        finally:
            self.in_flight -= 1


def make_state(fetcher, concurrency: int = 3, **kwargs) -> CrawlRunState:
    """Must be called inside a running event loop."""
    return CrawlRunState(
        start_url=kwargs.pop("start_url", chapter_url(1)),
        fetcher=fetcher,
        extractor=kwargs.pop("extractor", SelectorExtractor(SelectorConfig())),
        limiter=AdmissionLimiter(concurrency),
        channel=ResultChannel(),
        logger=get_run_logger("test"),
        **kwargs,
    )
