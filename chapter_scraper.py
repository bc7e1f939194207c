# chapter_scraper.py
#!/usr/bin/env python3
"""
Async chapter scraper.

Follows a chain of "next chapter" links starting from one page, pulls a
content fragment out of every page with a CSS selector and stitches the
fragments into a single HTML document, in chain order.

Crawl model
-----------
- Every page is handled by its own worker task. A worker that finds a next
  link spawns exactly one successor, so a book becomes a chain of tasks.
- Workers take a permit from the admission limiter before touching the
  network, so at most `concurrency` fetches are in flight at any time.
- The URL is claimed in the visited set *after* the permit is acquired. A
  worker that loses the claim ends quietly without fetching.
- Workers report to a result channel that closes by itself once the last
  sender handle is released. The coordinator drains it and sorts by the
  sequence hint assigned at spawn time, not by completion time.
- A failed page is reported, never retried, and ends its branch of the chain.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import enum
import hashlib
import html
import itertools
import logging
import re
import sys
from pathlib import Path
from typing import AsyncIterator, Iterable, Iterator, Optional, Protocol
from urllib.parse import urljoin, urlsplit, urlunsplit, urlencode, parse_qsl

import httpx
import tldextract
import yaml
from bs4 import BeautifulSoup
from slugify import slugify


# --------------------------- Configuration --------------------------------- #


DEFAULT_USER_AGENT = "ChapterScraperBot/1.0 (+https://example.com/bot)"
DEFAULT_CONTENT_SELECTOR = "main"
DEFAULT_NEXT_SELECTOR = "a[title='Next chapter']"
DEFAULT_SEPARATOR = "<hr />\n"
DEFAULT_TITLE = "Scraped Documentation"


@dataclasses.dataclass(frozen=True)
class Config:
    start_url: str = ""
    results_dir: str = "results"
    output: str = ""  # empty: derived from the start URL
    title: str = DEFAULT_TITLE
    user_agent: str = DEFAULT_USER_AGENT
    concurrency: int = 50
    timeout: int = 20  # seconds per request
    content_selector: str = DEFAULT_CONTENT_SELECTOR
    next_selector: str = DEFAULT_NEXT_SELECTOR
    separator: str = DEFAULT_SEPARATOR
    max_chapters: int = 0  # 0 = follow the chain to its end
    same_site_only: bool = False

    @staticmethod
    def from_yaml(path: Path) -> "Config":
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return Config(
            start_url=data.get("start_url", ""),
            results_dir=data.get("results_dir", "results"),
            output=data.get("output", "") or "",
            title=data.get("title", DEFAULT_TITLE),
            user_agent=data.get("user_agent", DEFAULT_USER_AGENT),
            concurrency=int(data.get("concurrency", 50)),
            timeout=int(data.get("timeout", 20)),
            content_selector=data.get("content_selector", DEFAULT_CONTENT_SELECTOR),
            next_selector=data.get("next_selector", DEFAULT_NEXT_SELECTOR),
            separator=data.get("separator", DEFAULT_SEPARATOR),
            max_chapters=int(data.get("max_chapters", 0)),
            same_site_only=bool(data.get("same_site_only", False)),
        )

    def validate(self) -> None:
        if not self.start_url:
            raise ValueError("start_url is required")
        if urlsplit(self.start_url).scheme not in ("http", "https"):
            raise ValueError(f"start_url must be an http(s) URL: {self.start_url!r}")
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.max_chapters < 0:
            raise ValueError(f"max_chapters must not be negative, got {self.max_chapters}")

    @property
    def selectors(self) -> "SelectorConfig":
        return SelectorConfig(content=self.content_selector, next_link=self.next_selector)


@dataclasses.dataclass(frozen=True)
class SelectorConfig:
    content: str = DEFAULT_CONTENT_SELECTOR
    next_link: str = DEFAULT_NEXT_SELECTOR


# ------------------------------- Errors ------------------------------------ #


class ScrapeError(Exception):
    """A page could not be turned into a chapter."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"{message} ({url})")
        self.url = url
        self.message = message


class FetchError(ScrapeError):
    """Network failure, timeout or non-success HTTP status."""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(url, message)
        self.status_code = status_code


class ExtractError(ScrapeError):
    """Content selector did not match, or the markup could not be parsed."""


# ----------------------------- Utilities ----------------------------------- #


# Offline extractor: the bundled public suffix snapshot is enough for scoping.
_tld_extract = tldextract.TLDExtract(suffix_list_urls=())


def sha1_short(s: str) -> str:
    return hashlib.sha1(s.encode("utf-8", errors="ignore")).hexdigest()[:10]


def file_safe_slug(text: str, maxlen: int = 80) -> str:
    s = slugify(text, max_length=maxlen, allow_unicode=False).strip("-_.")
    return s or sha1_short(text)


def normalize_url(url: str, base: Optional[str] = None, sort_query: bool = True) -> str:
    if base:
        url = urljoin(base, url)
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    netloc = parts.netloc.lower()
    if scheme not in ("http", "https"):
        return url
    if "@" in netloc:
        netloc = netloc.split("@", 1)[-1]
    if (scheme == "http" and netloc.endswith(":80")) or (scheme == "https" and netloc.endswith(":443")):
        netloc = netloc.rsplit(":", 1)[0]
    path = parts.path or "/"
    path = re.sub(r"/{2,}", "/", path)
    if path != "/" and path.endswith("/"):
        path = path.rstrip("/")
    query = parts.query
    if sort_query and query:
        q = parse_qsl(query, keep_blank_values=True)
        q.sort()
        query = urlencode(q, doseq=True)
    return urlunsplit((scheme, netloc, path, query, ""))


def registrable_domain(url: str) -> str:
    ext = _tld_extract(url)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}"
    return urlsplit(url).netloc.lower()


def same_site(url: str, site_root: str) -> bool:
    if urlsplit(url).scheme not in ("http", "https"):
        return False
    return registrable_domain(url) == registrable_domain(site_root)


def derive_site_slug(url: str) -> str:
    return file_safe_slug(urlsplit(url).netloc or url, maxlen=80)


def derive_output_path(cfg: Config) -> Path:
    if cfg.output:
        return Path(cfg.output)
    parts = urlsplit(cfg.start_url)
    base = re.sub(r"\.x?html?$", "", f"{parts.netloc}{parts.path}", flags=re.I)
    return Path(cfg.results_dir) / f"{file_safe_slug(base, maxlen=90)}.html"


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


# ----------------------------- Logging ------------------------------------- #


LOGGER_NAME = "chapter_scraper"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(site)s] %(message)s"


def setup_root_logger(results_root: Path, level: int = logging.INFO) -> None:
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    root_logger = logging.getLogger(LOGGER_NAME)
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    fh = logging.FileHandler(results_root.parent / "scraper.log", encoding="utf-8")
    fh.setLevel(level)
    fh.setFormatter(formatter)
    ch = logging.StreamHandler(stream=sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(formatter)
    root_logger.addHandler(fh)
    root_logger.addHandler(ch)


def get_run_logger(site_slug: str) -> logging.LoggerAdapter:
    return logging.LoggerAdapter(logging.getLogger(f"{LOGGER_NAME}.{site_slug}"), extra={"site": site_slug})


# ---------------------------- Collaborators -------------------------------- #


@dataclasses.dataclass(frozen=True)
class Extraction:
    fragment: str
    next_url: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class FetchedPage:
    url: str  # as served, after redirects; relative links resolve against this
    body: str


class PageFetcher(Protocol):
    async def fetch(self, url: str) -> FetchedPage: ...


class ContentExtractor(Protocol):
    def extract(self, body: str, url: str) -> Extraction: ...


class HttpPageFetcher:
    """Single-shot GET over a shared `httpx.AsyncClient`. No retries."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def fetch(self, url: str) -> FetchedPage:
        try:
            resp = await self.client.get(url, follow_redirects=True)
        except httpx.TimeoutException as e:
            raise FetchError(url, f"Request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise FetchError(url, f"Request failed: {e}") from e
        if resp.status_code >= 400:
            raise FetchError(url, f"HTTP {resp.status_code}", status_code=resp.status_code)
        return FetchedPage(url=str(resp.url), body=resp.text)


class SelectorExtractor:
    """Pulls the inner HTML of the content selector and the next-link href."""

    def __init__(self, selectors: SelectorConfig) -> None:
        self.selectors = selectors

    def extract(self, body: str, url: str) -> Extraction:
        try:
            soup = BeautifulSoup(body, "lxml")
        except Exception as e:
            raise ExtractError(url, f"Malformed document: {e}") from e

        content = soup.select_one(self.selectors.content)
        if content is None:
            raise ExtractError(url, f"No element matches content selector {self.selectors.content!r}")

        next_url = None
        link = soup.select_one(self.selectors.next_link)
        if link is not None:
            href = (link.get("href") or "").strip()
            if href:
                candidate = normalize_url(href, base=url)
                if urlsplit(candidate).scheme in ("http", "https"):
                    next_url = candidate
        return Extraction(fragment=content.decode_contents(), next_url=next_url)


# ---------------------------- Crawl State ---------------------------------- #


class VisitedSet:
    """URLs already claimed in this run. Claims are never given back."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._urls: set[str] = set()

    async def claim(self, url: str) -> bool:
        async with self._lock:
            if url in self._urls:
                return False
            self._urls.add(url)
            return True

    def __contains__(self, url: object) -> bool:
        return url in self._urls

    def __len__(self) -> int:
        return len(self._urls)


@dataclasses.dataclass
class Permit:
    ident: int
    released: bool = False


class AdmissionLimiter:
    """Caps the number of fetch+extract steps in flight."""

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")
        self.limit = limit
        self._sem = asyncio.Semaphore(limit)
        self._ids = itertools.count()
        self.in_flight = 0
        self.peak = 0

    async def acquire(self) -> Permit:
        await self._sem.acquire()
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        return Permit(next(self._ids))

    def release(self, permit: Permit) -> None:
        if permit.released:
            return
        permit.released = True
        self.in_flight -= 1
        self._sem.release()

    @contextlib.asynccontextmanager
    async def permit(self) -> AsyncIterator[Permit]:
        permit = await self.acquire()
        try:
            yield permit
        finally:
            self.release(permit)


@dataclasses.dataclass
class ChapterResult:
    sequence: int
    url: str
    content: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, sequence: int, url: str, content: str) -> "ChapterResult":
        return cls(sequence=sequence, url=url, content=content)

    @classmethod
    def failure(cls, sequence: int, url: str, error: Exception) -> "ChapterResult":
        return cls(sequence=sequence, url=url, error=error)


_CLOSED = object()


class ResultChannel:
    """
    Unbounded many-to-one channel that closes when its last sender is released.

    The coordinator takes the first sender (the ignition handle) and every
    worker holds one of its own. Iterating the channel yields results until
    all handles are gone.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._senders = 0
        self.closed = False

    def sender(self) -> "ResultSender":
        if self.closed:
            raise RuntimeError("result channel is closed")
        self._senders += 1
        return ResultSender(self)

    @property
    def open_senders(self) -> int:
        return self._senders

    def _release(self) -> None:
        self._senders -= 1
        if self._senders == 0:
            self.closed = True
            self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[ChapterResult]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


class ResultSender:
    def __init__(self, channel: ResultChannel) -> None:
        self._channel = channel
        self._released = False

    def send(self, result: ChapterResult) -> None:
        if self._released:
            raise RuntimeError("send on a released result handle")
        self._channel._queue.put_nowait(result)

    def clone(self) -> "ResultSender":
        return self._channel.sender()

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._channel._release()


@dataclasses.dataclass
class CrawlRunState:
    """Everything the workers of one run share."""

    start_url: str
    fetcher: PageFetcher
    extractor: ContentExtractor
    limiter: AdmissionLimiter
    channel: ResultChannel
    logger: logging.LoggerAdapter
    visited: VisitedSet = dataclasses.field(default_factory=VisitedSet)
    max_chapters: int = 0
    same_site_only: bool = False
    tasks: set = dataclasses.field(default_factory=set)
    _sequence: Iterator[int] = dataclasses.field(default_factory=itertools.count)

    def next_sequence(self) -> int:
        return next(self._sequence)

    def spawn(self, url: str, sender: ResultSender) -> "ChapterWorker":
        worker = ChapterWorker(url, self.next_sequence(), self, sender)
        task = asyncio.create_task(worker.run(), name=f"chapter-{worker.sequence}")
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return worker


# ------------------------------- Worker ------------------------------------ #


class WorkerState(enum.Enum):
    SPAWNED = "spawned"
    AWAITING_PERMIT = "awaiting_permit"
    CLAIMING = "claiming"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    REPORTING = "reporting"
    SPAWNING_SUCCESSOR = "spawning_successor"
    DONE = "done"


class ChapterWorker:
    """Processes one URL end to end and spawns at most one successor."""

    def __init__(self, url: str, sequence: int, state: CrawlRunState, sender: ResultSender) -> None:
        self.url = url
        self.sequence = sequence
        self.run_state = state
        self.sender = sender
        self.state = WorkerState.SPAWNED
        self.result: Optional[ChapterResult] = None
        self.successor: Optional[ChapterWorker] = None

    def _enter(self, state: WorkerState) -> None:
        self.state = state
        self.run_state.logger.debug(f"chapter {self.sequence} -> {state.value}: {self.url}")

    async def run(self) -> None:
        try:
            await self._run()
        finally:
            self.sender.release()
            self._enter(WorkerState.DONE)

    async def _run(self) -> None:
        rs = self.run_state
        next_url: Optional[str] = None

        self._enter(WorkerState.AWAITING_PERMIT)
        async with rs.limiter.permit():
            self._enter(WorkerState.CLAIMING)
            if not await rs.visited.claim(self.url):
                rs.logger.info(f"Already visited, dropping chapter {self.sequence}: {self.url}")
                return

            self._enter(WorkerState.FETCHING)
            rs.logger.info(f"Scraping chapter {self.sequence}: {self.url}")
            try:
                page = await rs.fetcher.fetch(self.url)
                final_url = normalize_url(page.url)
                if final_url != self.url:
                    # Redirect target counts as visited too.
                    await rs.visited.claim(final_url)
                self._enter(WorkerState.EXTRACTING)
                extraction = rs.extractor.extract(page.body, page.url)
            except ScrapeError as e:
                rs.logger.warning(f"Chapter {self.sequence} failed: {e}")
                self.result = ChapterResult.failure(self.sequence, self.url, e)
            except Exception as e:
                rs.logger.exception(f"Unhandled error processing {self.url}: {e}")
                self.result = ChapterResult.failure(self.sequence, self.url, e)
            else:
                self.result = ChapterResult.success(self.sequence, self.url, extraction.fragment)
                next_url = extraction.next_url

        self._enter(WorkerState.REPORTING)
        self.sender.send(self.result)

        if next_url and self._may_follow(next_url):
            self._enter(WorkerState.SPAWNING_SUCCESSOR)
            self.successor = rs.spawn(next_url, self.sender.clone())

    def _may_follow(self, next_url: str) -> bool:
        rs = self.run_state
        if next_url in rs.visited:
            rs.logger.info(f"Next link of chapter {self.sequence} points back to a visited page: {next_url}")
            return False
        if rs.same_site_only and not same_site(next_url, rs.start_url):
            rs.logger.info(f"Next link leaves the site, stopping: {next_url}")
            return False
        if rs.max_chapters and self.sequence + 1 >= rs.max_chapters:
            rs.logger.info(f"Reached max_chapters={rs.max_chapters}, not following {next_url}")
            return False
        return True


# ----------------------------- Coordinator --------------------------------- #


async def collect_results(channel: ResultChannel) -> list[ChapterResult]:
    results = [result async for result in channel]
    results.sort(key=lambda r: r.sequence)
    return results


class ChapterCrawler:
    """Runs one crawl and returns its results in chain order."""

    def __init__(
        self,
        fetcher: PageFetcher,
        extractor: ContentExtractor,
        *,
        concurrency: int = 50,
        max_chapters: int = 0,
        same_site_only: bool = False,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.fetcher = fetcher
        self.extractor = extractor
        self.concurrency = concurrency
        self.max_chapters = max_chapters
        self.same_site_only = same_site_only
        self.logger = logger or get_run_logger("chapters")
        self.last_run: Optional[CrawlRunState] = None

    async def run(self, start_url: str) -> list[ChapterResult]:
        start_url = normalize_url(start_url)
        channel = ResultChannel()
        state = CrawlRunState(
            start_url=start_url,
            fetcher=self.fetcher,
            extractor=self.extractor,
            limiter=AdmissionLimiter(self.concurrency),
            channel=channel,
            logger=self.logger,
            max_chapters=self.max_chapters,
            same_site_only=self.same_site_only,
        )
        self.last_run = state
        self.logger.info(f"Starting crawl: {start_url} (concurrency={self.concurrency})")

        ignition = channel.sender()
        try:
            state.spawn(start_url, ignition.clone())
        finally:
            ignition.release()

        try:
            results = await collect_results(channel)
        finally:
            pending = list(state.tasks)
            if pending:
                for task in pending:
                    if not task.done() and channel.open_senders:
                        task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        failed = sum(1 for r in results if not r.ok)
        self.logger.info(
            f"Crawl complete: {len(results) - failed} chapter(s) scraped, {failed} failed, "
            f"{len(state.visited)} URL(s) visited, peak concurrency {state.limiter.peak}"
        )
        return results


# ------------------------------- Output ------------------------------------ #


DOCUMENT_TEMPLATE = """<!DOCTYPE html>
<html lang="en"><head><meta charset="UTF-8"><title>{title}</title>
<style>body {{ font-family: sans-serif; line-height: 1.6; max-width: 800px; margin: 2rem auto; padding: 0 1rem; }} h1, h2, h3 {{ line-height: 1.2; }} hr {{ margin: 3rem 0; }}</style>
</head><body>{body}</body></html>
"""


def render_document(
    results: Iterable[ChapterResult], title: str = DEFAULT_TITLE, separator: str = DEFAULT_SEPARATOR
) -> str:
    ordered = sorted(results, key=lambda r: r.sequence)
    body = separator.join(r.content for r in ordered if r.ok and r.content is not None)
    return DOCUMENT_TEMPLATE.format(title=html.escape(title), body=body)


def write_document(path: Path, document: str) -> None:
    ensure_dir(path.parent)
    path.write_text(document, encoding="utf-8")


# ------------------------------- CLI --------------------------------------- #


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scrape a chain of chapters into one HTML document.")
    parser.add_argument("--config", "-c", type=Path, help="Path to YAML configuration file.")
    parser.add_argument("--url", help="Start URL (overrides start_url).")
    parser.add_argument("--concurrency", type=int, help="Maximum concurrent requests.")
    parser.add_argument("--output", "-o", help="Output HTML file.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log worker state transitions.")
    return parser.parse_args(list(argv) if argv is not None else None)


def build_config(args: argparse.Namespace) -> Config:
    cfg = Config.from_yaml(args.config) if args.config else Config()
    overrides = {}
    if args.url:
        overrides["start_url"] = args.url
    if args.concurrency is not None:
        overrides["concurrency"] = args.concurrency
    if args.output:
        overrides["output"] = args.output
    return dataclasses.replace(cfg, **overrides)


async def scrape(cfg: Config, client: httpx.AsyncClient, logger: logging.LoggerAdapter) -> list[ChapterResult]:
    crawler = ChapterCrawler(
        HttpPageFetcher(client),
        SelectorExtractor(cfg.selectors),
        concurrency=cfg.concurrency,
        max_chapters=cfg.max_chapters,
        same_site_only=cfg.same_site_only,
        logger=logger,
    )
    return await crawler.run(cfg.start_url)


async def main_async(cfg: Config, verbose: bool = False) -> int:
    results_root = Path(cfg.results_dir)
    ensure_dir(results_root)
    setup_root_logger(results_root, logging.DEBUG if verbose else logging.INFO)
    logger = get_run_logger(derive_site_slug(cfg.start_url))

    headers = {
        "User-Agent": cfg.user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en;q=0.7, *;q=0.5",
    }
    limits = httpx.Limits(max_keepalive_connections=20, max_connections=max(cfg.concurrency, 10))
    timeout = httpx.Timeout(cfg.timeout)

    async with httpx.AsyncClient(headers=headers, limits=limits, timeout=timeout, follow_redirects=True) as client:
        results = await scrape(cfg, client, logger)

    for r in results:
        if not r.ok:
            logger.warning(f"Chapter {r.sequence} omitted: {r.error}")

    scraped = [r for r in results if r.ok]
    if not scraped:
        logger.error("No chapters scraped, nothing written.")
        return 1

    out_path = derive_output_path(cfg)
    write_document(out_path, render_document(results, cfg.title, cfg.separator))
    logger.info(f"Saved {len(scraped)} chapter(s) to {out_path}")
    return 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    try:
        cfg = build_config(args)
        cfg.validate()
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1
    try:
        return asyncio.run(main_async(cfg, verbose=args.verbose))
    except KeyboardInterrupt:
        return 1


if __name__ == "__main__":
    sys.exit(main())
