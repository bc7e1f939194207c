"""End-to-end runs of ChapterCrawler against the in-memory site."""

import asyncio

import pytest

from chapter_scraper import (
    ChapterCrawler,
    FetchError,
    SelectorConfig,
    SelectorExtractor,
    render_document,
)
from tests.fakes import FakeFetcher, chapter_page, chapter_url, make_chain


def crawl(fetcher, start=None, **kwargs):
    crawler = ChapterCrawler(fetcher, SelectorExtractor(SelectorConfig()), **kwargs)
    results = asyncio.run(crawler.run(start or chapter_url(1)))
    return crawler, results


def test_two_page_chain():
    pages = {
        "https://book.example.com/a.html": chapter_page("A", "b.html"),
        "https://book.example.com/b.html": chapter_page("B"),
    }
    _, results = crawl(FakeFetcher(pages), start="https://book.example.com/a.html")

    assert [r.ok for r in results] == [True, True]
    assert [r.sequence for r in results] == [0, 1]
    html = render_document(results)
    assert html.index("<p>A</p>") < html.index("<p>B</p>")


def test_cycle_terminates():
    pages = {
        chapter_url(1): chapter_page("1", "ch2.html"),
        chapter_url(2): chapter_page("2", "ch3.html"),
        chapter_url(3): chapter_page("3", "ch1.html"),
    }
    fetcher = FakeFetcher(pages)
    crawler, results = crawl(fetcher)

    assert [r.url for r in results] == [chapter_url(1), chapter_url(2), chapter_url(3)]
    assert sorted(fetcher.calls) == sorted(set(fetcher.calls))
    assert len(crawler.last_run.visited) == 3


def test_self_link_terminates():
    fetcher = FakeFetcher({chapter_url(1): chapter_page("1", "ch1.html")})
    _, results = crawl(fetcher)
    assert len(results) == 1
    assert fetcher.calls == [chapter_url(1)]


def test_every_claimed_url_reported_once():
    fetcher = FakeFetcher(make_chain(8))
    crawler, results = crawl(fetcher)

    urls = [r.url for r in results]
    assert len(urls) == len(set(urls)) == 8
    assert set(urls) == {chapter_url(i) for i in range(1, 9)}
    assert crawler.last_run.channel.closed
    assert not crawler.last_run.tasks


def test_mid_chain_failure_keeps_earlier_pages():
    pages = make_chain(5)
    broken = chapter_url(3)
    fetcher = FakeFetcher(pages, failures={broken: FetchError(broken, "HTTP 500", status_code=500)})
    _, results = crawl(fetcher)

    assert [r.url for r in results] == [chapter_url(1), chapter_url(2), chapter_url(3)]
    assert [r.ok for r in results] == [True, True, False]
    assert chapter_url(4) not in fetcher.calls
    assert chapter_url(5) not in fetcher.calls

    html = render_document(results)
    assert "Chapter 1" in html and "Chapter 2" in html
    assert "Chapter 3" not in html


def test_start_url_is_normalized():
    fetcher = FakeFetcher(make_chain(1))
    _, results = crawl(fetcher, start="HTTPS://Book.Example.com:443/ch1.html#top")
    assert [r.url for r in results] == [chapter_url(1)]


@pytest.mark.parametrize("concurrency", [1, 2, 50])
def test_order_independent_of_concurrency(concurrency):
    fetcher = FakeFetcher(make_chain(6), delays={chapter_url(2): 0.01, chapter_url(5): 0.005})
    _, results = crawl(fetcher, concurrency=concurrency)
    assert [r.sequence for r in results] == list(range(6))
    assert [r.url for r in results] == [chapter_url(i) for i in range(1, 7)]
