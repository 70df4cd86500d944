#!/usr/bin/env python3
"""
Tests for bulk full-content prefetch
"""

import asyncio
import sqlite3

import pytest

from bypass.prefetcher import FeedArticle, Prefetcher
from content_extraction.cache import FullContentCache
from content_extraction.web_extractor import ExtractionResult

CATALOG = {
    "Example": {"domain": "example.com"},
    "News": {"domain": "news.com"},
}


class FakeOrchestrator:
    """Records calls and tracks how many runs overlap"""

    def __init__(self, rule_store, fail_urls=(), empty_urls=()):
        self.rule_store = rule_store
        self.fail_urls = set(fail_urls)
        self.empty_urls = set(empty_urls)
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def run(self, url, title=None):
        self.calls.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.01)
            if url in self.fail_urls:
                raise RuntimeError("browser crashed")
            if url in self.empty_urls:
                return ExtractionResult(url=url, reasons=["archive: HTTP 404"])
            return ExtractionResult(url=url, content=f"<div>{url}</div>", strategy="readability")
        finally:
            self.active -= 1


@pytest.fixture
def cache(tmp_path):
    return FullContentCache(db_path=str(tmp_path / "cache.db"), ttl_hours=1)


@pytest.mark.asyncio
async def test_only_uncached_bypassable_articles_are_fetched(make_store, cache):
    orchestrator = FakeOrchestrator(make_store(CATALOG))
    cache.put("https://example.com/cached", "<div>cached</div>", "archive")
    articles = [
        FeedArticle("https://example.com/cached"),
        FeedArticle("https://example.com/new", "New"),
        FeedArticle("https://unlisted.org/story"),
        FeedArticle("https://www.news.com/today"),
    ]

    report = await Prefetcher(orchestrator, cache, concurrency=2).prefetch(articles, limit=10)

    assert sorted(orchestrator.calls) == ["https://example.com/new", "https://www.news.com/today"]
    assert report.skipped_cached == 1
    assert report.fetched == 2
    assert cache.get("https://www.news.com/today").content == "<div>https://www.news.com/today</div>"


@pytest.mark.asyncio
async def test_failures_are_counted_not_raised(make_store, cache):
    orchestrator = FakeOrchestrator(
        make_store(CATALOG),
        fail_urls={"https://example.com/crash"},
        empty_urls={"https://example.com/empty"},
    )
    articles = [FeedArticle(u) for u in
                ("https://example.com/crash", "https://example.com/empty", "https://example.com/ok")]

    report = await Prefetcher(orchestrator, cache, concurrency=2).prefetch(articles, limit=10)

    assert report.fetched == 1
    assert report.failed == 2
    assert any("browser crashed" in failure for failure in report.failures)
    assert not cache.contains("https://example.com/empty")


@pytest.mark.asyncio
async def test_concurrency_and_limit_are_respected(make_store, cache):
    orchestrator = FakeOrchestrator(make_store(CATALOG))
    articles = [FeedArticle(f"https://example.com/{i}") for i in range(10)]

    report = await Prefetcher(orchestrator, cache, concurrency=2).prefetch(articles, limit=5)

    assert len(orchestrator.calls) == 5
    assert report.candidates == 5
    assert orchestrator.max_active <= 2


@pytest.mark.asyncio
async def test_nothing_to_do(make_store, cache):
    orchestrator = FakeOrchestrator(make_store(CATALOG))

    report = await Prefetcher(orchestrator, cache).prefetch([FeedArticle("https://unlisted.org/a")])

    assert report.candidates == 0
    assert orchestrator.calls == []


class LockedCache(FullContentCache):
    def put(self, url, content, strategy=None):
        raise sqlite3.OperationalError("database is locked")


@pytest.mark.asyncio
async def test_cache_write_failure_is_counted(make_store, tmp_path):
    orchestrator = FakeOrchestrator(make_store(CATALOG))
    cache = LockedCache(db_path=str(tmp_path / "locked.db"), ttl_hours=1)
    articles = [FeedArticle("https://example.com/a"), FeedArticle("https://www.news.com/b")]

    report = await Prefetcher(orchestrator, cache, concurrency=2).prefetch(articles, limit=10)

    assert report.fetched == 0
    assert report.failed == 2
    assert all("database is locked" in failure for failure in report.failures)
