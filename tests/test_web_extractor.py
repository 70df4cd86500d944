#!/usr/bin/env python3
"""
Tests for the full-content extraction fallback chain
"""

from typing import List, Optional

import httpx
import pytest
from bs4 import BeautifulSoup

from content_extraction.cache import FullContentCache
from content_extraction.errors import TotalExtractionFailure
from content_extraction.generic_extractor import Article
from content_extraction.web_extractor import (
    ExtractionOrchestrator,
    ExtractionState,
    decode_html,
    extract_full_content,
    is_link_wrapper,
)
from conftest import RecordingHandler, mock_session

LONG_TEXT = "The valley rivers are flowing again after a decade of drought. " * 6
SHORT_TEXT = "Subscribe to keep reading."

CATALOG = {
    "Example": {"domain": "example.com"},
    "Bloomberg": {"domain": "bloomberg.com"},
    "Structured": {"domain": "structured.com", "ld_json": "div.paywall"},
}


def article_page(text: str, heading: str = None) -> str:
    heading_html = f"<h1>{heading}</h1>" if heading else ""
    return f"<html><body><nav>menu</nav><article>{heading_html}<p>{text}</p></article></body></html>"


def article_extractor(html: str, url: str) -> Optional[Article]:
    """Deterministic stand-in for readability: the <article> element"""
    node = BeautifulSoup(html, 'lxml').find('article')
    if node is None:
        return None
    return Article(text=node.get_text(' ', strip=True), html=str(node))


class FakeRenderedFetcher:
    def __init__(self, events: List[str], html: Optional[str] = None, redirect: Optional[str] = None):
        self.events = events
        self.html = html
        self.redirect = redirect
        self.timeouts = []

    async def fetch_rendered(self, url, rule=None, timeout=None):
        self.events.append(f"render {url}")
        self.timeouts.append(timeout)
        return self.html

    async def resolve_redirect(self, url, timeout=None):
        self.events.append(f"resolve {url}")
        return self.redirect

    async def close(self):
        pass


def build(make_store, respond, rendered_html=None, redirect=None):
    events: List[str] = []

    def recording(request: httpx.Request) -> httpx.Response:
        events.append(f"GET {request.url.host}")
        return respond(request)

    handler = RecordingHandler(recording)
    fetcher = FakeRenderedFetcher(events, html=rendered_html, redirect=redirect)
    orchestrator = ExtractionOrchestrator(
        rule_store=make_store(CATALOG),
        session=mock_session(handler),
        rendered_fetcher=fetcher,
        extractor=article_extractor,
        min_chars=200,
    )
    return orchestrator, events, handler, fetcher


class TestFallbackChain:

    @pytest.mark.asyncio
    async def test_forbidden_goes_to_archive_then_rendered(self, make_store):
        def respond(request):
            if request.url.host == "example.com":
                return httpx.Response(403)
            return httpx.Response(200, html=article_page(SHORT_TEXT))

        orchestrator, events, handler, _ = build(make_store, respond, rendered_html=article_page(LONG_TEXT))
        result = await orchestrator.run("https://example.com/story")

        assert events == ["GET example.com", "GET archive.is", "render https://example.com/story"]
        assert result.strategy == "rendered"
        assert "valley rivers" in result.content
        assert any("HTTP 403" in reason for reason in result.reasons)
        assert str(handler.requests[1].url).endswith("/newest/https://example.com/story")

    @pytest.mark.asyncio
    async def test_long_archive_result_skips_rendering(self, make_store):
        def respond(request):
            if request.url.host == "example.com":
                return httpx.Response(403)
            return httpx.Response(200, html='<div id="HEADER">archive chrome</div>' + article_page(LONG_TEXT))

        orchestrator, events, _, _ = build(make_store, respond, rendered_html=article_page(LONG_TEXT))
        result = await orchestrator.run("https://example.com/story")

        assert result.strategy == "archive"
        assert "archive chrome" not in result.content
        assert not any(event.startswith("render") for event in events)

    @pytest.mark.asyncio
    async def test_readable_standard_fetch_is_accepted(self, make_store):
        orchestrator, events, _, _ = build(make_store, lambda r: httpx.Response(200, html=article_page(LONG_TEXT)))
        result = await orchestrator.run("https://www.example.com/story")

        assert result.strategy == "readability"
        assert events == ["GET www.example.com"]

    @pytest.mark.asyncio
    async def test_purifier_hit_returns_immediately(self, make_store):
        html = ('<html><head><script type="application/ld+json">{"articleBody":"Line one\\nLine two"}</script>'
                '</head><body><p>Teaser</p></body></html>')
        orchestrator, events, _, _ = build(make_store, lambda r: httpx.Response(200, html=html))

        result = await orchestrator.run("https://structured.com/a")

        assert result.strategy == "purifier"
        assert result.content == "<div><p>Line one</p><p>Line two</p></div>"
        assert events == ["GET structured.com"]

    @pytest.mark.asyncio
    async def test_short_result_is_kept_as_last_resort(self, make_store):
        def respond(request):
            if request.url.host == "example.com":
                return httpx.Response(200, html=article_page(SHORT_TEXT))
            return httpx.Response(404)

        orchestrator, events, _, _ = build(make_store, respond, rendered_html=None)
        result = await orchestrator.run("https://example.com/story")

        assert result.is_success
        assert result.strategy == "readability_short"
        assert SHORT_TEXT in result.content
        assert events[-1] == "render https://example.com/story"

    @pytest.mark.asyncio
    async def test_no_rule_skips_fallbacks_and_fails(self, make_store):
        orchestrator, events, _, _ = build(make_store, lambda r: httpx.Response(403))

        with pytest.raises(TotalExtractionFailure) as exc_info:
            await orchestrator.extract("https://unknown.org/story")

        assert events == ["GET unknown.org"]
        assert exc_info.value.reasons
        assert "unknown.org" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_network_error_drives_fallback(self, make_store):
        def respond(request):
            if request.url.host == "example.com":
                raise httpx.ConnectError("connection refused")
            return httpx.Response(200, html=article_page(LONG_TEXT))

        orchestrator, _, _, _ = build(make_store, respond)
        result = await orchestrator.run("https://example.com/story")

        assert result.strategy == "archive"
        assert any("ConnectError" in reason for reason in result.reasons)


class TestRouting:

    @pytest.mark.asyncio
    async def test_webview_first_domain_never_uses_standard_fetch(self, make_store):
        orchestrator, events, _, fetcher = build(
            make_store, lambda r: httpx.Response(200, html=article_page(SHORT_TEXT)), rendered_html=None,
        )
        result = await orchestrator.run("https://www.bloomberg.com/news/articles/x")

        assert events == ["render https://www.bloomberg.com/news/articles/x", "GET archive.is"]
        assert len(fetcher.timeouts) == 1
        assert not result.is_success

    @pytest.mark.asyncio
    async def test_webview_first_accepts_long_render(self, make_store):
        orchestrator, events, _, _ = build(
            make_store, lambda r: httpx.Response(500), rendered_html=article_page(LONG_TEXT),
        )
        result = await orchestrator.run("https://www.bloomberg.com/news/articles/x")

        assert result.strategy == "webview_first"
        assert events == ["render https://www.bloomberg.com/news/articles/x"]

    @pytest.mark.asyncio
    async def test_wrapped_link_is_resolved_before_rule_lookup(self, make_store):
        orchestrator, events, _, _ = build(
            make_store, lambda r: httpx.Response(200, html=article_page(LONG_TEXT)),
            redirect="https://example.com/real-story",
        )
        result = await orchestrator.run("https://news.google.com/rss/articles/CBMiabc")

        assert events == ["resolve https://news.google.com/rss/articles/CBMiabc", "GET example.com"]
        assert result.url == "https://example.com/real-story"

    @pytest.mark.asyncio
    async def test_failed_resolution_keeps_original_url(self, make_store):
        orchestrator, events, _, _ = build(
            make_store, lambda r: httpx.Response(200, html=article_page(LONG_TEXT)), redirect=None,
        )
        result = await orchestrator.run("https://news.google.com/rss/articles/CBMiabc")

        assert events[1] == "GET news.google.com"
        assert result.url == "https://news.google.com/rss/articles/CBMiabc"

    @pytest.mark.asyncio
    async def test_title_heading_is_stripped(self, make_store):
        html = article_page(LONG_TEXT, heading="Rivers Return")
        orchestrator, _, _, _ = build(make_store, lambda r: httpx.Response(200, html=html))

        result = await orchestrator.run("https://example.com/story", title="Rivers Return")

        assert "<h1>" not in result.content
        assert "valley rivers" in result.content

    @pytest.mark.asyncio
    async def test_states_are_visited_in_order(self, make_store):
        orchestrator, _, _, _ = build(make_store, lambda r: httpx.Response(403))
        visited = []
        original = orchestrator._handlers[ExtractionState.ARCHIVE_FALLBACK]

        async def spy(run):
            visited.extend(run.visited)
            return await original(run)

        orchestrator._handlers[ExtractionState.ARCHIVE_FALLBACK] = spy
        await orchestrator.run("https://example.com/story")

        assert visited == [
            ExtractionState.RESOLVE_REAL_URL,
            ExtractionState.RULE_LOOKUP,
            ExtractionState.STANDARD_FETCH,
            ExtractionState.ARCHIVE_FALLBACK,
        ]


@pytest.mark.asyncio
async def test_extract_full_content_uses_cache(make_store, tmp_path):
    orchestrator, events, _, _ = build(make_store, lambda r: httpx.Response(200, html=article_page(LONG_TEXT)))
    cache = FullContentCache(db_path=str(tmp_path / "cache.db"), ttl_hours=1)

    first = await extract_full_content("https://example.com/story", use_cache=True,
                                       orchestrator=orchestrator, cache=cache)
    second = await extract_full_content("https://example.com/story", use_cache=True,
                                        orchestrator=orchestrator, cache=cache)

    assert first == second
    assert events == ["GET example.com"]
    assert cache.get("https://example.com/story").strategy == "readability"


def test_decode_html_charset_order():
    body = '<html><head><meta http-equiv="Content-Type" content="text/html; charset=windows-1251"></head>' \
           '<body>Привет</body></html>'
    encoded = body.encode('windows-1251')

    assert "Привет" in decode_html(encoded, None)
    assert "Привет" in decode_html('<meta charset="koi8-r"><p>Привет</p>'.encode('koi8-r'))
    assert decode_html("héllo".encode('latin-1'), "latin-1") == "héllo"
    assert decode_html("naïve".encode('utf-8'), "no-such-charset") == "naïve"


def test_is_link_wrapper():
    assert is_link_wrapper("https://news.google.com/rss/articles/CBMi")
    assert is_link_wrapper("https://www.google.com/rss/articles/x")
    assert not is_link_wrapper("https://www.nytimes.com/2024/story.html")
