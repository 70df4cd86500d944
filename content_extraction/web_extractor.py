"""
Full-content extraction for feed items behind paywalls or bot blocking.

The orchestrator walks an explicit state machine:

    RESOLVE_REAL_URL -> RULE_LOOKUP -> {WEBVIEW_FIRST | STANDARD_FETCH}
        -> ARCHIVE_FALLBACK -> RENDERED_FALLBACK -> DONE

Each state is one async handler that records candidates on the per-run
context and returns the next state. The first accepted candidate wins; a
short standard-fetch result is kept as a last resort.
"""

import codecs
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from bypass import get_rule_store
from bypass.request_shaper import OutgoingRequest, shape
from bypass.rule_store import RuleStore, host_of
from bypass.site_rule import SiteRule
from config import config
from content_extraction import generic_extractor
from content_extraction.cache import FullContentCache
from content_extraction.errors import NetworkError, TotalExtractionFailure
from content_extraction.generic_extractor import Article, html_to_text, strip_title_heading
from content_extraction.purifier import ContentPurifier, strip_archive_chrome
from content_extraction.rendered_fetcher import RenderedFetcher
from utils.logging_config import TimedLogger, clear_request_context, get_request_id
from utils.network import BROWSER_USER_AGENT, FetchedResponse, NetworkSession, get_session

logger = logging.getLogger(__name__)

_META_CHARSET_RE = re.compile(rb'<meta[^>]+charset\s*=\s*["\']?\s*([A-Za-z0-9_\-:.]+)', re.IGNORECASE)

Extractor = Callable[[str, str], Optional[Article]]


class ExtractionState(Enum):
    RESOLVE_REAL_URL = "resolve_real_url"
    RULE_LOOKUP = "rule_lookup"
    WEBVIEW_FIRST = "webview_first"
    STANDARD_FETCH = "standard_fetch"
    ARCHIVE_FALLBACK = "archive_fallback"
    RENDERED_FALLBACK = "rendered_fallback"
    DONE = "done"


@dataclass(frozen=True)
class ExtractionRequest:
    url: str
    title: Optional[str] = None
    rule: Optional[SiteRule] = None


@dataclass
class ExtractionResult:
    """Outcome of one extraction: a fragment and the strategy that produced it, or the reasons it failed"""
    url: str
    content: Optional[str] = None
    strategy: Optional[str] = None
    reasons: List[str] = field(default_factory=list)

    @property
    def is_success(self) -> bool:
        return self.content is not None


@dataclass
class _Run:
    request: ExtractionRequest
    webview_first: bool = False
    accepted: Optional[ExtractionResult] = None
    short_result: Optional[ExtractionResult] = None
    reasons: List[str] = field(default_factory=list)
    visited: List[ExtractionState] = field(default_factory=list)

    @property
    def url(self) -> str:
        return self.request.url

    @property
    def rule(self) -> Optional[SiteRule]:
        return self.request.rule

    def accept(self, content: str, strategy: str):
        self.accepted = ExtractionResult(url=self.url, content=content, strategy=strategy, reasons=self.reasons)

    def fail(self, reason: str):
        logger.debug(f"{reason} ({self.url})")
        self.reasons.append(reason)


def is_link_wrapper(url: str) -> bool:
    """Aggregator links that only redirect to the real article"""
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    return host == "news.google.com" or "google.com/rss/" in url


def decode_html(content: bytes, charset: Optional[str] = None) -> str:
    """Decode with the header charset, else a meta-declared charset, else UTF-8"""
    for candidate in (charset, _sniff_meta_charset(content)):
        if not candidate:
            continue
        try:
            codecs.lookup(candidate)
        except LookupError:
            logger.debug(f"Unknown charset {candidate!r}")
            continue
        return content.decode(candidate, errors='replace')
    return content.decode('utf-8', errors='replace')


def _sniff_meta_charset(content: bytes) -> Optional[str]:
    match = _META_CHARSET_RE.search(content[:8192])
    if match is None:
        return None
    return match.group(1).decode('ascii', errors='ignore').strip().lower() or None


class ExtractionOrchestrator:
    """Drives fetch, purification and fallbacks for a single article URL"""

    def __init__(self, rule_store: RuleStore = None, session: NetworkSession = None,
                 rendered_fetcher: RenderedFetcher = None, purifier: ContentPurifier = None,
                 extractor: Extractor = None, min_chars: int = None):
        self.rule_store = rule_store or get_rule_store()
        self.session = session or get_session()
        self.rendered_fetcher = rendered_fetcher or RenderedFetcher()
        self.purifier = purifier or ContentPurifier(self.session)
        self.extractor = extractor or generic_extractor.extract
        self.min_chars = config.MIN_ARTICLE_CHARS if min_chars is None else min_chars

        self._handlers = {
            ExtractionState.RESOLVE_REAL_URL: self._resolve_real_url,
            ExtractionState.RULE_LOOKUP: self._rule_lookup,
            ExtractionState.WEBVIEW_FIRST: self._webview_first,
            ExtractionState.STANDARD_FETCH: self._standard_fetch,
            ExtractionState.ARCHIVE_FALLBACK: self._archive_fallback,
            ExtractionState.RENDERED_FALLBACK: self._rendered_fallback,
        }

    async def run(self, url: str, title: str = None) -> ExtractionResult:
        """Walk the state machine and return the best result found"""
        run = _Run(request=ExtractionRequest(url=url, title=title))
        request_id = get_request_id()
        logger.info(f"[{request_id}] Extracting full content for {url}", extra={'url': url})

        try:
            state = ExtractionState.RESOLVE_REAL_URL
            while state is not ExtractionState.DONE:
                run.visited.append(state)
                state = await self._handlers[state](run)
        finally:
            clear_request_context()

        if run.accepted is not None:
            logger.info(
                f"[{request_id}] {run.accepted.strategy} produced {len(run.accepted.content)} chars for {run.url}",
                extra={'strategy': run.accepted.strategy, 'url': run.url},
            )
            return run.accepted
        if run.short_result is not None:
            logger.info(f"[{request_id}] Returning short result for {run.url}", extra={'url': run.url})
            return run.short_result
        return ExtractionResult(url=run.url, reasons=run.reasons)

    async def extract(self, url: str, title: str = None) -> str:
        """
        Extract the article for ``url``.

        Raises:
            TotalExtractionFailure: every strategy was exhausted
        """
        result = await self.run(url, title)
        if not result.is_success:
            raise TotalExtractionFailure(result.url, result.reasons)
        return result.content

    # State handlers

    async def _resolve_real_url(self, run: _Run) -> ExtractionState:
        if is_link_wrapper(run.url):
            resolved = await self.rendered_fetcher.resolve_redirect(run.url, config.REDIRECT_TIMEOUT_S)
            if resolved and not is_link_wrapper(resolved):
                logger.info(f"Resolved wrapped link {run.url} -> {resolved}")
                run.request = ExtractionRequest(url=resolved, title=run.request.title)
            else:
                logger.warning(f"Could not resolve wrapped link, using original: {run.url}")
        return ExtractionState.RULE_LOOKUP

    async def _rule_lookup(self, run: _Run) -> ExtractionState:
        await self.rule_store.ensure_loaded()
        rule = self.rule_store.resolve(run.url)
        run.request = ExtractionRequest(url=run.url, title=run.request.title, rule=rule)

        if rule is None:
            logger.debug(f"No bypass rule for {run.url}")
            return ExtractionState.STANDARD_FETCH

        logger.debug(f"Rule {rule.key} applies to {run.url}", extra={'rule_key': rule.key})
        host = host_of(run.url) or ""
        run.webview_first = any(host == d or host.endswith("." + d) for d in config.WEBVIEW_FIRST_DOMAINS)
        return ExtractionState.WEBVIEW_FIRST if run.webview_first else ExtractionState.STANDARD_FETCH

    async def _webview_first(self, run: _Run) -> ExtractionState:
        html = await self.rendered_fetcher.fetch_rendered(run.url, run.rule, config.WEBVIEW_FIRST_TIMEOUT_S)
        if html is None:
            run.fail("webview_first: rendering produced nothing")
            return ExtractionState.ARCHIVE_FALLBACK

        article = self._readable(self.purifier.clean_html(html, run.url, run.rule), run)
        if article is not None and article.char_count > self.min_chars:
            run.accept(article.html, "webview_first")
            return ExtractionState.DONE

        run.fail(f"webview_first: {article.char_count if article else 0} chars")
        return ExtractionState.ARCHIVE_FALLBACK

    async def _standard_fetch(self, run: _Run) -> ExtractionState:
        shaped = shape(OutgoingRequest(url=run.url), run.rule)
        try:
            with TimedLogger(logger, f"fetch {run.url}", external_service="http", url=run.url):
                response = await self._get(run.url, shaped.to_headers())
        except NetworkError as e:
            run.fail(f"standard_fetch: {e}")
            return self._after_standard_fetch(run)

        html = decode_html(response.content, response.charset)

        fragment = await self.purifier.purify(html, run.url, run.rule)
        if fragment:
            run.accept(fragment, "purifier")
            return ExtractionState.DONE

        article = self._readable(self.purifier.clean_html(html, run.url, run.rule), run)
        if article is not None and article.char_count > self.min_chars:
            run.accept(article.html, "readability")
            return ExtractionState.DONE

        amp_article = await self._amp_candidate(html, run)
        if amp_article is not None and amp_article.char_count > self.min_chars:
            run.accept(amp_article.html, "amp_redirect")
            return ExtractionState.DONE

        if article is not None:
            run.short_result = ExtractionResult(
                url=run.url, content=article.html, strategy="readability_short", reasons=run.reasons,
            )
        run.fail(f"standard_fetch: {article.char_count if article else 0} chars")
        return self._after_standard_fetch(run)

    async def _amp_candidate(self, html: str, run: _Run) -> Optional[Article]:
        amp_url = self.purifier.amp_redirect_url(html, run.url, run.rule)
        if not amp_url or amp_url == run.url:
            return None
        shaped = shape(OutgoingRequest(url=amp_url), run.rule)
        try:
            response = await self._get(amp_url, shaped.to_headers())
        except NetworkError as e:
            run.fail(f"amp_redirect: {e}")
            return None
        amp_html = decode_html(response.content, response.charset)
        return self._readable(self.purifier.clean_html(amp_html, amp_url, run.rule), run)

    def _after_standard_fetch(self, run: _Run) -> ExtractionState:
        if run.rule is not None or config.FALLBACK_WITHOUT_RULE:
            return ExtractionState.ARCHIVE_FALLBACK
        return ExtractionState.DONE

    async def _archive_fallback(self, run: _Run) -> ExtractionState:
        next_state = ExtractionState.DONE if run.webview_first else ExtractionState.RENDERED_FALLBACK
        archive_url = f"https://{config.ARCHIVE_MIRROR}/newest/{run.url}"
        try:
            with TimedLogger(logger, f"archive fetch {run.url}", external_service="archive", url=archive_url):
                response = await self._get(archive_url, {'User-Agent': BROWSER_USER_AGENT})
        except NetworkError as e:
            run.fail(f"archive: {e}")
            return next_state

        html = strip_archive_chrome(decode_html(response.content, response.charset))
        article = self._readable(html, run)
        if article is not None and article.char_count > self.min_chars:
            run.accept(article.html, "archive")
            return ExtractionState.DONE

        run.fail(f"archive: {article.char_count if article else 0} chars")
        return next_state

    async def _rendered_fallback(self, run: _Run) -> ExtractionState:
        html = await self.rendered_fetcher.fetch_rendered(run.url, run.rule, config.RENDER_TIMEOUT_S)
        if html is None:
            run.fail("rendered: rendering produced nothing")
            return ExtractionState.DONE

        article = self._readable(self.purifier.clean_html(html, run.url, run.rule), run)
        if article is not None and article.text:
            run.accept(article.html, "rendered")
        else:
            run.fail("rendered: no readable text")
        return ExtractionState.DONE

    # Helpers

    async def _get(self, url: str, headers: Dict[str, str]) -> FetchedResponse:
        try:
            response = await self.session.get(url, headers=headers)
        except httpx.TimeoutException as e:
            raise NetworkError(f"timeout fetching {url}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"{type(e).__name__}: {e}") from e
        if not response.is_success:
            raise NetworkError(f"HTTP {response.status_code}", status_code=response.status_code)
        return response

    def _readable(self, html: str, run: _Run) -> Optional[Article]:
        article = self.extractor(html, run.url)
        if article is None:
            return None
        fragment = strip_title_heading(article.html, run.request.title)
        if fragment == article.html:
            return article
        return Article(text=html_to_text(fragment), html=fragment, title=article.title)


_default_orchestrator: Optional[ExtractionOrchestrator] = None
_default_cache: Optional[FullContentCache] = None


def get_orchestrator() -> ExtractionOrchestrator:
    global _default_orchestrator
    if _default_orchestrator is None:
        _default_orchestrator = ExtractionOrchestrator()
    return _default_orchestrator


def get_cache() -> FullContentCache:
    global _default_cache
    if _default_cache is None:
        _default_cache = FullContentCache()
    return _default_cache


async def extract_full_content(url: str, title: str = None, *, use_cache: bool = False,
                               orchestrator: ExtractionOrchestrator = None,
                               cache: FullContentCache = None) -> str:
    """
    Full article HTML for a feed item.

    Raises:
        TotalExtractionFailure: no strategy produced content; callers fall back
            to the feed summary
    """
    orchestrator = orchestrator or get_orchestrator()
    if use_cache:
        cache = cache or get_cache()
        cached = cache.get(url)
        if cached is not None:
            logger.info(f"Found cached full content for {url}")
            return cached.content

    result = await orchestrator.run(url, title)
    if not result.is_success:
        raise TotalExtractionFailure(result.url, result.reasons)

    if use_cache:
        cache.put(url, result.content, result.strategy)
    return result.content


async def shutdown():
    """Close the shared browser"""
    if _default_orchestrator is not None:
        await _default_orchestrator.rendered_fetcher.close()
