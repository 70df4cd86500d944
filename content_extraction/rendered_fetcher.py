"""
Headless browser rendering with Playwright.

Used for sites that refuse non-browser clients and for resolving JavaScript
based redirect wrappers. Each call gets its own browser context, closed in a
``finally`` block inside the call's timeout, so a context is torn down exactly
once whether the render succeeds, times out or is cancelled.
"""

import asyncio
import logging
import re
from typing import Awaitable, Callable, Dict, Optional
from urllib.parse import urlparse

from playwright.async_api import Browser, async_playwright

from bypass.request_shaper import GOOGLEBOT_FORWARDED_FOR, referer_for, user_agent_for
from bypass.rule_store import host_of
from bypass.site_rule import SiteRule
from config import config
from content_extraction.errors import RenderTimeout
from utils.logging_config import TimedLogger

logger = logging.getLogger(__name__)

MOBILE_USER_AGENT = (
    "Mozilla/5.0 (Linux; Android 13; Pixel 6 Build/Tiramisu) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/116.0.0.0 Mobile Safari/537.36"
)

BLOCKED_RESOURCE_TYPES = frozenset({"image", "media", "font"})
REDIRECT_BLOCKED_RESOURCE_TYPES = frozenset({"image", "media", "font", "stylesheet"})
BLOCKED_EXTENSIONS = (".jpg", ".png", ".gif", ".webp", ".mp4", ".mp3", ".woff", ".woff2")

_SECOND_LEVEL_LABELS = {"co", "com", "org", "net", "ac", "gov", "edu"}

_OVERLAY_CLEANUP_JS = """
document.querySelectorAll('[class*=paywall],[class*=Paywall],[id*=paywall],[class*=gateway],[class*=modal-backdrop],[class*=piano]').forEach(function(e){e.remove();});
document.querySelectorAll('[class*=truncate],[class*=fade-out],[class*=article-body]').forEach(function(e){e.style.maxHeight='none';e.style.overflow='visible';});
if (document.body) { document.body.style.overflow='visible'; }
document.documentElement.style.overflow='visible';
"""

_CLEAR_STORAGE_JS = "try{localStorage.clear();}catch(e){}"

BrowserFactory = Callable[[], Awaitable[Browser]]


def cleanup_script(rule: Optional[SiteRule]) -> str:
    body = _OVERLAY_CLEANUP_JS
    if rule is not None and rule.cs_clear_lclstrg:
        body += _CLEAR_STORAGE_JS
    return "() => {" + body + "}"


def domain_family(host: str) -> str:
    """Registrable name of a host: ``news.google.com`` and ``google.co.uk`` are both ``google``"""
    labels = [label for label in host.lower().split('.') if label]
    if len(labels) < 2:
        return host.lower()
    if len(labels) >= 3 and labels[-2] in _SECOND_LEVEL_LABELS and len(labels[-1]) == 2:
        return labels[-3]
    return labels[-2]


def leaves_family(candidate_url: str, origin_family: str) -> bool:
    parsed = urlparse(candidate_url)
    if parsed.scheme not in ('http', 'https') or not parsed.hostname:
        return False
    return domain_family(parsed.hostname) != origin_family


def compile_block_regex(rule: Optional[SiteRule], host: str) -> Optional[re.Pattern]:
    if rule is None or not rule.block_regex:
        return None
    try:
        return re.compile(rule.block_regex.replace("{domain}", re.escape(host)))
    except re.error as e:
        logger.warning(f"Invalid block_regex for {rule.key}: {e}")
        return None


def should_block_request(request_url: str, resource_type: str, host: str,
                         block_regex: Optional[re.Pattern] = None, block_js: bool = False) -> bool:
    """Decide whether a rendered page's sub-request is aborted"""
    if resource_type in BLOCKED_RESOURCE_TYPES:
        return True
    path = urlparse(request_url).path.lower()
    if path.endswith(BLOCKED_EXTENSIONS):
        return True
    if block_regex is not None and block_regex.search(request_url):
        return True
    if block_js and host and host in request_url and path.endswith(".js"):
        return True
    return False


def context_options(rule: Optional[SiteRule]) -> Dict:
    headers = {}
    referer = referer_for(rule)
    if referer:
        headers["Referer"] = referer
    if rule is not None:
        if rule.useragent == "googlebot":
            headers["X-Forwarded-For"] = GOOGLEBOT_FORWARDED_FOR
        headers.update(rule.headers)
    return {
        "user_agent": user_agent_for(rule) or MOBILE_USER_AGENT,
        "extra_http_headers": headers,
        "java_script_enabled": True,
    }


class RenderedFetcher:
    """Shared headless Chromium, launched on first use"""

    def __init__(self, browser_factory: BrowserFactory = None, settle_delay: float = None):
        self._browser_factory = browser_factory or self._launch_chromium
        self.settle_delay = config.RENDER_SETTLE_DELAY_S if settle_delay is None else settle_delay
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._launch_lock = asyncio.Lock()

    async def _launch_chromium(self) -> Browser:
        self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(
            headless=True,
            args=[
                '--no-sandbox',
                '--disable-dev-shm-usage',
                '--disable-blink-features=AutomationControlled',
                '--disable-extensions',
                '--mute-audio',
            ],
        )

    async def _get_browser(self) -> Browser:
        if self._browser is not None:
            return self._browser
        async with self._launch_lock:
            if self._browser is None:
                logger.info("Launching headless browser")
                self._browser = await self._browser_factory()
        return self._browser

    async def close(self):
        browser, self._browser = self._browser, None
        playwright, self._playwright = self._playwright, None
        try:
            if browser is not None:
                await browser.close()
        finally:
            if playwright is not None:
                await playwright.stop()

    async def fetch_rendered(self, url: str, rule: Optional[SiteRule] = None,
                             timeout: float = None) -> Optional[str]:
        """
        Render ``url`` and return the serialized DOM after overlay cleanup.

        Returns None on timeout or browser failure.
        """
        timeout = timeout or config.RENDER_TIMEOUT_S
        try:
            with TimedLogger(logger, f"render {url}", external_service="playwright", url=url):
                return await asyncio.wait_for(self._render(url, rule), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(str(RenderTimeout(url, timeout)))
            return None
        except Exception as e:
            logger.warning(f"Rendering failed for {url}: {e}")
            return None

    async def _render(self, url: str, rule: Optional[SiteRule]) -> Optional[str]:
        host = host_of(url) or ""
        block_regex = compile_block_regex(rule, host)
        block_js = bool(rule is not None and rule.block_js)

        async def handle_route(route):
            request = route.request
            if should_block_request(request.url, request.resource_type, host, block_regex, block_js):
                await route.abort()
            else:
                await route.continue_()

        browser = await self._get_browser()
        context = await browser.new_context(**context_options(rule))
        try:
            page = await context.new_page()
            await page.route("**/*", handle_route)
            await page.goto(url, wait_until="domcontentloaded")
            await page.evaluate(cleanup_script(rule))
            if self.settle_delay:
                await asyncio.sleep(self.settle_delay)
            html = await page.content()
            logger.debug(f"Rendered {url} ({len(html)} chars)")
            return html or None
        finally:
            await context.close()

    async def resolve_redirect(self, url: str, timeout: float = None) -> Optional[str]:
        """First main-frame navigation target outside the origin's domain family"""
        timeout = timeout or config.REDIRECT_TIMEOUT_S
        try:
            return await asyncio.wait_for(self._resolve(url), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Redirect resolution timed out after {timeout}s for {url}")
            return None
        except Exception as e:
            logger.warning(f"Redirect resolution failed for {url}: {e}")
            return None

    async def _resolve(self, url: str) -> Optional[str]:
        origin_family = domain_family(host_of(url) or "")
        resolved: asyncio.Future = asyncio.get_running_loop().create_future()

        def settle(target_url: str):
            if not resolved.done() and leaves_family(target_url, origin_family):
                resolved.set_result(target_url)

        async def handle_route(route):
            request = route.request
            if request.resource_type in REDIRECT_BLOCKED_RESOURCE_TYPES:
                await route.abort()
            elif request.is_navigation_request() and leaves_family(request.url, origin_family):
                # The destination itself is never loaded
                settle(request.url)
                await route.abort()
            else:
                await route.continue_()

        def on_frame_navigated(frame):
            if frame.parent_frame is None:
                settle(frame.url)

        browser = await self._get_browser()
        context = await browser.new_context(user_agent=MOBILE_USER_AGENT)
        try:
            page = await context.new_page()
            page.on("framenavigated", on_frame_navigated)
            await page.route("**/*", handle_route)
            try:
                await page.goto(url, wait_until="commit")
            except Exception:
                if not resolved.done():
                    raise
            return await resolved
        finally:
            await context.close()
