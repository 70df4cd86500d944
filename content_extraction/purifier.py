"""
DOM and script level purification of paywalled pages.

``purify`` removes blocked scripts and then tries each structured-data
strategy in order, returning the first non-empty HTML fragment. ``clean_html``
only applies the non-extracting passes so a generic readability extractor
sees the unhidden article.
"""

import json
import logging
import re
from typing import Any, Awaitable, Callable, List, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from bypass.request_shaper import UA_GOOGLEBOT
from bypass.site_rule import REMOVE_ATTRIBUTE, REMOVE_ELEMENT, SET_ATTRIBUTE, SiteRule
from bypass.rule_store import host_of
from content_extraction.errors import ParseError
from utils.network import NetworkSession

logger = logging.getLogger(__name__)

# Ordered field names tried inside a __NEXT_DATA__ blob
NEXT_DATA_FIELDS = ("contentHtml", "body", "BodyPlainText", "content", "html", "articleBody")

ARCHIVE_CHROME_SELECTORS = "#HEADER, #wm-ipp, .wm-ipp-base, #donato, #FOOTER"

_BODY_FIELDS = ("articleBody", "text")
_SOURCE_FIELDS = ("articleBody", "text", "content")


def _parse(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, 'lxml')


def _script_data(script) -> str:
    return script.string or ""


def _paragraphs(text: str) -> str:
    return "<div><p>" + text.replace("\n", "</p><p>") + "</p></div>"


def _compile_with_domain(pattern: str, host: str) -> re.Pattern:
    return re.compile(pattern.replace("{domain}", re.escape(host)))


# Cleaning passes

def apply_script_blocking(soup: BeautifulSoup, url: str, rule: SiteRule):
    """Remove scripts matched by ``block_regex``, ``block_js`` and ``block_js_inline``"""
    host = host_of(url) or ""

    if rule.block_regex:
        try:
            regex = _compile_with_domain(rule.block_regex, host)
        except re.error as e:
            logger.warning(f"Invalid block_regex for {rule.key}: {e}")
        else:
            for script in soup.find_all('script'):
                src = script.get('src')
                target = src if src is not None else _script_data(script)
                if target and regex.search(target):
                    script.decompose()

    if rule.block_js and host:
        for script in soup.find_all('script', src=True):
            if host in script['src']:
                script.decompose()

    if rule.block_js_inline:
        try:
            regex = _compile_with_domain(rule.block_js_inline, host)
        except re.error as e:
            logger.warning(f"Invalid block_js_inline for {rule.key}: {e}")
        else:
            if regex.search(url):
                for script in soup.find_all('script', src=False):
                    script.decompose()


def apply_amp_unhide(soup: BeautifulSoup):
    for tag in soup.select('[amp-access-hide]'):
        del tag['amp-access-hide']

    for tag in soup.select('amp-access-extension, [amp-access]'):
        if tag.decomposed:
            continue
        condition = tag.get('amp-access') or ""
        if "NOT" in condition or "subscriber" in condition:
            tag.decompose()


def apply_dom_operations(soup: BeautifulSoup, rule: SiteRule):
    for operation in rule.cs_code:
        try:
            targets = soup.select(operation.selector)
        except Exception as e:
            logger.debug(f"Skipping DOM operation with selector {operation.selector!r}: {e}")
            continue

        for tag in targets:
            if tag.decomposed:
                continue
            if operation.action == REMOVE_ELEMENT:
                tag.decompose()
            elif operation.action == REMOVE_ATTRIBUTE:
                if operation.attribute in tag.attrs:
                    del tag[operation.attribute]
            elif operation.action == SET_ATTRIBUTE:
                tag[operation.attribute] = operation.value


def strip_archive_chrome(html: str) -> str:
    """Remove the archive mirror's toolbar, banners and footer"""
    soup = _parse(html)
    for tag in soup.select(ARCHIVE_CHROME_SELECTORS):
        if not tag.decomposed:
            tag.decompose()
    return str(soup)


# Extracting strategies

def extract_ld_json(soup: BeautifulSoup) -> Optional[str]:
    """Article body from ``application/ld+json`` blocks (object, array or @graph)"""
    for script in soup.find_all('script', attrs={'type': 'application/ld+json'}):
        data = _script_data(script)
        if '"articleBody"' not in data and '"text"' not in data:
            continue
        try:
            payload = json.loads(data)
        except ValueError as e:
            raise ParseError(f"Malformed ld+json block: {e}") from e

        for candidate in _ld_json_candidates(payload):
            body = _first_string(candidate, _BODY_FIELDS)
            if body:
                return _paragraphs(body)
    return None


def _ld_json_candidates(payload: Any) -> List[dict]:
    if isinstance(payload, list):
        return [item for item in payload[:1] if isinstance(item, dict)]
    if isinstance(payload, dict):
        graph = payload.get('@graph')
        if isinstance(graph, list):
            return [item for item in graph if isinstance(item, dict) and any(f in item for f in _BODY_FIELDS)][:1]
        return [payload]
    return []


def _first_string(obj: dict, fields: Tuple[str, ...]) -> Optional[str]:
    for name in fields:
        value = obj.get(name)
        if isinstance(value, str) and value:
            return value
    return None


def extract_next_data(soup: BeautifulSoup) -> Optional[str]:
    """Article HTML from the first matching field of a ``__NEXT_DATA__`` blob"""
    script = soup.find('script', id='__NEXT_DATA__')
    if script is None:
        return None
    data = _script_data(script)

    for name in NEXT_DATA_FIELDS:
        match = re.search(r'"' + name + r'"\s*:\s*("(?:[^"\\]|\\.)*")', data)
        if match is None:
            continue
        try:
            value = json.loads(match.group(1))
        except ValueError as e:
            raise ParseError(f"Malformed {name} string in __NEXT_DATA__: {e}") from e
        if value:
            return "<div>" + value.replace("\n", "<br>") + "</div>"
    return None


async def extract_ld_json_url(soup: BeautifulSoup, url: str, session: NetworkSession) -> Optional[str]:
    """Fetch the page's alternate JSON representation (WordPress REST style)"""
    link = soup.select_one('link[rel~="alternate"][type="application/json"][href]')
    if link is None:
        return None
    json_url = urljoin(url, link['href'])

    payload = await _fetch_json(json_url, session)
    if not isinstance(payload, dict):
        return None

    content = payload.get('content')
    if isinstance(content, dict):
        rendered = content.get('rendered')
        if isinstance(rendered, str) and rendered:
            return f"<div>{rendered}</div>"
    if isinstance(content, str) and content:
        return f"<div>{content}</div>"

    body = payload.get('articleBody')
    if isinstance(body, str) and body:
        return _paragraphs(body)
    return None


async def extract_ld_json_source(soup: BeautifulSoup, url: str, pattern: str,
                                 session: NetworkSession) -> Optional[str]:
    """Fetch external scripts that carry the article as JSON"""
    for script in soup.find_all('script', src=True):
        src = urljoin(url, script['src'])
        if pattern not in src and not src.endswith('.json'):
            continue
        payload = await _fetch_json(src, session)
        if isinstance(payload, dict):
            body = _first_string(payload, _SOURCE_FIELDS)
            if body:
                return _paragraphs(body)
    return None


async def _fetch_json(url: str, session: NetworkSession) -> Any:
    response = await session.get(url, headers={'User-Agent': UA_GOOGLEBOT, 'Accept': 'application/json'})
    if not response.is_success:
        logger.debug(f"JSON source {url} returned HTTP {response.status_code}")
        return None
    try:
        return json.loads(response.content.decode(response.charset or 'utf-8', errors='replace'))
    except ValueError as e:
        raise ParseError(f"Malformed JSON from {url}: {e}") from e


class ContentPurifier:
    """Applies a site rule's purification strategies to fetched HTML"""

    def __init__(self, session: NetworkSession = None):
        self.session = session

    def _strategies(self, url: str, rule: SiteRule) -> List[Tuple[str, Callable[[BeautifulSoup], Awaitable[Optional[str]]]]]:
        strategies = []

        async def ld_json(soup):
            return extract_ld_json(soup)

        async def ld_json_next(soup):
            return extract_next_data(soup)

        if rule.ld_json:
            strategies.append(('ld_json', ld_json))
        if rule.ld_json_next:
            strategies.append(('ld_json_next', ld_json_next))
        if self.session is not None:
            if rule.ld_json_url:
                strategies.append(('ld_json_url', lambda soup: extract_ld_json_url(soup, url, self.session)))
            if rule.ld_json_source:
                strategies.append((
                    'ld_json_source',
                    lambda soup: extract_ld_json_source(soup, url, rule.ld_json_source, self.session),
                ))
        return strategies

    async def purify(self, html: str, url: str, rule: Optional[SiteRule]) -> Optional[str]:
        """
        Try the rule's extraction strategies on ``html``.

        Returns the first non-empty fragment, or None when no strategy produced
        one (or there is no rule). A failing strategy is logged and skipped.
        """
        if rule is None:
            return None

        soup = _parse(html)
        apply_script_blocking(soup, url, rule)

        for name, strategy in self._strategies(url, rule):
            try:
                fragment = await strategy(soup)
            except Exception as e:
                logger.debug(f"Purifier strategy {name} failed for {url}: {e!r}",
                             extra={'strategy': name, 'rule_key': rule.key, 'url': url})
                continue
            if fragment:
                logger.info(f"Purifier strategy {name} produced content for {url}",
                            extra={'strategy': name, 'rule_key': rule.key, 'url': url})
                return fragment

        # AMP unhide and DOM operations only prepare the page for readability
        return None

    def clean_html(self, html: str, url: str, rule: Optional[SiteRule]) -> str:
        """Apply script blocking, AMP unhide and DOM operations; idempotent"""
        if rule is None:
            return html
        try:
            soup = _parse(html)
            apply_script_blocking(soup, url, rule)
            if rule.amp_unhide:
                apply_amp_unhide(soup)
            apply_dom_operations(soup, rule)
            return str(soup)
        except Exception as e:
            logger.warning(f"Error cleaning HTML for {url}: {e}")
            return html

    @staticmethod
    def amp_redirect_url(html: str, url: str, rule: Optional[SiteRule]) -> Optional[str]:
        """AMP version of the page when the rule asks for an AMP redirect"""
        if rule is None or not rule.amp_redirect:
            return None
        soup = _parse(html)
        amp_link = soup.select_one('link[rel~="amphtml"][href]')
        if amp_link is not None:
            return urljoin(url, amp_link['href'])
        if rule.amp_redirect != "amp":
            return None
        canonical = soup.select_one('link[rel~="canonical"][href]')
        canonical_url = urljoin(url, canonical['href']) if canonical is not None else url
        return canonical_url + ("&amp" if "?" in canonical_url else "?amp")
