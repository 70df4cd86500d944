"""
Generic article extraction: readability-lxml with a trafilatura fallback
"""

import html as html_lib
import logging
import re
from dataclasses import dataclass
from typing import Optional

import trafilatura
from bs4 import BeautifulSoup
from readability import Document

logger = logging.getLogger(__name__)


@dataclass
class Article:
    """Readable article extracted from a page"""
    text: str
    html: str
    title: Optional[str] = None

    @property
    def char_count(self) -> int:
        return len(self.text)


def _normalize_text(text: str) -> str:
    if not text:
        return ""
    text = text.replace('\xa0', ' ')
    text = re.sub(r'[ \t]+', ' ', text)
    text = re.sub(r'\n[ \t]*\n', '\n\n', text)
    text = re.sub(r'\n{3,}', '\n\n', text)
    return text.strip()


def html_to_text(fragment: str) -> str:
    soup = BeautifulSoup(fragment, 'lxml')
    for tag in soup(['script', 'style', 'noscript']):
        tag.decompose()
    return _normalize_text(soup.get_text('\n'))


def _extract_with_readability(raw_html: str, base_url: str) -> Optional[Article]:
    try:
        doc = Document(raw_html, url=base_url)
        content_html = doc.summary(html_partial=True)
    except Exception as e:
        logger.debug(f"readability failed for {base_url}: {e}")
        return None

    if not content_html:
        return None
    text = html_to_text(content_html)
    if not text:
        return None
    return Article(text=text, html=content_html, title=doc.short_title() or None)


def _extract_with_trafilatura(raw_html: str, base_url: str) -> Optional[Article]:
    try:
        text = trafilatura.extract(
            raw_html,
            url=base_url,
            include_comments=False,
            include_tables=True,
            output_format="txt",
        )
    except Exception as e:
        logger.debug(f"trafilatura failed for {base_url}: {e}")
        return None

    text = _normalize_text(text or "")
    if not text:
        return None
    paragraphs = [p.strip() for p in text.split('\n') if p.strip()]
    fragment = "<div>" + "".join(f"<p>{html_lib.escape(p)}</p>" for p in paragraphs) + "</div>"
    return Article(text=text, html=fragment)


def extract(raw_html: str, base_url: str) -> Optional[Article]:
    """
    Extract the main article from ``raw_html``.

    readability-lxml is tried first since it keeps the article markup; when it
    yields nothing, or less text than trafilatura, the trafilatura result is used.
    """
    if not raw_html or not raw_html.strip():
        return None

    article = _extract_with_readability(raw_html, base_url)
    fallback = _extract_with_trafilatura(raw_html, base_url)

    if article is None:
        return fallback
    if fallback is not None and fallback.char_count > article.char_count * 2:
        logger.debug(f"Using trafilatura output for {base_url} ({fallback.char_count} vs {article.char_count} chars)")
        return fallback
    return article


def strip_title_heading(fragment: str, title: Optional[str]) -> str:
    """Drop a heading that only repeats the feed item title"""
    if not title or not fragment:
        return fragment
    wanted = _normalize_text(title).casefold()

    soup = BeautifulSoup(fragment, 'lxml')
    removed = False
    for heading in soup.find_all(['h1', 'h2']):
        if _normalize_text(heading.get_text(' ')).casefold() == wanted:
            heading.decompose()
            removed = True
            break
    if not removed:
        return fragment

    body = soup.body
    if body is None:
        return str(soup)
    return "".join(str(child) for child in body.contents)
