"""Readable-content and metadata extraction (trafilatura + selectolax)."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from urllib.parse import urljoin

import trafilatura
from selectolax.parser import HTMLParser

from snapshotter.extraction.types import SnapshotContent

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class PageMetadata:
    title: str | None = None
    description: str | None = None
    site_name: str | None = None
    image_url: str | None = None
    canonical_url: str | None = None
    language: str | None = None
    byline: str | None = None


def _meta_content(tree: HTMLParser, *selectors: str) -> str | None:
    for selector in selectors:
        node = tree.css_first(selector)
        if node is None:
            continue
        value = (node.attributes or {}).get("content")
        if value and str(value).strip():
            return str(value).strip()
    return None


def _absolute(value: str | None, base_url: str) -> str | None:
    if not value:
        return None
    if value.startswith(("http://", "https://")):
        return value
    try:
        return urljoin(base_url, value)
    except ValueError:
        return None


def extract_page_metadata(html: str, url: str) -> PageMetadata:
    """Open Graph / Twitter / HTML head metadata, relative URLs resolved."""
    try:
        tree = HTMLParser(html)
    except Exception as exc:
        logger.debug("HTML metadata parse failed for %s: %s", url, exc)
        return PageMetadata()

    title = _meta_content(tree, "meta[property='og:title']", "meta[name='twitter:title']")
    if not title:
        title_node = tree.css_first("title")
        if title_node is not None and title_node.text(strip=True):
            title = title_node.text(strip=True)

    canonical = None
    canonical_node = tree.css_first("link[rel='canonical']")
    if canonical_node is not None:
        canonical = (canonical_node.attributes or {}).get("href")
    canonical = canonical or _meta_content(tree, "meta[property='og:url']")

    language = None
    html_node = tree.css_first("html")
    if html_node is not None:
        language = (html_node.attributes or {}).get("lang")
    language = language or _meta_content(tree, "meta[http-equiv='content-language']")

    return PageMetadata(
        title=title,
        description=_meta_content(
            tree,
            "meta[property='og:description']",
            "meta[name='twitter:description']",
            "meta[name='description']",
        ),
        site_name=_meta_content(tree, "meta[property='og:site_name']", "meta[name='twitter:site']"),
        image_url=_absolute(
            _meta_content(tree, "meta[property='og:image']", "meta[name='twitter:image']"), url
        ),
        canonical_url=_absolute(canonical, url),
        language=str(language).strip()[:32] if language else None,
        byline=_meta_content(tree, "meta[name='author']", "meta[property='article:author']"),
    )


def count_words(text: str) -> int:
    return len([word for word in _WS_RE.split(text) if word])


def make_excerpt(text: str, limit: int) -> str:
    """First ``limit`` characters, cut back to a word boundary when close."""
    text = _WS_RE.sub(" ", text).strip()
    if len(text) <= limit:
        return text
    excerpt = text[:limit]
    last_space = excerpt.rfind(" ")
    if last_space > limit * 0.8:
        return f"{excerpt[:last_space]}..."
    return f"{excerpt}..."


def extract_readable(
    html: str,
    url: str,
    *,
    max_text_length: int,
    excerpt_length: int,
) -> SnapshotContent | None:
    """Main article content as sanitized HTML plus plain text. None if nothing readable."""
    content_html = trafilatura.extract(
        html,
        url=url,
        output_format="html",
        include_comments=False,
        include_tables=True,
        include_images=True,
        include_links=True,
        favor_recall=True,
    )
    text = trafilatura.extract(
        html,
        url=url,
        output_format="txt",
        include_comments=False,
        include_tables=True,
        favor_recall=True,
    )
    if not content_html or not text or not text.strip():
        return None

    if len(text) > max_text_length:
        text = f"{text[:max_text_length]}..."

    page = extract_page_metadata(html, url)
    doc = trafilatura.extract_metadata(html, default_url=url)

    title = getattr(doc, "title", None) or page.title
    byline = getattr(doc, "author", None) or page.byline
    site_name = page.site_name or getattr(doc, "sitename", None)
    excerpt = getattr(doc, "description", None) or page.description or make_excerpt(text, excerpt_length)
    if len(excerpt) > excerpt_length:
        excerpt = make_excerpt(excerpt, excerpt_length)

    return SnapshotContent(
        title=title or "",
        byline=byline,
        content=content_html,
        text_content=text,
        excerpt=excerpt,
        site_name=site_name,
        language=page.language,
        word_count=count_words(text),
        image_url=page.image_url or getattr(doc, "image", None),
    )
