"""Default ``ContentExtractor``: fetch, opt-out check, readable extraction."""
from __future__ import annotations

import asyncio
import hashlib
import logging

import httpx

from snapshotter.config import settings
from snapshotter.extraction.extract import extract_page_metadata, extract_readable
from snapshotter.extraction.fetch import Resolver, has_noarchive, resolve_host, safe_fetch
from snapshotter.extraction.types import (
    ExtractionFailure,
    ExtractionResult,
    ExtractionSuccess,
    SnapshotMetadata,
)
from snapshotter.reasons import TerminalReason

logger = logging.getLogger(__name__)


class HttpContentExtractor:
    def __init__(
        self,
        *,
        timeout_s: float | None = None,
        max_bytes: int | None = None,
        max_redirects: int | None = None,
        user_agent: str | None = None,
        max_text_length: int | None = None,
        excerpt_length: int | None = None,
        resolver: Resolver = resolve_host,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout_s = timeout_s or settings.SNAPSHOT_FETCH_TIMEOUT_S
        self.max_bytes = max_bytes or settings.SNAPSHOT_MAX_CONTENT_BYTES
        self.max_redirects = settings.SNAPSHOT_MAX_REDIRECTS if max_redirects is None else max_redirects
        self.user_agent = user_agent or settings.SNAPSHOT_USER_AGENT
        self.max_text_length = max_text_length or settings.SNAPSHOT_MAX_TEXT_LENGTH
        self.excerpt_length = excerpt_length or settings.SNAPSHOT_EXCERPT_LENGTH
        self._resolver = resolver
        self._transport = transport

    async def process(self, url: str) -> ExtractionResult:
        fetched = await safe_fetch(
            url,
            timeout_s=self.timeout_s,
            max_bytes=self.max_bytes,
            max_redirects=self.max_redirects,
            user_agent=self.user_agent,
            resolver=self._resolver,
            transport=self._transport,
        )
        if isinstance(fetched, ExtractionFailure):
            return fetched

        if has_noarchive(fetched.headers, fetched.html):
            return ExtractionFailure(TerminalReason.NOARCHIVE, "Page has noarchive directive")

        try:
            content = await asyncio.to_thread(
                extract_readable,
                fetched.html,
                fetched.final_url,
                max_text_length=self.max_text_length,
                excerpt_length=self.excerpt_length,
            )
        except Exception as exc:
            logger.warning("Readable extraction crashed for %s: %s", fetched.final_url, exc)
            return ExtractionFailure(TerminalReason.PARSE_FAILED, str(exc) or type(exc).__name__)
        if content is None:
            return ExtractionFailure(TerminalReason.PARSE_FAILED, "Could not extract readable content")

        page = extract_page_metadata(fetched.html, fetched.final_url)
        metadata = SnapshotMetadata(
            canonical_url=page.canonical_url or fetched.final_url,
            title=content.title or page.title,
            byline=content.byline,
            excerpt=content.excerpt,
            word_count=content.word_count,
            language=content.language,
            content_sha256=hashlib.sha256(content.content.encode("utf-8")).hexdigest(),
            site_name=content.site_name or page.site_name,
            image_url=page.image_url or content.image_url,
            description=page.description or content.excerpt,
        )
        return ExtractionSuccess(content=content, metadata=metadata)
