"""SSRF-guarded page fetching with size, type and redirect limits."""
from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
from dataclasses import dataclass, field
from typing import Awaitable, Callable
from urllib.parse import urljoin, urlparse

import httpx
from selectolax.parser import HTMLParser

from snapshotter.extraction.types import ExtractionFailure
from snapshotter.reasons import RetriableReason, TerminalReason

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = ("text/html", "application/xhtml+xml")
BLOCKED_HOSTNAMES = frozenset(
    {
        "localhost",
        "metadata.google.internal",
        "metadata",
        "169.254.169.254",
    }
)
ACCEPT_HEADER = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"

Resolver = Callable[[str], Awaitable[list[str]]]


@dataclass(frozen=True)
class FetchedPage:
    html: str
    final_url: str
    content_type: str
    headers: dict[str, str] = field(default_factory=dict)


def _is_private_or_local_ip(value: str) -> bool:
    try:
        ip_obj = ipaddress.ip_address(value.strip("[]"))
    except ValueError:
        return False
    if isinstance(ip_obj, ipaddress.IPv6Address) and ip_obj.ipv4_mapped is not None:
        ip_obj = ip_obj.ipv4_mapped
    return any(
        (
            ip_obj.is_private,
            ip_obj.is_loopback,
            ip_obj.is_link_local,
            ip_obj.is_multicast,
            ip_obj.is_unspecified,
            ip_obj.is_reserved,
        )
    )


def check_url_safety(url: str) -> ExtractionFailure | None:
    """Static checks: scheme, blocked hostnames, private IP literals."""
    try:
        parsed = urlparse(url)
        hostname = (parsed.hostname or "").lower()
        parsed.port  # raises on a malformed port
    except ValueError:
        return ExtractionFailure(TerminalReason.INVALID_URL, "Invalid URL format")

    if parsed.scheme not in {"http", "https"}:
        return ExtractionFailure(
            TerminalReason.INVALID_URL, f"Protocol {parsed.scheme or '(none)'} not allowed"
        )
    if not hostname:
        return ExtractionFailure(TerminalReason.INVALID_URL, "URL has no host")
    if hostname in BLOCKED_HOSTNAMES or hostname.endswith(".local") or hostname.endswith(".internal"):
        return ExtractionFailure(TerminalReason.SSRF_BLOCKED, f"Hostname {hostname} is blocked")
    if _is_private_or_local_ip(hostname):
        return ExtractionFailure(
            TerminalReason.SSRF_BLOCKED, f"IP address {hostname} is in a blocked range"
        )
    return None


async def resolve_host(hostname: str) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    return [str(info[4][0]) for info in infos]


async def check_resolved_addresses(hostname: str, resolver: Resolver) -> ExtractionFailure | None:
    """Every address the host resolves to must be public."""
    try:
        ipaddress.ip_address(hostname.strip("[]"))
        return None
    except ValueError:
        pass
    try:
        addresses = await resolver(hostname)
    except (OSError, UnicodeError) as exc:
        return ExtractionFailure(RetriableReason.FETCH_ERROR, f"DNS lookup failed for {hostname}: {exc}")
    for address in addresses:
        if _is_private_or_local_ip(address):
            return ExtractionFailure(
                TerminalReason.SSRF_BLOCKED,
                f"Hostname {hostname} resolves to blocked address {address}",
            )
    return None


def _is_html(content_type: str) -> bool:
    lowered = content_type.lower()
    return any(allowed in lowered for allowed in ALLOWED_CONTENT_TYPES)


async def safe_fetch(
    url: str,
    *,
    timeout_s: float,
    max_bytes: int,
    max_redirects: int,
    user_agent: str,
    resolver: Resolver = resolve_host,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FetchedPage | ExtractionFailure:
    """GET ``url`` following redirects by hand so every hop is re-checked."""
    headers = {
        "User-Agent": user_agent,
        "Accept": ACCEPT_HEADER,
        "Accept-Language": "en-US,en;q=0.5",
    }
    current = url
    try:
        async with asyncio.timeout(timeout_s):
            async with httpx.AsyncClient(
                headers=headers,
                timeout=timeout_s,
                follow_redirects=False,
                transport=transport,
            ) as client:
                for hop in range(max_redirects + 1):
                    blocked = check_url_safety(current)
                    if blocked is None:
                        blocked = await check_resolved_addresses(
                            (urlparse(current).hostname or "").lower(), resolver
                        )
                    if blocked is not None:
                        if hop == 0:
                            return blocked
                        return ExtractionFailure(
                            blocked.reason, f"Redirect to blocked URL: {blocked.message}"
                        )

                    async with client.stream("GET", current) as resp:
                        if 300 <= resp.status_code < 400:
                            location = resp.headers.get("location")
                            if not location:
                                return ExtractionFailure(
                                    RetriableReason.FETCH_ERROR, "Redirect without Location header"
                                )
                            current = urljoin(str(resp.url), location)
                            continue

                        if resp.status_code in (401, 403):
                            return ExtractionFailure(TerminalReason.FORBIDDEN, f"HTTP {resp.status_code}")
                        if not resp.is_success:
                            return ExtractionFailure(
                                RetriableReason.FETCH_ERROR, f"HTTP {resp.status_code}"
                            )

                        content_type = resp.headers.get("content-type", "")
                        if not _is_html(content_type):
                            return ExtractionFailure(
                                TerminalReason.NOT_HTML, f"Content-Type: {content_type or '(none)'}"
                            )

                        declared = resp.headers.get("content-length")
                        if declared and declared.isdigit() and int(declared) > max_bytes:
                            return ExtractionFailure(
                                TerminalReason.TOO_LARGE, f"Content-Length: {declared}"
                            )

                        chunks: list[bytes] = []
                        total = 0
                        async for chunk in resp.aiter_bytes():
                            total += len(chunk)
                            if total > max_bytes:
                                return ExtractionFailure(
                                    TerminalReason.TOO_LARGE, f"Response exceeded {max_bytes} bytes"
                                )
                            chunks.append(chunk)

                        encoding = resp.charset_encoding or "utf-8"
                        try:
                            html = b"".join(chunks).decode(encoding, errors="replace")
                        except LookupError:
                            html = b"".join(chunks).decode("utf-8", errors="replace")

                        return FetchedPage(
                            html=html,
                            final_url=str(resp.url),
                            content_type=content_type,
                            headers={k.lower(): v for k, v in resp.headers.items()},
                        )
    except (TimeoutError, httpx.TimeoutException):
        return ExtractionFailure(
            RetriableReason.TIMEOUT, f"Request timed out after {int(timeout_s * 1000)}ms"
        )
    except httpx.InvalidURL as exc:
        return ExtractionFailure(TerminalReason.INVALID_URL, str(exc))
    except httpx.HTTPError as exc:
        logger.info("Fetch failed for %s: %s", current, exc)
        return ExtractionFailure(RetriableReason.FETCH_ERROR, str(exc) or type(exc).__name__)

    return ExtractionFailure(
        RetriableReason.FETCH_ERROR, f"Too many redirects ({max_redirects})"
    )


_NOARCHIVE_RE = re.compile(r"\bnoarchive\b", re.IGNORECASE)


def has_noarchive(headers: dict[str, str], html: str) -> bool:
    """True when the owner opted out via X-Robots-Tag or a robots meta tag."""
    robots_header = headers.get("x-robots-tag", "")
    if _NOARCHIVE_RE.search(robots_header):
        return True
    tree = HTMLParser(html)
    for node in tree.css("meta"):
        attrs = node.attributes or {}
        name = str(attrs.get("name") or "").strip().lower()
        if name not in {"robots", "googlebot"}:
            continue
        if _NOARCHIVE_RE.search(str(attrs.get("content") or "")):
            return True
    return False
