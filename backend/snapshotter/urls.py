"""URL canonicalization for duplicate detection.

Two saves are duplicates iff ``normalize_url`` maps both URLs to the same
string. The canonical form keeps the scheme, lowercases the host, drops a
``www.`` prefix, default ports, fragments, empty and tracking-only query
parameters, sorts what is left, and normalizes path encoding.
"""
from __future__ import annotations

import re
from urllib.parse import parse_qsl, quote, quote_plus, unquote, urlencode, urlsplit

# Analytics, ads and referral parameters that never change page content.
TRACKING_PARAMS = frozenset(
    {
        # UTM
        "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content",
        "utm_id", "utm_cid", "utm_reader", "utm_name", "utm_social", "utm_social-type",
        # Facebook
        "fbclid", "fb_action_ids", "fb_action_types", "fb_source", "fb_ref",
        # Google
        "gclid", "gclsrc", "dclid", "gbraid", "wbraid", "_ga", "_gl", "_gac",
        # Other ad networks
        "twclid", "msclkid", "rdt_cid", "ttclid", "sccid", "scid", "epik", "li_fat_id",
        # Referral
        "ref", "ref_src", "ref_url", "referer", "referrer", "source", "src",
        # Email / marketing automation
        "mc_cid", "mc_eid", "_hsenc", "_hsmi", "__s", "mkt_tok", "vero_id", "vero_conv",
        "nr_email_referer", "oly_enc_id", "oly_anon_id", "stn", "s_kwcid", "ef_id",
        "hsa_acc", "hsa_cam", "hsa_grp", "hsa_ad", "hsa_src", "hsa_tgt", "hsa_kw",
        "hsa_mt", "hsa_net", "hsa_ver", "itm_source", "itm_medium", "itm_campaign",
        # Yahoo consent redirects
        "guccounter", "guce_referrer", "guce_referrer_sig",
        # Generic
        "trk", "tracking", "campaign", "affiliate", "partner",
        # Cache busters
        "_", "nocache", "cachebuster", "timestamp", "cb", "rand", "random",
    }
)

# Parameters that select content. Always kept, even if a heuristic matches.
CONTENT_PARAMS = frozenset(
    {
        # Media
        "v", "t", "list", "index",
        # Search
        "q", "query", "search", "s",
        # Pagination
        "page", "p", "offset", "limit",
        # Filtering
        "sort", "order", "filter", "category", "tag", "type",
        # Identifiers
        "id", "article", "post", "tab", "section",
        # Commerce
        "product", "sku", "variant", "size", "color",
    }
)

TRACKING_PREFIXES = ("utm_", "hsa_", "itm_", "fb_", "mc_")
TRACKING_SUFFIXES = ("_id", "clid")

_DEFAULT_PORTS = {"http": 80, "https": 443}
_HOST_RE = re.compile(r"^[a-z0-9._~%!$&'()*+,;=-]+$")
# encodeURIComponent leaves these unescaped besides alphanumerics and "-_.~"
_SEGMENT_SAFE = "!*'()"


def is_tracking_param(name: str) -> bool:
    """True when a query parameter only carries tracking data."""
    lower = name.lower()
    if lower in CONTENT_PARAMS:
        return False
    if lower in TRACKING_PARAMS:
        return True
    return lower.startswith(TRACKING_PREFIXES) or lower.endswith(TRACKING_SUFFIXES)


def _canonical_host(hostname: str) -> str | None:
    host = hostname.lower().rstrip(".")
    if not host:
        return None
    if ":" in host:
        # IPv6 literal
        return f"[{host}]"
    try:
        host = host.encode("idna").decode("ascii")
    except UnicodeError:
        pass
    if not _HOST_RE.match(host):
        return None
    if host.startswith("www."):
        host = host[4:]
    return host or None


def _remove_dot_segments(segments: list[str]) -> list[str]:
    out: list[str] = []
    for segment in segments:
        if segment == ".":
            continue
        if segment == "..":
            if len(out) > 1:
                out.pop()
            continue
        out.append(segment)
    return out


def _canonical_path(raw_path: str) -> str:
    path = raw_path or "/"
    if not path.startswith("/"):
        path = "/" + path
    try:
        segments = [unquote(segment, errors="strict") for segment in path.split("/")]
        reencode = True
    except UnicodeDecodeError:
        # Not valid UTF-8 once decoded: keep the original encoding.
        segments = path.split("/")
        reencode = False

    segments = _remove_dot_segments(segments)
    if len(segments) == 1:
        segments.append("")
    # A single trailing slash is dropped unless the path is the root.
    if len(segments) > 2 and segments[-1] == "":
        segments.pop()
    if reencode:
        segments = [quote(segment, safe=_SEGMENT_SAFE) for segment in segments]
    return "/".join(segments)


def _canonical_query(raw_query: str) -> str:
    kept: dict[str, str] = {}
    for key, value in parse_qsl(raw_query, keep_blank_values=True):
        if value == "" or is_tracking_param(key):
            continue
        kept[key] = value
    if not kept:
        return ""
    return "?" + urlencode(sorted(kept.items()), quote_via=quote_plus)


def normalize_url(url: str) -> str | None:
    """Return the canonical form of an http(s) URL, or None if it is not one.

    Never raises. Re-normalizing a canonical URL returns it unchanged.
    """
    if not isinstance(url, str):
        return None
    try:
        parsed = urlsplit(url.strip())
        scheme = parsed.scheme.lower()
        if scheme not in _DEFAULT_PORTS:
            return None
        if not parsed.hostname:
            return None
        host = _canonical_host(parsed.hostname)
        port = parsed.port
    except (ValueError, TypeError):
        return None
    if host is None:
        return None

    port_suffix = ""
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        port_suffix = f":{port}"

    return f"{scheme}://{host}{port_suffix}{_canonical_path(parsed.path)}{_canonical_query(parsed.query)}"


def extract_domain(url: str) -> str | None:
    """Display domain: lowercase host without ``www.``."""
    try:
        hostname = urlsplit(url).hostname
    except (ValueError, TypeError, AttributeError):
        return None
    if not hostname:
        return None
    hostname = hostname.lower()
    if hostname.startswith("www."):
        hostname = hostname[4:]
    return hostname


def extract_hostname(url: str) -> str | None:
    """Exact lowercase host, used as the politeness key."""
    try:
        hostname = urlsplit(url).hostname
    except (ValueError, TypeError, AttributeError):
        return None
    return hostname.lower() if hostname else None


def urls_match(url1: str, url2: str) -> bool:
    """True when both URLs canonicalize to the same string."""
    normalized1 = normalize_url(url1)
    normalized2 = normalize_url(url2)
    if not normalized1 or not normalized2:
        return False
    return normalized1 == normalized2
