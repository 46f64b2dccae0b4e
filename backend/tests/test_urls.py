from __future__ import annotations

import pytest

from snapshotter.urls import (
    extract_domain,
    extract_hostname,
    is_tracking_param,
    normalize_url,
    urls_match,
)


def test_tracking_params_are_stripped_and_content_params_kept() -> None:
    assert normalize_url("https://a.com/x?utm_source=y&id=5") == "https://a.com/x?id=5"


def test_trailing_slash_is_not_significant() -> None:
    assert normalize_url("https://example.com/a/") == normalize_url("https://example.com/a")


def test_scheme_is_preserved() -> None:
    assert normalize_url("https://WWW.Example.com/a/") != normalize_url("http://example.com/a")
    assert normalize_url("https://WWW.Example.com/a/") == "https://example.com/a"


def test_host_www_and_default_port_are_dropped() -> None:
    assert normalize_url("HTTPS://www.Example.COM:443/path") == "https://example.com/path"
    assert normalize_url("http://example.com:8080/") == "http://example.com:8080/"


def test_only_one_www_prefix_and_one_trailing_slash_are_removed() -> None:
    assert normalize_url("https://www.www.example.com/x") == "https://www.example.com/x"
    assert normalize_url("https://example.com/a//") == "https://example.com/a/"
    assert not urls_match("https://example.com/a//", "https://example.com/a")


def test_fragment_and_empty_params_are_dropped() -> None:
    assert normalize_url("https://example.com/a?b=&c=1#section") == "https://example.com/a?c=1"


def test_query_params_are_sorted() -> None:
    assert normalize_url("https://example.com/?z=1&a=2&m=3") == "https://example.com/?a=2&m=3&z=1"


def test_heuristic_tracking_names() -> None:
    assert is_tracking_param("utm_whatever")
    assert is_tracking_param("partner_id")
    assert is_tracking_param("yclid")
    # Content params win over the suffix heuristic.
    assert not is_tracking_param("id")
    assert not is_tracking_param("page")


def test_path_encoding_is_normalized() -> None:
    assert normalize_url("https://example.com/caf%C3%A9") == normalize_url("https://example.com/café")
    assert normalize_url("https://example.com/a/./b/../c") == "https://example.com/a/c"


@pytest.mark.parametrize(
    "url",
    [
        "https://www.example.com/a/b/?utm_medium=x&q=hello+world&page=2#top",
        "http://example.com:8080/x%20y",
        "https://example.com/caf%C3%A9/",
        "https://example.com",
    ],
)
def test_normalization_is_idempotent(url: str) -> None:
    once = normalize_url(url)
    assert once is not None
    assert normalize_url(once) == once


@pytest.mark.parametrize(
    "url",
    ["", "not a url", "ftp://example.com/file", "mailto:a@b.com", "https://", "javascript:alert(1)"],
)
def test_invalid_urls_return_none(url: str) -> None:
    assert normalize_url(url) is None


def test_non_string_input_returns_none() -> None:
    assert normalize_url(None) is None  # type: ignore[arg-type]


def test_urls_match_uses_canonical_form() -> None:
    assert urls_match("https://www.example.com/a/?fbclid=1", "https://example.com/a")
    assert not urls_match("https://example.com/a", "https://example.com/b")
    assert not urls_match("nope", "nope")


def test_domain_helpers() -> None:
    assert extract_domain("https://WWW.Example.com/x") == "example.com"
    assert extract_hostname("https://WWW.Example.com/x") == "www.example.com"
    assert extract_domain("nope") is None
    assert extract_hostname("nope") is None
