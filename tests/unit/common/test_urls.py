"""Tests for common.urls module."""

import pytest

from common.urls import canonicalize_url, extract_domain


class TestExtractDomain:
    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://www.BBC.co.uk/news/1", "bbc.co.uk"),
            ("https://edition.cnn.com/2024/story", "edition.cnn.com"),
            ("not a url", ""),
            (None, ""),
        ],
    )
    def test_extract_domain(self, url, expected) -> None:
        assert extract_domain(url) == expected


class TestCanonicalizeUrl:
    def test_drops_tracking_params_and_fragment(self) -> None:
        url = "HTTPS://Example.com/story/?utm_source=feed&id=7&fbclid=abc#comments"
        assert canonicalize_url(url) == "https://example.com/story?id=7"

    def test_keeps_root_path(self) -> None:
        assert canonicalize_url("https://example.com/") == "https://example.com/"

    def test_idempotent(self) -> None:
        url = canonicalize_url("https://example.com/a/?smid=tw")
        assert canonicalize_url(url) == url
