"""Tests for match_articles.search module."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import requests

from article_store.memory_store import MemoryStore
from match_articles.errors import QuotaExhaustedError, RateLimitedError, SearchError
from match_articles.quota import QuotaGuard
from match_articles.search import NewsApiSearchProvider, parse_retry_after, to_article

NOW = datetime(2024, 3, 10, 12, 0, 0, tzinfo=timezone.utc)
FROM = NOW - timedelta(days=2)


def make_response(status_code=200, payload=None, headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.json.return_value = payload if payload is not None else {"status": "ok", "articles": []}
    return response


def make_provider(response=None, quota=None, api_key="test-key"):
    session = MagicMock()
    if response is not None:
        session.get.return_value = response
    return NewsApiSearchProvider(api_key, quota=quota, session=session), session


class TestToArticle:
    def test_maps_fields_and_canonicalizes_key(self) -> None:
        article = to_article(
            {
                "source": {"id": "bbc-news", "name": "BBC News"},
                "title": " Storm hits coast ",
                "url": "https://www.bbc.com/news/storm?utm_source=x",
                "description": "desc",
                "publishedAt": "2024-03-10T08:00:00Z",
            },
            NOW,
        )
        assert article.key == "https://www.bbc.com/news/storm"
        assert article.source_id == "bbc-news"
        assert article.title == "Storm hits coast"
        assert article.published_at == datetime(2024, 3, 10, 8, 0, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "item",
        [
            {"title": "[Removed]", "url": "https://a.com/1"},
            {"title": "", "url": "https://a.com/1"},
            {"title": "Storm", "url": None},
        ],
    )
    def test_unusable_items_are_dropped(self, item) -> None:
        assert to_article(item, NOW) is None

    def test_missing_source_defaults(self) -> None:
        article = to_article({"title": "Storm", "url": "https://a.com/1", "publishedAt": "bad"}, NOW)
        assert article.source_name == "Unknown"
        assert article.published_at == NOW


class TestParseRetryAfter:
    def test_seconds(self) -> None:
        assert parse_retry_after("120") == timedelta(seconds=120)

    def test_missing_or_invalid_uses_default(self) -> None:
        assert parse_retry_after(None) == timedelta(hours=1)
        assert parse_retry_after("soon", timedelta(minutes=5)) == timedelta(minutes=5)


class TestNewsApiSearchProvider:
    def test_returns_deduplicated_articles(self) -> None:
        payload = {
            "status": "ok",
            "articles": [
                {"source": {"name": "A"}, "title": "Storm hits coast", "url": "https://a.com/1"},
                {"source": {"name": "A"}, "title": "Storm hits coast", "url": "https://a.com/1/"},
                {"source": {"name": "B"}, "title": "[Removed]", "url": "https://b.com/1"},
            ],
        }
        provider, session = make_provider(make_response(payload=payload))

        articles = provider.search("storm", FROM, NOW, page_size=20)

        assert [a.key for a in articles] == ["https://a.com/1"]
        _, kwargs = session.get.call_args
        assert kwargs["headers"] == {"X-Api-Key": "test-key"}
        assert kwargs["params"]["pageSize"] == 20
        assert kwargs["params"]["from"] == "2024-03-08T12:00:00Z"

    def test_missing_api_key(self) -> None:
        provider, session = make_provider(api_key=None)
        with pytest.raises(SearchError):
            provider.search("storm", FROM, NOW)
        session.get.assert_not_called()

    def test_rate_limit_response_blocks_future_searches(self) -> None:
        quota = QuotaGuard(MemoryStore())
        provider, session = make_provider(
            make_response(status_code=429, payload={}, headers={"Retry-After": "120"}), quota=quota
        )

        with pytest.raises(RateLimitedError) as exc_info:
            provider.search("storm", FROM, NOW)
        assert exc_info.value.retry_after == timedelta(seconds=120)
        assert quota.state().is_rate_limited

        with pytest.raises(QuotaExhaustedError):
            provider.search("storm", FROM, NOW)
        assert session.get.call_count == 1

    def test_rate_limited_error_code(self) -> None:
        quota = QuotaGuard(MemoryStore())
        payload = {"status": "error", "code": "rateLimited", "message": "Too many requests"}
        provider, _ = make_provider(make_response(status_code=200, payload=payload), quota=quota)
        with pytest.raises(RateLimitedError):
            provider.search("storm", FROM, NOW)
        assert quota.state().is_rate_limited

    def test_api_error_raises_search_error(self) -> None:
        payload = {"status": "error", "code": "apiKeyInvalid", "message": "Bad key"}
        provider, _ = make_provider(make_response(status_code=401, payload=payload))
        with pytest.raises(SearchError, match="apiKeyInvalid"):
            provider.search("storm", FROM, NOW)

    def test_invalid_json_raises_search_error(self) -> None:
        response = make_response()
        response.json.side_effect = ValueError("no json")
        provider, _ = make_provider(response)
        with pytest.raises(SearchError):
            provider.search("storm", FROM, NOW)

    def test_network_error_still_counts_request(self) -> None:
        quota = QuotaGuard(MemoryStore())
        provider, session = make_provider(quota=quota)
        session.get.side_effect = requests.ConnectionError("down")
        with pytest.raises(SearchError):
            provider.search("storm", FROM, NOW)
        assert quota.state().requests_today == 1

    def test_remaining_header_is_recorded(self) -> None:
        quota = QuotaGuard(MemoryStore())
        provider, _ = make_provider(make_response(headers={"X-RateLimit-Remaining": "7"}), quota=quota)
        provider.search("storm", FROM, NOW)
        assert quota.state().remaining_requests == 7
