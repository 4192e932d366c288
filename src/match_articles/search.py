"""External article search against the NewsAPI /v2/everything endpoint."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Protocol

import requests

from article_store.models import Article
from common.datetime import parse_datetime, to_utc_string, utc_now
from common.urls import canonicalize_url

from match_articles.errors import RateLimitedError, SearchError
from match_articles.quota import DEFAULT_RETRY_AFTER, QuotaGuard

logger = logging.getLogger(__name__)

NEWSAPI_EVERYTHING_URL = "https://newsapi.org/v2/everything"
REMOVED_TITLE = "[Removed]"


class SearchProvider(Protocol):
    def search(
        self, query: str, from_date: datetime, to_date: datetime, page_size: int = 20
    ) -> list[Article]:
        """Articles matching query published within [from_date, to_date].

        Raises:
            RateLimitedError: When the API signals a rate limit.
            QuotaExhaustedError: When searching is currently blocked.
            SearchError: For any other failure.
        """
        ...


def _blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def parse_retry_after(value: str | None, default: timedelta = DEFAULT_RETRY_AFTER) -> timedelta:
    """Retry-After header in seconds; unparseable or missing values give default."""
    if value is None:
        return default
    try:
        seconds = int(value.strip())
    except ValueError:
        return default
    return timedelta(seconds=max(seconds, 0))


def to_article(item: dict[str, Any], now: datetime | None = None) -> Article | None:
    """Map one NewsAPI article to an Article; entries without a title or URL give None."""
    title = item.get("title")
    url = item.get("url")
    if _blank(title) or _blank(url) or title.strip() == REMOVED_TITLE:
        return None
    now = now or utc_now()
    source = item.get("source") or {}
    try:
        published_at = parse_datetime(item["publishedAt"]) if item.get("publishedAt") else now
    except (TypeError, ValueError):
        published_at = now
    return Article(
        key=canonicalize_url(url),
        source_id=source.get("id") or None,
        source_name=source.get("name") or "Unknown",
        title=title.strip(),
        description=item.get("description"),
        content=item.get("content"),
        author=item.get("author"),
        image_url=item.get("urlToImage"),
        published_at=published_at,
        fetched_at=now,
    )


class NewsApiSearchProvider:
    """SearchProvider backed by NewsAPI.

    Args:
        api_key: NewsAPI key (NEWSAPI_KEY)
        quota: Optional guard checked before and updated after every request
        base_url: Endpoint URL
        language: Article language filter
        sort_by: NewsAPI sort order
        timeout: Request timeout in seconds
        session: Optional requests session
    """

    def __init__(
        self,
        api_key: str | None,
        quota: QuotaGuard | None = None,
        base_url: str = NEWSAPI_EVERYTHING_URL,
        language: str = "en",
        sort_by: str = "relevancy",
        timeout: int = 30,
        session: requests.Session | None = None,
    ):
        self.api_key = api_key
        self.quota = quota
        self.base_url = base_url
        self.language = language
        self.sort_by = sort_by
        self.timeout = timeout
        self.session = session or requests.Session()

    def search(
        self,
        query: str,
        from_date: datetime,
        to_date: datetime,
        page_size: int = 20,
    ) -> list[Article]:
        if not self.api_key:
            raise SearchError("NEWSAPI_KEY is not configured")
        now = utc_now()
        if self.quota is not None:
            self.quota.check(now)

        params = {
            "q": query,
            "language": self.language,
            "sortBy": self.sort_by,
            "from": to_utc_string(from_date),
            "to": to_utc_string(to_date),
            "page": 1,
            "pageSize": page_size,
        }
        logger.info("Searching NewsAPI: q=%r from=%s to=%s", query, params["from"], params["to"])
        try:
            response = self.session.get(
                self.base_url,
                params=params,
                headers={"X-Api-Key": self.api_key},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise SearchError(f"NewsAPI request failed: {exc}") from exc
        finally:
            if self.quota is not None:
                self.quota.record_request(now)

        if response.status_code == 429:
            default = self.quota.default_retry_after if self.quota else DEFAULT_RETRY_AFTER
            retry_after = parse_retry_after(response.headers.get("Retry-After"), default)
            if self.quota is not None:
                self.quota.record_rate_limit(retry_after, now)
            raise RateLimitedError(retry_after, "rate limited by NewsAPI")

        remaining = response.headers.get("X-RateLimit-Remaining")
        if remaining is not None and self.quota is not None:
            try:
                self.quota.record_remaining(int(remaining), now)
            except ValueError:
                logger.debug("Ignoring non-numeric X-RateLimit-Remaining: %r", remaining)

        try:
            payload = response.json()
        except ValueError as exc:
            raise SearchError(f"NewsAPI returned invalid JSON (HTTP {response.status_code})") from exc
        if not isinstance(payload, dict):
            raise SearchError("NewsAPI returned an unexpected payload")

        if response.status_code >= 400 or payload.get("status") == "error":
            code = payload.get("code", "")
            message = payload.get("message", f"HTTP {response.status_code}")
            if code == "rateLimited":
                retry_after = self.quota.default_retry_after if self.quota else DEFAULT_RETRY_AFTER
                if self.quota is not None:
                    self.quota.record_rate_limit(retry_after, now)
                raise RateLimitedError(retry_after, message)
            raise SearchError(f"NewsAPI error {code or response.status_code}: {message}")

        articles = []
        seen = set()
        for item in payload.get("articles") or []:
            article = to_article(item, now)
            if article is None or article.key in seen:
                continue
            seen.add(article.key)
            articles.append(article)
        logger.info("NewsAPI returned %d usable articles for %r", len(articles), query)
        return articles
