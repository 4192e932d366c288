"""Errors raised while matching articles."""

from __future__ import annotations

from datetime import datetime, timedelta


class MatchingError(Exception):
    """No categorized result could be produced for the source article."""


class SearchError(Exception):
    """The search provider failed (network error, bad response, missing key)."""


class RateLimitedError(SearchError):
    """The search API answered with a rate-limit signal."""

    def __init__(self, retry_after: timedelta, message: str = "rate limited"):
        super().__init__(f"{message} (retry after {int(retry_after.total_seconds())}s)")
        self.retry_after = retry_after


class QuotaExhaustedError(SearchError):
    """Searching is blocked until retry_at by a rate limit or the daily budget."""

    def __init__(self, reason: str, retry_at: datetime | None = None):
        message = f"search quota exhausted: {reason}"
        if retry_at is not None:
            message += f" (until {retry_at.isoformat()})"
        super().__init__(message)
        self.reason = reason
        self.retry_at = retry_at
