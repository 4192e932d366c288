"""Durable search quota tracking.

State survives restarts through the store's key-value table, so a rate-limit
signal received by one run keeps later runs from searching until it expires.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

from article_store.store import Store
from common.datetime import parse_optional_datetime, utc_now

from match_articles.errors import QuotaExhaustedError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = timedelta(hours=1)
DEFAULT_DAILY_LIMIT = 100
STATE_KEY = "search_quota"


@dataclass
class ApiQuotaState:
    is_rate_limited: bool
    rate_limited_until: datetime | None
    remaining_requests: int  # -1 if unknown
    requests_today: int
    daily_limit: int


class QuotaGuard:
    """Tracks rate limits, remaining requests and a per-UTC-day request budget.

    Args:
        store: Store used to persist the quota state
        daily_limit: Maximum search requests per UTC day (None for no budget)
        default_retry_after: Block duration when a rate limit carries no Retry-After
    """

    def __init__(
        self,
        store: Store,
        daily_limit: int | None = DEFAULT_DAILY_LIMIT,
        default_retry_after: timedelta = DEFAULT_RETRY_AFTER,
        state_key: str = STATE_KEY,
    ):
        self.store = store
        self.daily_limit = daily_limit
        self.default_retry_after = default_retry_after
        self.state_key = state_key
        self._lock = threading.Lock()

    def _load(self) -> dict:
        data = self.store.get_state(self.state_key) or {}
        return {
            "rate_limited_until": parse_optional_datetime(data.get("rate_limited_until")),
            "remaining": data.get("remaining", -1),
            "day": data.get("day"),
            "requests_today": data.get("requests_today", 0),
        }

    def _save(self, state: dict) -> None:
        until = state["rate_limited_until"]
        self.store.put_state(
            self.state_key,
            {
                "rate_limited_until": until.isoformat() if until else None,
                "remaining": state["remaining"],
                "day": state["day"],
                "requests_today": state["requests_today"],
            },
        )

    @staticmethod
    def _roll_day(state: dict, now: datetime) -> dict:
        today = now.date().isoformat()
        if state["day"] != today:
            state["day"] = today
            state["requests_today"] = 0
            # Provider counters reset daily as well
            if state["remaining"] == 0:
                state["remaining"] = -1
        return state

    def check(self, now: datetime | None = None) -> None:
        """Raise QuotaExhaustedError if a search must not be sent now."""
        now = now or utc_now()
        with self._lock:
            state = self._roll_day(self._load(), now)
        until = state["rate_limited_until"]
        if until is not None and now < until:
            raise QuotaExhaustedError("rate limited", until)
        if state["remaining"] == 0:
            raise QuotaExhaustedError("no requests remaining")
        if self.daily_limit is not None and state["requests_today"] >= self.daily_limit:
            tomorrow = datetime.combine(
                now.date() + timedelta(days=1), datetime.min.time(), tzinfo=now.tzinfo
            )
            raise QuotaExhaustedError(f"daily budget of {self.daily_limit} used", tomorrow)

    def record_request(self, now: datetime | None = None) -> None:
        now = now or utc_now()
        with self._lock:
            state = self._roll_day(self._load(), now)
            state["requests_today"] += 1
            self._save(state)

    def record_rate_limit(
        self, retry_after: timedelta | None = None, now: datetime | None = None
    ) -> datetime:
        """Block searching for retry_after (default one hour). Returns the unblock time."""
        now = now or utc_now()
        until = now + (retry_after if retry_after is not None else self.default_retry_after)
        with self._lock:
            state = self._load()
            state["rate_limited_until"] = until
            self._save(state)
        logger.warning("Search rate limited until %s", until.isoformat())
        return until

    def record_remaining(self, remaining: int, now: datetime | None = None) -> None:
        now = now or utc_now()
        with self._lock:
            state = self._roll_day(self._load(), now)
            state["remaining"] = remaining
            self._save(state)
        logger.debug("Search quota remaining: %d", remaining)

    def clear(self) -> None:
        with self._lock:
            self._save(
                {"rate_limited_until": None, "remaining": -1, "day": None, "requests_today": 0}
            )
        logger.info("Cleared search quota state")

    def state(self, now: datetime | None = None) -> ApiQuotaState:
        now = now or utc_now()
        with self._lock:
            state = self._roll_day(self._load(), now)
        until = state["rate_limited_until"]
        return ApiQuotaState(
            is_rate_limited=until is not None and now < until,
            rate_limited_until=until,
            remaining_requests=state["remaining"],
            requests_today=state["requests_today"],
            daily_limit=self.daily_limit if self.daily_limit is not None else -1,
        )
