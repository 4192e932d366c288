"""Source rating lookup and bias categorization."""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Callable, Protocol

from article_store.models import Article, SourceRating
from article_store.store import Store
from common.utils import first_non_null

logger = logging.getLogger(__name__)

LEFT = "left"
CENTER = "center"
RIGHT = "right"
UNRATED = "unrated"


class RatingProvider(Protocol):
    def rating_by_domain(self, domain: str) -> SourceRating | None: ...

    def rating_by_source_id(self, source_id: str) -> SourceRating | None: ...

    def rating_by_display_name(self, display_name: str) -> SourceRating | None: ...


class StoreRatingProvider:
    """RatingProvider reading the ratings table of a Store."""

    def __init__(self, store: Store):
        self.store = store

    def rating_by_domain(self, domain: str) -> SourceRating | None:
        return self.store.rating_by_domain(domain)

    def rating_by_source_id(self, source_id: str) -> SourceRating | None:
        return self.store.rating_by_source_id(source_id)

    def rating_by_display_name(self, display_name: str) -> SourceRating | None:
        return self.store.rating_by_display_name(display_name)


class RatingLookup:
    """Resolve an article's rating by domain, then source id, then display name.

    Provider answers are memoized for the life of the lookup; build one per
    batch so that re-seeded ratings are picked up by the next one.
    """

    def __init__(self, provider: RatingProvider):
        self.provider = provider
        self._memo: dict[tuple[str, str], SourceRating | None] = {}
        self.strategies: list[Callable[[Article], SourceRating | None]] = [
            self._by_domain,
            self._by_source_id,
            self._by_display_name,
        ]

    def _cached(self, kind: str, value: str, fetch: Callable[[str], SourceRating | None]):
        memo_key = (kind, value)
        if memo_key not in self._memo:
            self._memo[memo_key] = fetch(value)
        return self._memo[memo_key]

    def _by_domain(self, article: Article) -> SourceRating | None:
        if not article.domain:
            return None
        return self._cached("domain", article.domain, self.provider.rating_by_domain)

    def _by_source_id(self, article: Article) -> SourceRating | None:
        if not article.source_id:
            return None
        return self._cached("source_id", article.source_id, self.provider.rating_by_source_id)

    def _by_display_name(self, article: Article) -> SourceRating | None:
        name = article.source_name
        if not name or not name.strip():
            return None
        return self._cached("display_name", name, self.provider.rating_by_display_name)

    def rating_for(self, article: Article) -> SourceRating | None:
        return first_non_null(self.strategies, article)


def _optional_int(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    return int(float(value))


def load_ratings_csv(path: str | Path) -> list[SourceRating]:
    """Read source ratings from a CSV file.

    Expected columns: source_id, display_name, domain, bias_score,
    reliability_score, and optionally bias_label, reliability_label. Rows with
    a missing id or bias score are skipped.
    """
    ratings = []
    with open(path, newline="", encoding="utf-8") as f:
        for line_no, row in enumerate(csv.DictReader(f), start=2):
            source_id = (row.get("source_id") or "").strip()
            try:
                bias = _optional_int(row.get("bias_score"))
                reliability = _optional_int(row.get("reliability_score"))
            except ValueError:
                logger.warning("Skipping line %d: non-numeric score", line_no)
                continue
            if not source_id or bias is None:
                logger.warning("Skipping line %d: missing source_id or bias_score", line_no)
                continue
            ratings.append(
                SourceRating(
                    source_id=source_id,
                    display_name=(row.get("display_name") or source_id).strip(),
                    domain=(row.get("domain") or "").strip().lower(),
                    bias_score=bias,
                    reliability_score=reliability if reliability is not None else 3,
                    bias_label=(row.get("bias_label") or "").strip() or None,
                    reliability_label=(row.get("reliability_label") or "").strip() or None,
                )
            )
    logger.info("Loaded %d ratings from %s", len(ratings), path)
    return ratings
