"""Data models for cached articles, embeddings, match results, stories and ratings."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterator, Sequence

from common.datetime import parse_datetime, parse_optional_datetime, utc_now
from common.urls import extract_domain

from article_store.errors import MatchListError

ARTICLE_RETENTION = timedelta(days=30)
EMBEDDING_TTL = timedelta(days=7)
MATCH_RESULT_TTL = timedelta(hours=24)

MATCH_LIST_VERSION = 1


class EmbeddingStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"


class FailureReason(str, Enum):
    OOM = "OOM"
    TEXT_TOO_LONG = "TEXT_TOO_LONG"
    MODEL_ERROR = "MODEL_ERROR"
    NO_TEXT = "NO_TEXT"
    ARTICLE_NOT_FOUND = "ARTICLE_NOT_FOUND"


class MatchMethod(str, Enum):
    SEMANTIC = "semantic"
    KEYWORD_FALLBACK = "keyword_fallback"
    HYBRID = "hybrid"


def _non_blank(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value


@dataclass
class Article:
    """A news article keyed by its canonical URL."""

    key: str
    source_name: str
    title: str
    published_at: datetime
    source_id: str | None = None
    description: str | None = None
    content: str | None = None
    full_text: str | None = None
    author: str | None = None
    image_url: str | None = None
    fetched_at: datetime = field(default_factory=utc_now)
    expires_at: datetime | None = None
    is_tracked: bool = False
    story_id: str | None = None
    is_novel: bool = True
    has_new_perspective: bool = False
    extraction_failed_at: datetime | None = None
    extraction_retry_count: int = 0

    def __post_init__(self) -> None:
        # Naive datetimes are taken as UTC
        self.published_at = parse_datetime(self.published_at)
        self.fetched_at = parse_datetime(self.fetched_at)
        self.expires_at = parse_optional_datetime(self.expires_at)
        self.extraction_failed_at = parse_optional_datetime(self.extraction_failed_at)
        if self.expires_at is None:
            self.expires_at = self.fetched_at + ARTICLE_RETENTION

    @property
    def url(self) -> str:
        return self.key

    @property
    def domain(self) -> str:
        return extract_domain(self.key)

    def best_text(self) -> str | None:
        """Full extracted text, then the feed content snippet, then the description."""
        return (
            _non_blank(self.full_text)
            or _non_blank(self.content)
            or _non_blank(self.description)
        )


@dataclass
class Embedding:
    """One embedding per (article_key, model_version)."""

    article_key: str
    model_version: int
    model_name: str
    status: EmbeddingStatus
    vector: list[float] = field(default_factory=list)
    failure_reason: FailureReason | None = None
    computed_at: datetime | None = None
    last_attempt_at: datetime = field(default_factory=utc_now)
    expires_at: datetime | None = None

    def __post_init__(self) -> None:
        self.computed_at = parse_optional_datetime(self.computed_at)
        self.last_attempt_at = parse_datetime(self.last_attempt_at)
        self.expires_at = parse_optional_datetime(self.expires_at)

    @property
    def dimensions(self) -> int:
        return len(self.vector)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    @classmethod
    def success(
        cls,
        article_key: str,
        model_version: int,
        model_name: str,
        vector: list[float],
        now: datetime,
        ttl: timedelta = EMBEDDING_TTL,
    ) -> Embedding:
        return cls(
            article_key=article_key,
            model_version=model_version,
            model_name=model_name,
            status=EmbeddingStatus.SUCCESS,
            vector=vector,
            computed_at=now,
            last_attempt_at=now,
            expires_at=now + ttl,
        )

    @classmethod
    def failure(
        cls,
        article_key: str,
        model_version: int,
        model_name: str,
        reason: FailureReason,
        now: datetime,
        ttl: timedelta = EMBEDDING_TTL,
    ) -> Embedding:
        return cls(
            article_key=article_key,
            model_version=model_version,
            model_name=model_name,
            status=EmbeddingStatus.FAILED,
            failure_reason=reason,
            last_attempt_at=now,
            expires_at=now + ttl,
        )


@dataclass(frozen=True)
class MatchEntry:
    key: str
    score: float


class MatchList:
    """Immutable, ordered list of (article_key, score) entries.

    Serialized as ``{"version": 1, "matches": [{"key": ..., "score": ...}]}``.
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Sequence[MatchEntry] = ()):
        self._entries = tuple(entries)

    @classmethod
    def from_parallel(cls, keys: Sequence[str], scores: Sequence[float]) -> MatchList:
        if len(keys) != len(scores):
            raise MatchListError(
                f"Match list length mismatch: {len(keys)} keys, {len(scores)} scores"
            )
        return cls(MatchEntry(key, float(score)) for key, score in zip(keys, scores))

    @classmethod
    def from_scores(cls, scores: dict[str, float]) -> MatchList:
        """Build a list ordered by descending score (ties keep insertion order)."""
        ordered = sorted(scores.items(), key=lambda item: item[1], reverse=True)
        return cls(MatchEntry(key, float(score)) for key, score in ordered)

    @property
    def keys(self) -> list[str]:
        return [entry.key for entry in self._entries]

    @property
    def scores(self) -> list[float]:
        return [entry.score for entry in self._entries]

    def as_dict(self) -> dict[str, float]:
        return {entry.key: entry.score for entry in self._entries}

    def __iter__(self) -> Iterator[MatchEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, MatchList) and self._entries == other._entries

    def __repr__(self) -> str:
        return f"MatchList({list(self._entries)!r})"

    def to_json(self) -> str:
        return json.dumps(
            {
                "version": MATCH_LIST_VERSION,
                "matches": [{"key": e.key, "score": e.score} for e in self._entries],
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> MatchList:
        """Decode a serialized list.

        Raises:
            MatchListError: If the document is malformed or of an unknown version.
        """
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise MatchListError(f"Match list is not valid JSON: {exc}") from exc
        if not isinstance(data, dict) or data.get("version") != MATCH_LIST_VERSION:
            raise MatchListError("Match list has missing or unsupported version")
        matches = data.get("matches")
        if not isinstance(matches, list):
            raise MatchListError("Match list has no matches array")
        entries = []
        for item in matches:
            if not isinstance(item, dict):
                raise MatchListError(f"Match entry is not an object: {item!r}")
            key = item.get("key")
            score = item.get("score")
            if not isinstance(key, str) or not key:
                raise MatchListError(f"Match entry has invalid key: {item!r}")
            if isinstance(score, bool) or not isinstance(score, (int, float)):
                raise MatchListError(f"Match entry has invalid score: {item!r}")
            entries.append(MatchEntry(key, float(score)))
        return cls(entries)


@dataclass
class MatchResult:
    """Cached matches for a source article."""

    source_key: str
    matches: MatchList
    method: MatchMethod
    computed_at: datetime
    expires_at: datetime
    model_version: int | None = None

    def __post_init__(self) -> None:
        self.computed_at = parse_datetime(self.computed_at)
        self.expires_at = parse_datetime(self.expires_at)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


def _new_story_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Story:
    """A tracked story thread. Members are articles whose story_id is this id."""

    title: str
    id: str = field(default_factory=_new_story_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime | None = None
    last_viewed_at: datetime | None = None

    def __post_init__(self) -> None:
        self.created_at = parse_datetime(self.created_at)
        self.updated_at = parse_optional_datetime(self.updated_at)
        self.last_viewed_at = parse_optional_datetime(self.last_viewed_at)
        if self.updated_at is None:
            self.updated_at = self.created_at
        if self.last_viewed_at is None:
            self.last_viewed_at = self.created_at


@dataclass
class SourceRating:
    """Editorial bias and reliability rating for a news source."""

    source_id: str
    display_name: str
    domain: str
    bias_score: int
    reliability_score: int
    bias_label: str | None = None
    reliability_label: str | None = None

    def bias_category(self) -> str:
        if self.bias_score <= -1:
            return "left"
        if self.bias_score >= 1:
            return "right"
        return "center"
