"""In-memory store, used for tests and the "memory" backend."""

from __future__ import annotations

import copy
import threading
from dataclasses import replace
from datetime import datetime
from typing import Iterable

from common.datetime import parse_datetime

from article_store.errors import MatchListError
from article_store.models import (
    Article,
    Embedding,
    EmbeddingStatus,
    MatchList,
    MatchMethod,
    MatchResult,
    SourceRating,
    Story,
)
from article_store.store import Store


def _decode_method(value) -> MatchMethod:
    try:
        return MatchMethod(value)
    except ValueError as exc:
        raise MatchListError(f"Unknown match method: {value!r}") from exc


def _normalize_domain(domain: str) -> str:
    domain = domain.strip().lower()
    return domain[4:] if domain.startswith("www.") else domain


class MemoryStore(Store):
    """Thread-safe dict-backed store. Values are copied in and out.

    Match lists are kept in their serialized form so decoding follows the
    same path as the SQL store.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._articles: dict[str, Article] = {}
        self._embeddings: dict[tuple[str, int], Embedding] = {}
        self._match_results: dict[str, dict] = {}
        self._stories: dict[str, Story] = {}
        self._ratings: dict[str, SourceRating] = {}
        self._state: dict[str, dict] = {}

    # Articles

    def get_article(self, key: str) -> Article | None:
        with self._lock:
            article = self._articles.get(key)
            return replace(article) if article else None

    def get_articles(self, keys: Iterable[str]) -> dict[str, Article]:
        with self._lock:
            return {k: replace(self._articles[k]) for k in keys if k in self._articles}

    def put_article(self, article: Article) -> None:
        with self._lock:
            self._articles[article.key] = replace(article)

    def all_articles(self) -> list[Article]:
        with self._lock:
            return [replace(a) for a in self._articles.values()]

    def recent_unassigned(self, since: datetime) -> list[Article]:
        since = parse_datetime(since)
        with self._lock:
            return [
                replace(a)
                for a in self._articles.values()
                if a.story_id is None and a.fetched_at >= since
            ]

    def articles_for_story(self, story_id: str) -> list[Article]:
        with self._lock:
            return [replace(a) for a in self._articles.values() if a.story_id == story_id]

    def _update(self, key: str, **changes) -> None:
        article = self._articles.get(key)
        if article is not None:
            self._articles[key] = replace(article, **changes)

    def update_full_text(self, key: str, full_text: str) -> None:
        with self._lock:
            self._update(key, full_text=full_text)

    def mark_extraction_failed(self, key: str, now: datetime) -> None:
        with self._lock:
            article = self._articles.get(key)
            if article is not None:
                self._update(
                    key,
                    extraction_failed_at=now,
                    extraction_retry_count=article.extraction_retry_count + 1,
                )

    def clear_extraction_failure(self, key: str) -> None:
        with self._lock:
            self._update(key, extraction_failed_at=None, extraction_retry_count=0)

    def set_tracking(
        self,
        key: str,
        story_id: str | None,
        is_tracked: bool,
        is_novel: bool = True,
        has_new_perspective: bool = False,
    ) -> None:
        with self._lock:
            self._update(
                key,
                story_id=story_id,
                is_tracked=is_tracked,
                is_novel=is_novel,
                has_new_perspective=has_new_perspective,
            )

    def clear_tracking_for_story(self, story_id: str) -> int:
        with self._lock:
            keys = [k for k, a in self._articles.items() if a.story_id == story_id]
            for key in keys:
                self._update(key, story_id=None, is_tracked=False)
            return len(keys)

    def join_story(
        self,
        key: str,
        story_id: str,
        is_novel: bool,
        has_new_perspective: bool,
        now: datetime,
    ) -> None:
        with self._lock:
            self._update(
                key,
                story_id=story_id,
                is_tracked=True,
                is_novel=is_novel,
                has_new_perspective=has_new_perspective,
            )
            story = self._stories.get(story_id)
            if story is not None:
                self._stories[story_id] = replace(story, updated_at=now)

    # Embeddings

    def get_embedding(self, article_key: str, model_version: int) -> Embedding | None:
        with self._lock:
            embedding = self._embeddings.get((article_key, model_version))
            return copy.deepcopy(embedding)

    def get_embeddings(
        self, article_keys: Iterable[str], model_version: int
    ) -> dict[str, Embedding]:
        with self._lock:
            found = {}
            for key in article_keys:
                embedding = self._embeddings.get((key, model_version))
                if embedding is not None:
                    found[key] = copy.deepcopy(embedding)
            return found

    def all_embeddings(self, model_version: int) -> list[Embedding]:
        with self._lock:
            return [
                copy.deepcopy(e)
                for (_, version), e in self._embeddings.items()
                if version == model_version and e.status == EmbeddingStatus.SUCCESS
            ]

    def put_embedding(self, embedding: Embedding) -> None:
        with self._lock:
            self._embeddings[(embedding.article_key, embedding.model_version)] = copy.deepcopy(
                embedding
            )

    # Match results

    def get_match_result(self, source_key: str) -> MatchResult | None:
        with self._lock:
            row = self._match_results.get(source_key)
        if row is None:
            return None
        return MatchResult(
            source_key=source_key,
            matches=MatchList.from_json(row["matches"]),
            method=_decode_method(row["method"]),
            model_version=row["model_version"],
            computed_at=row["computed_at"],
            expires_at=row["expires_at"],
        )

    def put_match_result(self, result: MatchResult) -> None:
        with self._lock:
            self._match_results[result.source_key] = {
                "matches": result.matches.to_json(),
                "method": result.method,
                "model_version": result.model_version,
                "computed_at": result.computed_at,
                "expires_at": result.expires_at,
            }

    # Stories

    def get_story(self, story_id: str) -> Story | None:
        with self._lock:
            story = self._stories.get(story_id)
            return replace(story) if story else None

    def list_stories(self) -> list[Story]:
        with self._lock:
            stories = [replace(s) for s in self._stories.values()]
        return sorted(stories, key=lambda s: s.updated_at, reverse=True)

    def put_story(self, story: Story) -> None:
        with self._lock:
            self._stories[story.id] = replace(story)

    def delete_story(self, story_id: str) -> None:
        with self._lock:
            self._stories.pop(story_id, None)

    def count_stories(self) -> int:
        with self._lock:
            return len(self._stories)

    # Ratings

    def rating_by_domain(self, domain: str) -> SourceRating | None:
        wanted = _normalize_domain(domain)
        with self._lock:
            for rating in self._ratings.values():
                if rating.domain and _normalize_domain(rating.domain) == wanted:
                    return replace(rating)
        return None

    def rating_by_source_id(self, source_id: str) -> SourceRating | None:
        with self._lock:
            rating = self._ratings.get(source_id)
            return replace(rating) if rating else None

    def rating_by_display_name(self, display_name: str) -> SourceRating | None:
        wanted = display_name.strip().lower()
        with self._lock:
            for rating in self._ratings.values():
                if rating.display_name.strip().lower() == wanted:
                    return replace(rating)
        return None

    def put_ratings(self, ratings: Iterable[SourceRating]) -> None:
        with self._lock:
            for rating in ratings:
                self._ratings[rating.source_id] = replace(rating)

    def all_ratings(self) -> list[SourceRating]:
        with self._lock:
            return [replace(r) for r in self._ratings.values()]

    # Key-value state

    def get_state(self, name: str) -> dict | None:
        with self._lock:
            value = self._state.get(name)
            return copy.deepcopy(value)

    def put_state(self, name: str, value: dict) -> None:
        with self._lock:
            self._state[name] = copy.deepcopy(value)

    # Retention

    def delete_expired_embeddings(self, now: datetime) -> int:
        with self._lock:
            keys = [k for k, e in self._embeddings.items() if e.is_expired(now)]
            for key in keys:
                del self._embeddings[key]
        return len(keys)

    def delete_expired(self, now: datetime) -> dict[str, int]:
        with self._lock:
            article_keys = [
                k
                for k, a in self._articles.items()
                if not a.is_tracked and a.expires_at is not None and a.expires_at <= now
            ]
            for key in article_keys:
                del self._articles[key]

            embeddings = self.delete_expired_embeddings(now)

            result_keys = [k for k, r in self._match_results.items() if r["expires_at"] <= now]
            for key in result_keys:
                del self._match_results[key]

        return {
            "articles": len(article_keys),
            "embeddings": embeddings,
            "match_results": len(result_keys),
        }
