"""Storage contract shared by the in-memory and SQL stores.

Every method is atomic per key. No locking spans calls; callers that need
at-most-one writer per key hold a lease (see common.cancellation.KeyedLocks).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable

from article_store.models import Article, Embedding, MatchResult, SourceRating, Story


class Store(ABC):
    # Articles

    @abstractmethod
    def get_article(self, key: str) -> Article | None: ...

    @abstractmethod
    def get_articles(self, keys: Iterable[str]) -> dict[str, Article]:
        """Articles for the keys that resolve; missing keys are absent from the result."""

    @abstractmethod
    def put_article(self, article: Article) -> None: ...

    def put_articles(self, articles: Iterable[Article]) -> None:
        for article in articles:
            self.put_article(article)

    def has_article(self, key: str) -> bool:
        return self.get_article(key) is not None

    @abstractmethod
    def all_articles(self) -> list[Article]: ...

    @abstractmethod
    def recent_unassigned(self, since: datetime) -> list[Article]:
        """Articles fetched at or after since that belong to no story."""

    @abstractmethod
    def articles_for_story(self, story_id: str) -> list[Article]: ...

    @abstractmethod
    def update_full_text(self, key: str, full_text: str) -> None: ...

    @abstractmethod
    def mark_extraction_failed(self, key: str, now: datetime) -> None:
        """Record a failed extraction attempt and bump the retry count."""

    @abstractmethod
    def clear_extraction_failure(self, key: str) -> None: ...

    @abstractmethod
    def set_tracking(
        self,
        key: str,
        story_id: str | None,
        is_tracked: bool,
        is_novel: bool = True,
        has_new_perspective: bool = False,
    ) -> None: ...

    @abstractmethod
    def clear_tracking_for_story(self, story_id: str) -> int:
        """Detach every member of a story. Returns the number of articles changed."""

    @abstractmethod
    def join_story(
        self,
        key: str,
        story_id: str,
        is_novel: bool,
        has_new_perspective: bool,
        now: datetime,
    ) -> None:
        """Assign an article to a story and bump the story's updated_at in one write."""

    # Embeddings

    @abstractmethod
    def get_embedding(self, article_key: str, model_version: int) -> Embedding | None: ...

    @abstractmethod
    def get_embeddings(
        self, article_keys: Iterable[str], model_version: int
    ) -> dict[str, Embedding]: ...

    @abstractmethod
    def all_embeddings(self, model_version: int) -> list[Embedding]: ...

    @abstractmethod
    def put_embedding(self, embedding: Embedding) -> None: ...

    # Match results

    @abstractmethod
    def get_match_result(self, source_key: str) -> MatchResult | None:
        """Cached result for source_key.

        Raises:
            MatchListError: If the stored match list is malformed.
        """

    @abstractmethod
    def put_match_result(self, result: MatchResult) -> None: ...

    # Stories

    @abstractmethod
    def get_story(self, story_id: str) -> Story | None: ...

    @abstractmethod
    def list_stories(self) -> list[Story]:
        """All stories, most recently updated first."""

    @abstractmethod
    def put_story(self, story: Story) -> None: ...

    @abstractmethod
    def delete_story(self, story_id: str) -> None: ...

    @abstractmethod
    def count_stories(self) -> int: ...

    # Ratings

    @abstractmethod
    def rating_by_domain(self, domain: str) -> SourceRating | None: ...

    @abstractmethod
    def rating_by_source_id(self, source_id: str) -> SourceRating | None: ...

    @abstractmethod
    def rating_by_display_name(self, display_name: str) -> SourceRating | None: ...

    @abstractmethod
    def put_ratings(self, ratings: Iterable[SourceRating]) -> None: ...

    @abstractmethod
    def all_ratings(self) -> list[SourceRating]: ...

    # Key-value state

    @abstractmethod
    def get_state(self, name: str) -> dict | None: ...

    @abstractmethod
    def put_state(self, name: str, value: dict) -> None: ...

    # Retention

    @abstractmethod
    def delete_expired_embeddings(self, now: datetime) -> int: ...

    @abstractmethod
    def delete_expired(self, now: datetime) -> dict[str, int]:
        """Delete expired records; tracked articles are kept.

        Returns:
            Counts per kind: articles, embeddings, match_results.
        """

    def close(self) -> None:
        """Release resources held by the store."""
