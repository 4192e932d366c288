"""Grow tracked stories with newly seen articles.

Each story is represented by the centroid of its members' embeddings. Recent
articles that belong to no story are compared against every centroid:
strong matches join the story, weak matches are only reported.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from article_store.models import Article, Story
from article_store.store import Store
from common.cancellation import CancellationToken, raise_if_cancelled
from common.config import ClusteringConfig
from common.datetime import parse_datetime
from compute_embeddings.embedding_cache import EmbeddingCache
from match_articles.ratings import RatingLookup, RatingProvider
from similarity.matcher import (
    DimensionMismatchError,
    MatchStrength,
    centroid,
    cosine_similarity,
    match_strength,
)

logger = logging.getLogger(__name__)


@dataclass
class StoryMatch:
    """Evaluation of one candidate against one story."""

    article_key: str
    story_id: str
    similarity: float
    strength: MatchStrength
    is_novel: bool
    has_new_perspective: bool
    joined: bool


@dataclass
class _Cluster:
    story: Story
    vectors: list[list[float]]
    centroid: list[float]
    bias_scores: set[int]

    def add(self, vector: list[float], bias_score: int | None) -> None:
        self.vectors.append(vector)
        self.centroid = centroid(self.vectors)
        if bias_score is not None:
            self.bias_scores.add(bias_score)


class StoryClusterEngine:
    """Batch job matching recent unassigned articles against tracked stories.

    Args:
        store: Article and story store
        embedding_cache: Source of member and candidate vectors; never generates here
        rating_provider: Source rating lookups for perspective detection
        config: Lookback and threshold settings
        log: Logger for match tracing (defaults to this module's logger)
    """

    def __init__(
        self,
        store: Store,
        embedding_cache: EmbeddingCache,
        rating_provider: RatingProvider,
        config: ClusteringConfig | None = None,
        log: logging.Logger | None = None,
    ):
        self.store = store
        self.embedding_cache = embedding_cache
        self.rating_provider = rating_provider
        self.ratings = RatingLookup(rating_provider)
        self.config = config or ClusteringConfig()
        self.log = log or logger

    def _bias_score(self, article: Article) -> int | None:
        rating = self.ratings.rating_for(article)
        return rating.bias_score if rating else None

    def _load_cluster(self, story: Story, now: datetime) -> _Cluster | None:
        members = self.store.articles_for_story(story.id)
        vectors = self.embedding_cache.get_cached_many([m.key for m in members], now)
        if not vectors:
            return None
        member_vectors = list(vectors.values())
        try:
            story_centroid = centroid(member_vectors)
        except DimensionMismatchError:
            self.log.warning("Story %s has members with mixed embedding dimensions", story.id)
            return None
        bias_scores = {score for score in map(self._bias_score, members) if score is not None}
        self.log.debug("Story %s centroid computed from %d articles", story.id, len(member_vectors))
        return _Cluster(story, member_vectors, story_centroid, bias_scores)

    def _candidates(self, now: datetime) -> list[tuple[Article, list[float]]]:
        since = now - timedelta(hours=self.config.lookback_hours)
        articles = self.store.recent_unassigned(since)
        vectors = self.embedding_cache.get_cached_many([a.key for a in articles], now)
        return [(a, vectors[a.key]) for a in articles if a.key in vectors]

    def update_tracked_stories(
        self,
        now: datetime | None = None,
        cancel: CancellationToken | None = None,
    ) -> list[StoryMatch]:
        """Evaluate recent candidates against every story, joining strong matches.

        Returns every evaluation with strength WEAK or STRONG, joined or not.

        Raises:
            OperationCancelled: If cancel was set between candidates. Joins
                already written are kept.
        """
        now = parse_datetime(now)
        self.ratings = RatingLookup(self.rating_provider)
        stories = self.store.list_stories()
        if not stories:
            return []
        candidates = self._candidates(now)
        if not candidates:
            self.log.info("No recent unassigned articles with embeddings")
            return []

        self.log.info("Matching %d candidates against %d stories", len(candidates), len(stories))
        results: list[StoryMatch] = []
        joined: set[str] = set()

        for story in stories:
            raise_if_cancelled(cancel)
            cluster = self._load_cluster(story, now)
            if cluster is None:
                self.log.debug("Story %s has no embeddings, skipping", story.id)
                continue

            for article, vector in candidates:
                raise_if_cancelled(cancel)
                if article.key in joined:
                    continue
                match = self._evaluate(cluster, article, vector, now)
                if match is None:
                    continue
                results.append(match)
                if match.joined:
                    joined.add(article.key)

        self.log.info(
            "Evaluated %d story matches, %d joined", len(results), sum(m.joined for m in results)
        )
        return results

    def _evaluate(
        self, cluster: _Cluster, article: Article, vector: list[float], now: datetime
    ) -> StoryMatch | None:
        try:
            similarity = cosine_similarity(vector, cluster.centroid)
        except DimensionMismatchError:
            return None
        strength = match_strength(similarity)
        if strength == MatchStrength.NONE:
            if similarity > self.config.close_call_threshold:
                self.log.debug("Close call: %s sim=%.3f", article.title[:60], similarity)
            return None

        # Similarity to the pre-join centroid decides novelty
        is_novel = similarity < self.config.novelty_threshold
        bias_score = self._bias_score(article)
        has_new_perspective = bias_score is not None and bias_score not in cluster.bias_scores

        joined = strength == MatchStrength.STRONG
        if joined:
            self.store.join_story(
                article.key,
                cluster.story.id,
                is_novel=is_novel,
                has_new_perspective=has_new_perspective,
                now=now,
            )
            cluster.add(vector, bias_score)
            self.log.info(
                "Added %s to story %s (sim=%.3f novel=%s new_perspective=%s)",
                article.key,
                cluster.story.id,
                similarity,
                is_novel,
                has_new_perspective,
            )
        else:
            self.log.debug("Weak match not added: %s sim=%.3f", article.key, similarity)

        return StoryMatch(
            article_key=article.key,
            story_id=cluster.story.id,
            similarity=similarity,
            strength=strength,
            is_novel=is_novel,
            has_new_perspective=has_new_perspective,
            joined=joined,
        )
