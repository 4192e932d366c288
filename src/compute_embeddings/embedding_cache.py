"""Lazy, persistent embedding cache keyed by (article key, model version)."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable

import numpy as np

from article_store.models import (
    EMBEDDING_TTL,
    Embedding,
    EmbeddingStatus,
    FailureReason,
)
from article_store.store import Store
from common.cancellation import KeyedLocks, OperationCancelled
from common.datetime import utc_now
from compute_embeddings.provider import EmbeddingProvider, TextTooLongError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_COOLDOWN = timedelta(seconds=60)


class _GenerationFailed(Exception):
    def __init__(self, reason: FailureReason, message: str):
        super().__init__(message)
        self.reason = reason


def classify_failure(exc: BaseException) -> FailureReason:
    """Map a provider exception to the failure reason recorded on the embedding."""
    message = str(exc).lower()
    if isinstance(exc, MemoryError) or "out of memory" in message:
        return FailureReason.OOM
    if isinstance(exc, TextTooLongError) or "text too long" in message:
        return FailureReason.TEXT_TOO_LONG
    return FailureReason.MODEL_ERROR


def normalize_vector(vector: Iterable[float]) -> list[float]:
    """L2-normalize vector.

    Raises:
        ValueError: If the vector is empty, zero or not finite.
    """
    arr = np.asarray(list(vector), dtype=np.float64)
    if arr.size == 0:
        raise ValueError("provider returned an empty vector")
    if not np.all(np.isfinite(arr)):
        raise ValueError("provider returned a non-finite vector")
    norm = np.linalg.norm(arr)
    if norm == 0:
        raise ValueError("provider returned a zero vector")
    return (arr / norm).tolist()


class EmbeddingCache:
    """One embedding per (article, model version), generated on first need.

    Failures are recorded on the embedding with a reason and retried only
    after a cooldown. At most one generation per key runs at a time in this
    process.

    Args:
        store: Backing store for articles and embeddings
        provider: Embedding provider; its lifecycle belongs to the caller
        model_version: Current model version; other versions are ignored
        retry_cooldown: Minimum time between attempts for a FAILED embedding
        ttl: Lifetime of a stored embedding
    """

    def __init__(
        self,
        store: Store,
        provider: EmbeddingProvider,
        model_version: int,
        retry_cooldown: timedelta = DEFAULT_RETRY_COOLDOWN,
        ttl: timedelta = EMBEDDING_TTL,
        locks: KeyedLocks | None = None,
    ):
        self.store = store
        self.provider = provider
        self.model_version = model_version
        self.retry_cooldown = retry_cooldown
        self.ttl = ttl
        self._locks = locks or KeyedLocks()

    @property
    def model_name(self) -> str:
        return getattr(self.provider, "model_name", "unknown")

    def _usable(self, embedding: Embedding | None, now: datetime) -> bool:
        return (
            embedding is not None
            and embedding.status == EmbeddingStatus.SUCCESS
            and bool(embedding.vector)
            and not embedding.is_expired(now)
        )

    def _cooling_down(self, embedding: Embedding | None, now: datetime) -> bool:
        return (
            embedding is not None
            and embedding.status == EmbeddingStatus.FAILED
            and not embedding.is_expired(now)
            and now - embedding.last_attempt_at < self.retry_cooldown
        )

    def get_cached(self, article_key: str, now: datetime | None = None) -> list[float] | None:
        """Stored vector for the current model version, without generating."""
        now = now or utc_now()
        embedding = self.store.get_embedding(article_key, self.model_version)
        return embedding.vector if self._usable(embedding, now) else None

    def get_cached_many(
        self, article_keys: Iterable[str], now: datetime | None = None
    ) -> dict[str, list[float]]:
        now = now or utc_now()
        found = self.store.get_embeddings(article_keys, self.model_version)
        return {key: e.vector for key, e in found.items() if self._usable(e, now)}

    def all_cached(self, now: datetime | None = None) -> dict[str, list[float]]:
        """Every usable vector for the current model version."""
        now = now or utc_now()
        return {
            e.article_key: e.vector
            for e in self.store.all_embeddings(self.model_version)
            if self._usable(e, now)
        }

    def cleanup_expired(self, now: datetime | None = None) -> int:
        deleted = self.store.delete_expired_embeddings(now or utc_now())
        logger.info("Deleted %d expired embeddings", deleted)
        return deleted

    def get_or_generate(self, article_key: str, now: datetime | None = None) -> list[float] | None:
        """Return the article's vector, generating and persisting it if needed.

        Returns None when the article has no usable embedding; the reason is
        persisted on the FAILED embedding.
        """
        now = now or utc_now()
        existing = self.store.get_embedding(article_key, self.model_version)
        if self._usable(existing, now):
            return existing.vector
        if self._cooling_down(existing, now):
            logger.debug(
                "Skipping %s: last attempt failed (%s) within cooldown",
                article_key,
                existing.failure_reason.value if existing.failure_reason else "unknown",
            )
            return None

        with self._locks.hold((article_key, self.model_version)):
            # Another caller may have finished while we waited
            existing = self.store.get_embedding(article_key, self.model_version)
            if self._usable(existing, now):
                return existing.vector
            if self._cooling_down(existing, now):
                return None
            return self._generate(article_key, now)

    def _generate(self, article_key: str, now: datetime) -> list[float] | None:
        try:
            vector = self._embed_article(article_key)
        except _GenerationFailed as failure:
            logger.warning(
                "Embedding failed for %s: %s (%s)", article_key, failure.reason.value, failure
            )
            self.store.put_embedding(
                Embedding.failure(
                    article_key,
                    self.model_version,
                    self.model_name,
                    failure.reason,
                    now,
                    ttl=self.ttl,
                )
            )
            return None

        self.store.put_embedding(
            Embedding.success(
                article_key, self.model_version, self.model_name, vector, now, ttl=self.ttl
            )
        )
        logger.debug("Embedded %s (%d dims)", article_key, len(vector))
        return vector

    def _embed_article(self, article_key: str) -> list[float]:
        article = self.store.get_article(article_key)
        if article is None:
            raise _GenerationFailed(FailureReason.ARTICLE_NOT_FOUND, "article not in store")
        text = article.best_text()
        if text is None:
            raise _GenerationFailed(FailureReason.NO_TEXT, "no usable text")

        try:
            raw = self.provider.embed(text)
        except OperationCancelled:
            raise
        except Exception as exc:
            raise _GenerationFailed(classify_failure(exc), str(exc)) from exc

        try:
            return normalize_vector(raw)
        except (TypeError, ValueError) as exc:
            raise _GenerationFailed(FailureReason.MODEL_ERROR, str(exc)) from exc
