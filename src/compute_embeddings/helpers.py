"""Helper functions for wiring the embedding cache from config."""

from __future__ import annotations

from datetime import timedelta

from article_store.store import Store
from common.config import EmbeddingConfig
from compute_embeddings.embedding_cache import EmbeddingCache
from compute_embeddings.provider import SentenceTransformerProvider


def build_provider(config: EmbeddingConfig, **overrides) -> SentenceTransformerProvider:
    """SentenceTransformerProvider from config; keyword overrides win when not None."""
    settings = {
        "model_name": config.model_name,
        "device": config.device,
        "word_limit": config.word_limit,
        "max_text_chars": config.max_text_chars,
    }
    settings.update({k: v for k, v in overrides.items() if v is not None})
    return SentenceTransformerProvider(**settings)


def build_embedding_cache(
    store: Store, provider: SentenceTransformerProvider, config: EmbeddingConfig
) -> EmbeddingCache:
    return EmbeddingCache(
        store,
        provider,
        model_version=config.model_version,
        retry_cooldown=timedelta(seconds=config.retry_cooldown_seconds),
        ttl=timedelta(days=config.ttl_days),
    )
