"""Build the configured store backend."""

from __future__ import annotations

import logging

from common.config import StoreConfig

from article_store.memory_store import MemoryStore
from article_store.sql_store import SqlStore
from article_store.store import Store

logger = logging.getLogger(__name__)


def create_store(config: StoreConfig) -> Store:
    """Return a MemoryStore for backend "memory", otherwise a SqlStore on config.url."""
    if config.backend == "memory":
        logger.info("Using in-memory store")
        return MemoryStore()
    if config.backend != "sql":
        raise ValueError(f"Unknown store backend: {config.backend}")
    logger.info("Using SQL store (%s dialect)", config.url.split(":", 1)[0])
    return SqlStore(config.url, echo=config.echo)
