"""CLI for backfilling embeddings of cached articles."""

from __future__ import annotations

import argparse
import logging

from dotenv import load_dotenv

from article_store.factory import create_store
from common.cli_helpers import add_common_arguments, save_jsonl_local, setup_logging
from common.config import load_config
from common.datetime import utc_now
from compute_embeddings.helpers import build_embedding_cache, build_provider

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Embed cached articles that have no current embedding")
    add_common_arguments(parser)

    # Model options
    parser.add_argument("--model", default=None, help="Sentence transformer model (default: from config)")
    parser.add_argument("--word-limit", type=int, default=None, help="Max words to embed (default: from config)")
    parser.add_argument("--device", default=None, help="Torch device, e.g. cpu or cuda (default: auto)")

    # Cache options
    parser.add_argument("--cleanup", action="store_true", help="Delete expired embeddings before embedding")
    parser.add_argument("--limit", type=int, default=None, help="Embed at most this many articles")

    # Output options
    parser.add_argument("--output-local", action="store_true", help="Save a per-article status report locally")

    args = parser.parse_args()

    load_dotenv()
    setup_logging(args.log_level)
    config = load_config(args.config)

    store = create_store(config.store)
    provider = build_provider(
        config.embedding, model_name=args.model, device=args.device, word_limit=args.word_limit
    )
    cache = build_embedding_cache(store, provider, config.embedding)

    now = utc_now()
    try:
        if args.cleanup:
            cache.cleanup_expired(now)

        articles = store.all_articles()
        cached = cache.get_cached_many([a.key for a in articles], now)
        pending = [a for a in articles if a.key not in cached]
        if args.limit is not None:
            pending = pending[: args.limit]

        if not pending:
            logger.info("All %d cached articles already have embeddings", len(articles))
            return

        logger.info("Embedding %d of %d cached articles", len(pending), len(articles))
        provider.load()
        records = []
        embedded = 0
        for article in pending:
            vector = cache.get_or_generate(article.key, now)
            if vector is not None:
                embedded += 1
            records.append({"key": article.key, "embedded": vector is not None})

        logger.info("Embedded %d articles, %d failed", embedded, len(pending) - embedded)

        if args.output_local:
            filepath = save_jsonl_local(records, "embedding_backfill", now)
            logger.info("Saved %d records to %s", len(records), filepath)
    finally:
        provider.close()
        store.close()


if __name__ == "__main__":
    main()
