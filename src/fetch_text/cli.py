"""CLI for extracting full text of cached articles."""

from __future__ import annotations

import argparse
import logging
from collections import Counter

from dotenv import load_dotenv

from article_store.factory import create_store
from common.cli_helpers import add_common_arguments, save_jsonl_local, setup_logging
from common.config import load_config
from common.datetime import utc_now
from common.urls import canonicalize_url
from fetch_text.extract import TextExtractor

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Extract full text for cached articles")
    add_common_arguments(parser)
    parser.add_argument("url", nargs="?", help="Extract a single stored article (default: batch)")
    parser.add_argument("--limit", type=int, default=10, help="Maximum articles per batch (default: 10)")
    parser.add_argument("--output-local", action="store_true", help="Save per-article outcomes locally")
    args = parser.parse_args()

    load_dotenv()
    setup_logging(args.log_level)
    config = load_config(args.config)
    store = create_store(config.store)
    extractor = TextExtractor(config.extraction)
    permanent = config.extraction.max_retries + 1

    now = utc_now()
    try:
        if args.url:
            article = store.get_article(canonicalize_url(args.url))
            if article is None:
                parser.error(f"article not found in store: {args.url}")
            pending = [article]
        else:
            pending = [
                a
                for a in store.all_articles()
                if not a.full_text and a.extraction_retry_count < permanent
            ][: args.limit]

        logger.info("Extracting text for %d articles", len(pending))
        outcomes = Counter()
        records = []
        for article in pending:
            result = extractor.extract_and_save(store, article, now)
            outcome = type(result).__name__
            outcomes[outcome] += 1
            records.append({"key": article.key, "outcome": outcome})

        logger.info("Extraction outcomes: %s", dict(outcomes))

        if args.output_local and records:
            filepath = save_jsonl_local(records, "text_extraction", now)
            logger.info("Saved %d records to %s", len(records), filepath)
    finally:
        store.close()


if __name__ == "__main__":
    main()
