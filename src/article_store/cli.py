"""CLI for store maintenance: retention sweep and source rating seeding."""

from __future__ import annotations

import argparse
import logging

from dotenv import load_dotenv

from article_store.factory import create_store
from common.cli_helpers import add_common_arguments, parse_timestamp, setup_logging
from common.config import load_config
from common.datetime import utc_now
from match_articles.ratings import load_ratings_csv

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Maintain the article store")
    add_common_arguments(parser)
    parser.add_argument("--sweep", action="store_true", help="Delete expired articles, embeddings and match results")
    parser.add_argument(
        "--now",
        type=lambda v: parse_timestamp(v, "now"),
        default=None,
        help="Reference time for the sweep (ISO-8601, default: current time)",
    )
    parser.add_argument("--ratings-csv", default=None, help="Load source ratings from this CSV file")
    args = parser.parse_args()

    if not args.sweep and not args.ratings_csv:
        parser.error("nothing to do: pass --sweep and/or --ratings-csv")

    load_dotenv()
    setup_logging(args.log_level)
    config = load_config(args.config)
    store = create_store(config.store)

    try:
        if args.ratings_csv:
            ratings = load_ratings_csv(args.ratings_csv)
            store.put_ratings(ratings)
            logger.info("Stored %d source ratings", len(ratings))

        if args.sweep:
            counts = store.delete_expired(args.now or utc_now())
            logger.info(
                "Retention sweep removed %d articles, %d embeddings, %d match results",
                counts["articles"],
                counts["embeddings"],
                counts["match_results"],
            )
    finally:
        store.close()


if __name__ == "__main__":
    main()
