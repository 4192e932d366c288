"""CLI for growing tracked stories with recent articles."""

from __future__ import annotations

import argparse
import logging

from dotenv import load_dotenv

from article_store.factory import create_store
from common.cli_helpers import add_common_arguments, parse_timestamp, save_jsonl_local, setup_logging
from common.config import load_config
from common.datetime import utc_now
from common.serialization import serialize_dataclass
from compute_embeddings.helpers import build_embedding_cache, build_provider
from link_stories.cluster_engine import StoryClusterEngine, StoryMatch
from match_articles.ratings import StoreRatingProvider

logger = logging.getLogger(__name__)


def match_records(matches: list[StoryMatch]) -> list[dict]:
    return [serialize_dataclass(m) for m in matches]


def main() -> None:
    parser = argparse.ArgumentParser(description="Add recent articles to tracked stories")
    add_common_arguments(parser)
    parser.add_argument(
        "--now",
        type=lambda v: parse_timestamp(v, "now"),
        default=None,
        help="Reference time (ISO-8601, default: current time)",
    )
    parser.add_argument(
        "--lookback-hours",
        type=int,
        default=None,
        help="Only consider articles fetched within this many hours (default: from config)",
    )
    parser.add_argument("--output-local", action="store_true", help="Save match evaluations locally")

    args = parser.parse_args()

    load_dotenv()
    setup_logging(args.log_level)
    config = load_config(args.config)
    if args.lookback_hours is not None:
        config.clustering.lookback_hours = args.lookback_hours

    store = create_store(config.store)
    provider = build_provider(config.embedding)
    cache = build_embedding_cache(store, provider, config.embedding)
    engine = StoryClusterEngine(store, cache, StoreRatingProvider(store), config=config.clustering)

    now = args.now or utc_now()
    try:
        matches = engine.update_tracked_stories(now=now)
    finally:
        provider.close()
        store.close()

    joined = [m for m in matches if m.joined]
    logger.info(
        "Story update complete: %d strong matches joined, %d weak matches reported",
        len(joined),
        len(matches) - len(joined),
    )

    if args.output_local and matches:
        filepath = save_jsonl_local(match_records(matches), "story_matches", now)
        logger.info("Saved %d evaluations to %s", len(matches), filepath)


if __name__ == "__main__":
    main()
