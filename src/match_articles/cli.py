"""CLI for finding coverage of a stored article from other outlets."""

from __future__ import annotations

import argparse
import logging
from datetime import timedelta

from dotenv import load_dotenv

from article_store.factory import create_store
from common.cli_helpers import add_common_arguments, parse_timestamp, save_jsonl_local, setup_logging
from common.config import AppConfig, load_config
from common.datetime import utc_now
from common.urls import canonicalize_url
from compute_embeddings.helpers import build_embedding_cache, build_provider
from match_articles.orchestrator import CategorizedResult, MatchOrchestrator
from match_articles.quota import QuotaGuard
from match_articles.ratings import StoreRatingProvider
from match_articles.search import NewsApiSearchProvider

logger = logging.getLogger(__name__)


def build_quota_guard(config: AppConfig, store) -> QuotaGuard:
    return QuotaGuard(
        store,
        daily_limit=config.search.daily_request_budget,
        default_retry_after=timedelta(seconds=config.search.default_retry_after_seconds),
    )


def build_search_provider(config: AppConfig, store) -> NewsApiSearchProvider | None:
    """NewsAPI provider with a durable quota guard, or None when search is disabled."""
    if not config.search.enabled:
        return None
    if not config.search.api_key:
        logger.warning("NEWSAPI_KEY is not set; external search is disabled")
        return None
    return NewsApiSearchProvider(
        api_key=config.search.api_key,
        quota=build_quota_guard(config, store),
        base_url=config.search.base_url,
        language=config.search.language,
        sort_by=config.search.sort_by,
        timeout=config.search.request_timeout,
    )


def result_records(result: CategorizedResult) -> list[dict]:
    """One record per matched article, with its bucket, score and rating."""
    records = []
    for bucket, articles in result.buckets().items():
        for article in articles:
            rating = result.ratings.get(article.key)
            records.append(
                {
                    "source_key": result.source.key,
                    "bucket": bucket,
                    "key": article.key,
                    "title": article.title,
                    "source_name": article.source_name,
                    "published_at": article.published_at.isoformat(),
                    "score": round(result.scores.get(article.key, 0.0), 4),
                    "bias_score": rating.bias_score if rating else None,
                    "reliability_score": rating.reliability_score if rating else None,
                    "method": result.method.value,
                    "from_cache": result.from_cache,
                }
            )
    return records


def main() -> None:
    parser = argparse.ArgumentParser(description="Find matching coverage for a stored article")
    add_common_arguments(parser)
    parser.add_argument("url", nargs="?", help="URL of an article already in the store")
    parser.add_argument(
        "--now",
        type=lambda v: parse_timestamp(v, "now"),
        default=None,
        help="Reference time (ISO-8601, default: current time)",
    )
    parser.add_argument("--offline", action="store_true", help="Do not call the external search API")

    # Quota options
    parser.add_argument("--quota-status", action="store_true", help="Log the search quota state and exit")
    parser.add_argument("--clear-quota", action="store_true", help="Clear a recorded rate limit and exit")

    # Output options
    parser.add_argument("--output-local", action="store_true", help="Save matches to a local JSONL file")

    args = parser.parse_args()

    load_dotenv()
    setup_logging(args.log_level)
    config = load_config(args.config)
    store = create_store(config.store)

    try:
        if args.quota_status or args.clear_quota:
            quota = build_quota_guard(config, store)
            if args.clear_quota:
                quota.clear()
            state = quota.state()
            logger.info(
                "Search quota: rate_limited=%s until=%s remaining=%d used_today=%d/%d",
                state.is_rate_limited,
                state.rate_limited_until.isoformat() if state.rate_limited_until else "-",
                state.remaining_requests,
                state.requests_today,
                state.daily_limit,
            )
            return

        if not args.url:
            parser.error("url is required unless --quota-status or --clear-quota is given")

        source = store.get_article(canonicalize_url(args.url))
        if source is None:
            parser.error(f"article not found in store: {args.url}")

        provider = build_provider(config.embedding)
        cache = build_embedding_cache(store, provider, config.embedding)
        search = None if args.offline else build_search_provider(config, store)
        orchestrator = MatchOrchestrator(
            store,
            cache,
            search,
            StoreRatingProvider(store),
            config=config.matching,
        )
        now = args.now or utc_now()
        try:
            result = orchestrator.find_matches(source, now=now)
        finally:
            provider.close()

        logger.info(
            "%d matches for %r (method=%s, cached=%s): left=%d center=%d right=%d unrated=%d",
            result.total,
            source.title,
            result.method.value,
            result.from_cache,
            len(result.left),
            len(result.center),
            len(result.right),
            len(result.unrated),
        )
        records = result_records(result)
        for record in records:
            logger.info("  [%s] %.2f %s (%s)", record["bucket"], record["score"], record["title"], record["source_name"])

        if args.output_local:
            filepath = save_jsonl_local(records, "match_results", now)
            logger.info("Saved %d matches to %s", len(records), filepath)
    finally:
        store.close()


if __name__ == "__main__":
    main()
