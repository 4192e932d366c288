"""CLI for managing followed stories."""

from __future__ import annotations

import argparse
import logging

from dotenv import load_dotenv

from article_store.factory import create_store
from common.cli_helpers import add_common_arguments, save_jsonl_local, setup_logging
from common.config import load_config
from common.datetime import utc_now
from common.urls import canonicalize_url
from track_stories.tracking import StoryLimitReached, StoryTracker

logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Follow, unfollow and list tracked stories")
    add_common_arguments(parser)
    subparsers = parser.add_subparsers(dest="command", required=True)

    follow = subparsers.add_parser("follow", help="Start a story from a stored article")
    follow.add_argument("url", help="URL of an article already in the store")

    unfollow = subparsers.add_parser("unfollow", help="Stop tracking a story")
    unfollow.add_argument("story_id")

    viewed = subparsers.add_parser("viewed", help="Mark a story as viewed")
    viewed.add_argument("story_id")

    listing = subparsers.add_parser("list", help="List tracked stories with unread counts")
    listing.add_argument("--output-local", action="store_true", help="Save the listing locally")

    return parser.parse_args()


def main() -> None:
    args = parse_args()

    load_dotenv()
    setup_logging(args.log_level)
    config = load_config(args.config)
    store = create_store(config.store)
    tracker = StoryTracker(store, max_stories=config.clustering.max_tracked_stories)

    try:
        if args.command == "follow":
            article = store.get_article(canonicalize_url(args.url))
            if article is None:
                logger.error("Article not found in store: %s", args.url)
                raise SystemExit(1)
            try:
                story = tracker.follow_article(article)
            except StoryLimitReached as exc:
                logger.error("%s", exc)
                raise SystemExit(1)
            logger.info("Created story %s: %s", story.id, story.title)

        elif args.command == "unfollow":
            tracker.unfollow_story(args.story_id)

        elif args.command == "viewed":
            if tracker.mark_viewed(args.story_id) is None:
                logger.warning("No story with id %s", args.story_id)

        elif args.command == "list":
            stories = tracker.list_stories()
            for entry in stories:
                logger.info(
                    "%s  %s  (%d articles, %d unread, updated %s)",
                    entry.story.id,
                    entry.story.title,
                    len(entry.articles),
                    entry.unread_count,
                    entry.story.updated_at.isoformat(),
                )
            if args.output_local and stories:
                records = [
                    {
                        "story_id": entry.story.id,
                        "title": entry.story.title,
                        "updated_at": entry.story.updated_at.isoformat(),
                        "unread_count": entry.unread_count,
                        "articles": [a.key for a in entry.articles],
                    }
                    for entry in stories
                ]
                filepath = save_jsonl_local(records, "tracked_stories", utc_now())
                logger.info("Saved %d stories to %s", len(records), filepath)
    finally:
        store.close()


if __name__ == "__main__":
    main()
