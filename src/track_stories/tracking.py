"""Follow and unfollow story threads."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from article_store.models import Article, Story
from article_store.store import Store
from common.datetime import utc_now

logger = logging.getLogger(__name__)

MAX_TRACKED_STORIES = 1000


class StoryLimitReached(Exception):
    """Raised when following another article would exceed the story limit."""


@dataclass
class StoryWithArticles:
    story: Story
    articles: list[Article] = field(default_factory=list)
    unread_count: int = 0


class StoryTracker:
    """User-facing story lifecycle over a Store.

    Args:
        store: Article and story store
        max_stories: Maximum number of stories that may be tracked at once
    """

    def __init__(self, store: Store, max_stories: int = MAX_TRACKED_STORIES):
        self.store = store
        self.max_stories = max_stories

    def follow_article(self, article: Article, now: datetime | None = None) -> Story:
        """Start a story seeded with article.

        The article is cached first if the store has not seen it yet.

        Raises:
            StoryLimitReached: If max_stories stories are already tracked.
        """
        if self.store.count_stories() >= self.max_stories:
            raise StoryLimitReached(
                f"Storage limit of {self.max_stories} stories reached; unfollow some stories first"
            )
        now = now or utc_now()
        if not self.store.has_article(article.key):
            self.store.put_article(article)

        story = Story(title=article.title, created_at=now)
        self.store.put_story(story)
        self.store.set_tracking(article.key, story.id, is_tracked=True)
        logger.info("Following story %s seeded by %s", story.id, article.key)
        return story

    def unfollow_story(self, story_id: str) -> None:
        released = self.store.clear_tracking_for_story(story_id)
        self.store.delete_story(story_id)
        logger.info("Unfollowed story %s (%d articles released)", story_id, released)

    def is_article_tracked(self, key: str) -> bool:
        article = self.store.get_article(key)
        return article is not None and article.is_tracked

    def mark_viewed(self, story_id: str, now: datetime | None = None) -> Story | None:
        """Bump last_viewed_at. Returns the updated story, or None if it does not exist."""
        story = self.store.get_story(story_id)
        if story is None:
            return None
        story.last_viewed_at = now or utc_now()
        self.store.put_story(story)
        return story

    @staticmethod
    def _unread(story: Story, articles: list[Article]) -> int:
        return sum(1 for a in articles if a.fetched_at > story.last_viewed_at)

    def unread_count(self, story_id: str) -> int:
        """Members fetched after the story was last viewed."""
        story = self.store.get_story(story_id)
        if story is None:
            return 0
        return self._unread(story, self.store.articles_for_story(story_id))

    def list_stories(self) -> list[StoryWithArticles]:
        """Stories with their members, most recently updated first."""
        result = []
        for story in self.store.list_stories():
            articles = sorted(
                self.store.articles_for_story(story.id),
                key=lambda a: a.published_at,
                reverse=True,
            )
            result.append(StoryWithArticles(story, articles, self._unread(story, articles)))
        return result
