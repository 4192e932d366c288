"""Tests for track_stories.tracking module."""

from datetime import datetime, timedelta, timezone

import pytest

from article_store.memory_store import MemoryStore
from article_store.models import Article
from track_stories.tracking import StoryLimitReached, StoryTracker

NOW = datetime(2024, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


def make_article(key, fetched_at=NOW - timedelta(hours=1), title="Storm hits coast") -> Article:
    return Article(key=key, source_name="Example", title=title, published_at=fetched_at, fetched_at=fetched_at)


class TestFollow:
    def test_follow_creates_seeded_story(self) -> None:
        store = MemoryStore()
        tracker = StoryTracker(store)

        story = tracker.follow_article(make_article("https://a.com/1"), now=NOW)

        assert story.title == "Storm hits coast"
        assert store.get_story(story.id) is not None
        assert tracker.is_article_tracked("https://a.com/1")
        assert [a.key for a in store.articles_for_story(story.id)] == ["https://a.com/1"]

    def test_follow_keeps_existing_cached_copy(self) -> None:
        store = MemoryStore()
        cached = make_article("https://a.com/1")
        cached.full_text = "Extracted body"
        store.put_article(cached)

        StoryTracker(store).follow_article(make_article("https://a.com/1"), now=NOW)

        assert store.get_article("https://a.com/1").full_text == "Extracted body"

    def test_story_limit(self) -> None:
        store = MemoryStore()
        tracker = StoryTracker(store, max_stories=1)
        tracker.follow_article(make_article("https://a.com/1"), now=NOW)

        with pytest.raises(StoryLimitReached):
            tracker.follow_article(make_article("https://a.com/2"), now=NOW)
        assert store.count_stories() == 1

    def test_unfollow_releases_members(self) -> None:
        store = MemoryStore()
        tracker = StoryTracker(store)
        story = tracker.follow_article(make_article("https://a.com/1"), now=NOW)

        tracker.unfollow_story(story.id)

        assert store.get_story(story.id) is None
        assert not tracker.is_article_tracked("https://a.com/1")
        assert store.get_article("https://a.com/1").story_id is None

    def test_unknown_article_is_not_tracked(self) -> None:
        assert not StoryTracker(MemoryStore()).is_article_tracked("https://missing.com")


class TestUnread:
    def test_members_fetched_after_last_view_are_unread(self) -> None:
        store = MemoryStore()
        tracker = StoryTracker(store)
        story = tracker.follow_article(make_article("https://a.com/1", fetched_at=NOW - timedelta(hours=2)), now=NOW)
        store.put_article(make_article("https://b.com/1", fetched_at=NOW + timedelta(hours=1)))
        store.join_story("https://b.com/1", story.id, True, False, NOW + timedelta(hours=1))

        assert tracker.unread_count(story.id) == 1

        tracker.mark_viewed(story.id, now=NOW + timedelta(hours=2))
        assert tracker.unread_count(story.id) == 0

    def test_mark_viewed_unknown_story(self) -> None:
        tracker = StoryTracker(MemoryStore())
        assert tracker.mark_viewed("missing", now=NOW) is None
        assert tracker.unread_count("missing") == 0

    def test_list_stories_most_recently_updated_first(self) -> None:
        store = MemoryStore()
        tracker = StoryTracker(store)
        older = tracker.follow_article(make_article("https://a.com/1", title="Older"), now=NOW - timedelta(days=1))
        newer = tracker.follow_article(make_article("https://a.com/2", title="Newer"), now=NOW)

        listing = tracker.list_stories()

        assert [entry.story.id for entry in listing] == [newer.id, older.id]
        assert [a.key for a in listing[0].articles] == ["https://a.com/2"]
