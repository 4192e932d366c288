"""Tests for match_articles.orchestrator module."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from article_store.memory_store import MemoryStore
from article_store.models import Article, MatchList, MatchMethod, MatchResult, SourceRating
from common.cancellation import CancellationToken, OperationCancelled
from compute_embeddings.embedding_cache import EmbeddingCache
from match_articles.errors import MatchingError, QuotaExhaustedError, RateLimitedError
from match_articles.orchestrator import MatchOrchestrator, build_search_query, keyword_queries
from match_articles.ratings import StoreRatingProvider

NOW = datetime(2024, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


class RawRowStore(MemoryStore):
    """MemoryStore that accepts undecoded match result rows."""

    def put_raw_match_result(self, source_key, row) -> None:
        with self._lock:
            self._match_results[source_key] = dict(row)


class TextProvider:
    """Embeds known texts to fixed vectors; anything else fails."""

    model_name = "text-provider"

    def __init__(self, vectors=None):
        self.vectors = vectors or {}
        self.calls = 0

    def embed(self, text):
        self.calls += 1
        if text not in self.vectors:
            raise RuntimeError(f"no vector for {text!r}")
        return list(self.vectors[text])


def make_article(key, title="Some headline", description=None, source_name="Daily Planet", **kwargs) -> Article:
    values = {
        "key": key,
        "title": title,
        "description": description,
        "source_name": source_name,
        "published_at": NOW - timedelta(hours=2),
        "fetched_at": NOW,
    }
    values.update(kwargs)
    return Article(**values)


def make_orchestrator(store, provider=None, search=None) -> MatchOrchestrator:
    cache = EmbeddingCache(store, provider or TextProvider(), model_version=1)
    return MatchOrchestrator(store, cache, search, StoreRatingProvider(store))


class TestQueries:
    def test_search_query_uses_top_title_terms(self) -> None:
        source = make_article("https://a.com/1", title="Federal Reserve raises interest rates")
        assert build_search_query(source) == "Federal Reserve federal reserve"

    def test_search_query_falls_back_to_title(self) -> None:
        source = make_article("https://a.com/1", title="on and on")
        assert build_search_query(source) == "on and on"

    def test_keyword_queries_escalate(self) -> None:
        source = make_article("https://a.com/1", title="Tesla recalls Model Y vehicles over steering defect")
        terms = ["Tesla", "Model", "tesla"]
        assert keyword_queries(source, terms) == [
            "Tesla Model tesla",
            "Tesla",
            "tesla recalls model vehicles",
        ]


class TestSemanticMatching:
    def setup_store(self):
        store = MemoryStore()
        provider = TextProvider(
            {
                "source text": [1.0, 0.0, 0.0],
                "strong text": [0.9, 0.1, 0.0],
                "weak text": [0.6, 0.8, 0.0],
                "unrelated text": [0.0, 1.0, 0.0],
            }
        )
        store.put_ratings([SourceRating("left", "Left Outlet", "leftoutlet.com", bias_score=-2, reliability_score=3)])
        store.put_articles(
            [
                make_article("https://leftoutlet.com/strong", description="strong text"),
                make_article("https://other.com/weak", description="weak text"),
                make_article("https://other.com/unrelated", description="unrelated text"),
            ]
        )
        return store, provider

    def test_feed_pass_buckets_matches(self) -> None:
        store, provider = self.setup_store()
        orchestrator = make_orchestrator(store, provider)
        for key in ["https://leftoutlet.com/strong", "https://other.com/weak", "https://other.com/unrelated"]:
            orchestrator.embedding_cache.get_or_generate(key, NOW)
        source = make_article("https://source.com/1", description="source text", source_name="Source")

        result = orchestrator.find_matches(source, now=NOW)

        assert result.method == MatchMethod.SEMANTIC
        assert not result.from_cache
        assert [a.key for a in result.left] == ["https://leftoutlet.com/strong"]
        assert [a.key for a in result.unrated] == ["https://other.com/weak"]
        assert result.scores["https://other.com/weak"] == pytest.approx(0.6)
        assert "https://leftoutlet.com/strong" in result.ratings

        cached = store.get_match_result("https://source.com/1")
        assert cached.model_version == 1
        assert cached.expires_at == NOW + timedelta(hours=24)
        assert cached.matches.keys[0] == "https://leftoutlet.com/strong"

    def test_second_call_is_served_from_cache(self) -> None:
        store, provider = self.setup_store()
        orchestrator = make_orchestrator(store, provider)
        for key in ["https://leftoutlet.com/strong", "https://other.com/weak"]:
            orchestrator.embedding_cache.get_or_generate(key, NOW)
        source = make_article("https://source.com/1", description="source text", source_name="Source")
        orchestrator.find_matches(source, now=NOW)
        calls = provider.calls

        result = orchestrator.find_matches(source, now=NOW + timedelta(hours=1))

        assert result.from_cache
        assert result.total == 2
        assert provider.calls == calls

    def test_lexical_fallback_makes_result_hybrid(self) -> None:
        store = MemoryStore()
        provider = TextProvider({"Central bank statement": [1.0, 0.0]})
        candidate = make_article(
            "https://dailyplanet.com/fed",
            title="Federal Reserve raises interest rates by a quarter point",
        )
        search = MagicMock()
        search.search.return_value = [candidate]
        orchestrator = make_orchestrator(store, provider, search)
        source = make_article(
            "https://source.com/fed",
            title="Federal Reserve raises interest rates",
            description="Central bank statement",
            source_name="Example News",
        )

        result = orchestrator.find_matches(source, now=NOW)

        assert result.method == MatchMethod.HYBRID
        assert result.scores["https://dailyplanet.com/fed"] == pytest.approx(6 / 9 * 0.6)
        assert store.has_article("https://dailyplanet.com/fed")

    def test_search_skips_source_and_feed_matches(self) -> None:
        store, provider = self.setup_store()
        source = make_article("https://source.com/1", description="source text", source_name="Source")
        strong = make_article("https://leftoutlet.com/strong", description="strong text")
        search = MagicMock()
        search.search.return_value = [source, strong]
        orchestrator = make_orchestrator(store, provider, search)
        orchestrator.embedding_cache.get_or_generate(strong.key, NOW)

        result = orchestrator.find_matches(source, now=NOW)

        assert search.search.call_count == 1
        assert result.total == 1
        assert [a.key for a in result.left] == [strong.key]
        assert store.get_match_result(source.key).matches.keys == [strong.key]
        assert provider.calls == 2

    def test_rate_limited_search_keeps_feed_matches(self) -> None:
        store, provider = self.setup_store()
        search = MagicMock()
        search.search.side_effect = RateLimitedError(timedelta(hours=1))
        orchestrator = make_orchestrator(store, provider, search)
        orchestrator.embedding_cache.get_or_generate("https://leftoutlet.com/strong", NOW)
        source = make_article("https://source.com/1", description="source text", source_name="Source")

        result = orchestrator.find_matches(source, now=NOW)

        assert result.method == MatchMethod.SEMANTIC
        assert [a.key for a in result.left] == ["https://leftoutlet.com/strong"]
        assert store.get_match_result(source.key).matches.keys == ["https://leftoutlet.com/strong"]


class TestKeywordFallback:
    def test_keyword_match_end_to_end(self) -> None:
        store = MemoryStore()
        source = make_article(
            "https://source.com/tesla",
            title="Tesla recalls Model Y vehicles over steering defect",
            source_name="Example News",
            published_at=NOW - timedelta(hours=1),
        )
        match = make_article("https://dailyplanet.com/tesla", title="Tesla recalls thousands of Model Y cars")
        noise = make_article("https://dailyplanet.com/bakery", title="Local bakery wins award")
        search = MagicMock()
        search.search.return_value = [match, noise]
        orchestrator = make_orchestrator(store, TextProvider(), search)

        result = orchestrator.find_matches(source, now=NOW)

        assert result.method == MatchMethod.KEYWORD_FALLBACK
        assert [a.key for a in result.unrated] == ["https://dailyplanet.com/tesla"]
        assert result.scores["https://dailyplanet.com/tesla"] == pytest.approx(3 / 9)
        assert search.search.call_count == 3
        assert store.get_match_result("https://source.com/tesla").model_version is None

    def test_market_story_lands_in_unrated(self) -> None:
        store = MemoryStore()
        source = make_article(
            "https://marketwatch.com/sp500",
            title="S&P 500 falls after AMD earnings, weak jobs data",
            source_name="MarketWatch",
        )
        candidate = make_article(
            "https://ibd.com/dow",
            title="Dow Rises On Surprise Jobs Data; AMD Plunges on Earnings",
            source_name="Investor's Business Daily",
        )
        search = MagicMock()
        search.search.return_value = [candidate]
        orchestrator = make_orchestrator(store, TextProvider(), search)

        result = orchestrator.find_matches(source, now=NOW)

        assert result.method == MatchMethod.KEYWORD_FALLBACK
        assert [a.key for a in result.unrated] == ["https://ibd.com/dow"]
        assert result.scores["https://ibd.com/dow"] == pytest.approx(4 / 12)
        assert result.left == [] and result.center == [] and result.right == []

    def test_naive_source_dates_are_treated_as_utc(self) -> None:
        store = MemoryStore()
        source = make_article(
            "https://source.com/tesla",
            title="Tesla recalls Model Y vehicles over steering defect",
            source_name="Example News",
            published_at=datetime(2024, 3, 10, 10, 0),
        )
        match = make_article("https://dailyplanet.com/tesla", title="Tesla recalls thousands of Model Y cars")
        search = MagicMock()
        search.search.return_value = [match]
        orchestrator = make_orchestrator(store, TextProvider(), search)

        result = orchestrator.find_matches(source, now=datetime(2024, 3, 10, 12, 0))

        assert source.published_at.tzinfo == timezone.utc
        assert [a.key for a in result.unrated] == ["https://dailyplanet.com/tesla"]

    def test_blocked_search_result_is_not_cached(self) -> None:
        store = MemoryStore()
        search = MagicMock()
        search.search.side_effect = QuotaExhaustedError("rate limited")
        orchestrator = make_orchestrator(store, TextProvider(), search)
        source = make_article("https://source.com/tesla", title="Tesla recalls Model Y vehicles")

        result = orchestrator.find_matches(source, now=NOW)

        assert result.total == 0
        assert search.search.call_count == 1
        assert store.get_match_result("https://source.com/tesla") is None

    def test_empty_result_without_blocking_is_cached(self) -> None:
        store = MemoryStore()
        orchestrator = make_orchestrator(store, TextProvider(), None)
        source = make_article("https://source.com/1", title="Quiet day")

        result = orchestrator.find_matches(source, now=NOW)

        assert result.total == 0
        cached = store.get_match_result("https://source.com/1")
        assert len(cached.matches) == 0
        assert cached.expires_at == NOW + timedelta(hours=1)

    def test_empty_result_is_searched_again_after_its_short_ttl(self) -> None:
        store = MemoryStore()
        search = MagicMock()
        search.search.return_value = []
        orchestrator = make_orchestrator(store, TextProvider(), search)
        source = make_article("https://source.com/1", title="Quiet day at the harbour")
        orchestrator.find_matches(source, now=NOW)
        calls = search.search.call_count

        result = orchestrator.find_matches(source, now=NOW + timedelta(hours=2))

        assert not result.from_cache
        assert search.search.call_count > calls


class TestCachedResults:
    def cached_result(self, **overrides) -> MatchResult:
        values = {
            "source_key": "https://source.com/1",
            "matches": MatchList.from_parallel(["https://other.com/1"], [0.8]),
            "method": MatchMethod.SEMANTIC,
            "computed_at": NOW - timedelta(hours=1),
            "expires_at": NOW + timedelta(hours=23),
            "model_version": 1,
        }
        values.update(overrides)
        return MatchResult(**values)

    def test_valid_hit_skips_embedding_and_search(self) -> None:
        store = MemoryStore()
        store.put_article(make_article("https://other.com/1"))
        store.put_match_result(self.cached_result())
        cache = MagicMock()
        cache.model_version = 1
        search = MagicMock()
        orchestrator = MatchOrchestrator(store, cache, search, StoreRatingProvider(store))

        result = orchestrator.find_matches(make_article("https://source.com/1"), now=NOW)

        assert result.from_cache
        assert [a.key for a in result.unrated] == ["https://other.com/1"]
        cache.get_or_generate.assert_not_called()
        search.search.assert_not_called()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"expires_at": NOW - timedelta(minutes=1)},
            {"model_version": 0},
        ],
    )
    def test_stale_results_are_misses(self, overrides) -> None:
        store = MemoryStore()
        store.put_article(make_article("https://other.com/1"))
        store.put_match_result(self.cached_result(**overrides))
        orchestrator = make_orchestrator(store)

        result = orchestrator.find_matches(make_article("https://source.com/1"), now=NOW)

        assert not result.from_cache

    def test_evicted_match_is_a_miss(self) -> None:
        store = MemoryStore()
        store.put_match_result(self.cached_result())
        orchestrator = make_orchestrator(store)

        result = orchestrator.find_matches(make_article("https://source.com/1"), now=NOW)

        assert not result.from_cache

    def test_malformed_cached_matches_are_a_miss(self) -> None:
        store = RawRowStore()
        store.put_raw_match_result(
            "https://source.com/1",
            {
                "matches": "{broken",
                "method": "semantic",
                "model_version": 1,
                "computed_at": NOW,
                "expires_at": NOW + timedelta(hours=1),
            },
        )
        orchestrator = make_orchestrator(store)

        result = orchestrator.find_matches(make_article("https://source.com/1"), now=NOW)

        assert not result.from_cache
        assert store.get_match_result("https://source.com/1") is not None

    def test_keyword_results_ignore_model_version(self) -> None:
        store = MemoryStore()
        store.put_article(make_article("https://other.com/1"))
        store.put_match_result(self.cached_result(method=MatchMethod.KEYWORD_FALLBACK, model_version=None))
        orchestrator = make_orchestrator(store)

        result = orchestrator.find_matches(make_article("https://source.com/1"), now=NOW)

        assert result.from_cache
        assert result.method == MatchMethod.KEYWORD_FALLBACK


class TestFailures:
    def test_unexpected_errors_become_matching_error(self) -> None:
        store = MemoryStore()
        cache = MagicMock()
        cache.get_or_generate.side_effect = RuntimeError("database unavailable")
        orchestrator = MatchOrchestrator(store, cache, None, StoreRatingProvider(store))

        with pytest.raises(MatchingError):
            orchestrator.find_matches(make_article("https://source.com/1"), now=NOW)

    def test_cancellation_is_not_wrapped(self) -> None:
        store = MemoryStore()
        orchestrator = make_orchestrator(store)
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelled):
            orchestrator.find_matches(make_article("https://source.com/1"), now=NOW, cancel=token)


class TestCategorize:
    def test_buckets_are_capped_and_sorted_by_time_distance(self) -> None:
        store = MemoryStore()
        store.put_ratings([SourceRating("right", "Right Outlet", "rightoutlet.com", bias_score=2, reliability_score=3)])
        orchestrator = make_orchestrator(store)
        source = make_article("https://source.com/1", published_at=NOW)
        matches = [
            make_article(f"https://rightoutlet.com/{i}", published_at=NOW - timedelta(hours=i))
            for i in range(7, 0, -1)
        ]

        result = orchestrator.categorize(source, matches, {}, MatchMethod.SEMANTIC)

        assert [a.key for a in result.right] == [f"https://rightoutlet.com/{i}" for i in range(1, 6)]
        assert result.left == [] and result.center == [] and result.unrated == []

    def test_reseeded_ratings_are_used_by_the_next_call(self) -> None:
        store = MemoryStore()
        orchestrator = make_orchestrator(store)
        source = make_article("https://source.com/1")
        match = make_article("https://rightoutlet.com/1")

        before = orchestrator.categorize(source, [match], {}, MatchMethod.SEMANTIC)
        store.put_ratings([SourceRating("right", "Right Outlet", "rightoutlet.com", bias_score=2, reliability_score=3)])
        after = orchestrator.categorize(source, [match], {}, MatchMethod.SEMANTIC)

        assert [a.key for a in before.unrated] == ["https://rightoutlet.com/1"]
        assert [a.key for a in after.right] == ["https://rightoutlet.com/1"]
