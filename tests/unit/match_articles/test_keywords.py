"""Tests for match_articles.keywords module."""

import pytest

from match_articles.keywords import (
    article_terms,
    extract_entities,
    shared_terms,
    term_overlap,
    title_similarity,
    title_tokens,
    tokenize,
)


class TestExtractEntities:
    def test_capitalized_runs_and_long_words(self) -> None:
        result = extract_entities("Federal Reserve raises rates")
        assert result == ["Federal Reserve", "federal", "reserve", "raises", "rates"]

    def test_excluded_source_name_is_dropped(self) -> None:
        result = extract_entities("Reuters reports Apple earnings", "Reuters")
        assert result == ["Apple", "reports", "apple", "earnings"]

    def test_hyphens_split_words(self) -> None:
        assert extract_entities("Biden-Harris campaign")[0] == "Biden Harris"

    def test_stop_words_are_ignored(self) -> None:
        assert "breaking" not in extract_entities("Breaking news about the storm")

    def test_empty_text(self) -> None:
        assert extract_entities(None) == []
        assert extract_entities("") == []

    def test_article_terms_are_distinct(self) -> None:
        terms = article_terms("Apple earnings", "Apple earnings beat forecasts", None)
        assert terms == ["Apple", "apple", "earnings", "beat", "forecasts"]


class TestTitleSimilarity:
    def test_jaccard_percentage(self) -> None:
        assert title_similarity("Apple earnings beat", "Apple earnings miss") == pytest.approx(50.0)

    def test_identical_titles(self) -> None:
        assert title_similarity("Storm hits coast", "Storm hits coast") == pytest.approx(100.0)

    def test_empty_title(self) -> None:
        assert title_similarity("", "Storm hits coast") == 0.0

    def test_tokenize_drops_short_tokens_and_punctuation(self) -> None:
        assert tokenize("U.S. to ban TikTok!") == {"ban", "tiktok"}


class TestTermOverlap:
    def test_shared_terms_ignore_case(self) -> None:
        assert shared_terms(["Apple", "earnings"], ["apple", "iphone"]) == {"apple"}

    def test_overlap_fraction(self) -> None:
        assert term_overlap(["apple", "earnings", "beat", "forecasts"], ["apple", "beat"]) == pytest.approx(0.5)

    def test_overlap_without_source_terms(self) -> None:
        assert term_overlap([], ["apple"]) == 0.0


class TestTitleTokens:
    def test_ordered_distinct_tokens_without_stop_words(self) -> None:
        assert title_tokens("The storm and the storm surge hit Florida", 3) == ["storm", "surge", "hit"]
