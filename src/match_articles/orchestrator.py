"""Find coverage of the same event from other outlets, grouped by editorial bias.

Resolution is tiered: a cached MatchResult is returned as is; otherwise the
source embedding is compared against every cached article (free), then an
external search fills in when fewer than ``min_matches`` were found. Without
a source embedding, escalating keyword searches with a lexical filter are
used instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from article_store.errors import MatchListError
from article_store.models import Article, MatchList, MatchMethod, MatchResult, SourceRating
from article_store.store import Store
from common.cancellation import CancellationToken, KeyedLocks, OperationCancelled, raise_if_cancelled
from common.config import MatchingConfig
from common.datetime import parse_datetime
from compute_embeddings.embedding_cache import EmbeddingCache
from similarity.matcher import (
    DimensionMismatchError,
    MatchStrength,
    cosine_similarity,
    is_match,
    match_strength,
)
from similarity.time_window import calculate_window, is_within_window

from match_articles.errors import MatchingError, QuotaExhaustedError, RateLimitedError, SearchError
from match_articles.keywords import (
    article_terms,
    shared_terms,
    term_overlap,
    title_similarity,
    title_tokens,
)
from match_articles.ratings import CENTER, LEFT, RIGHT, UNRATED, RatingLookup, RatingProvider
from match_articles.search import SearchProvider

logger = logging.getLogger(__name__)

QUERY_TERMS = 3
QUERY_TITLE_CHARS = 50
FALLBACK_TITLE_TOKENS = 4


@dataclass
class CategorizedResult:
    source: Article
    left: list[Article] = field(default_factory=list)
    center: list[Article] = field(default_factory=list)
    right: list[Article] = field(default_factory=list)
    unrated: list[Article] = field(default_factory=list)
    method: MatchMethod = MatchMethod.SEMANTIC
    scores: dict[str, float] = field(default_factory=dict)
    ratings: dict[str, SourceRating] = field(default_factory=dict)
    from_cache: bool = False

    @property
    def total(self) -> int:
        return len(self.left) + len(self.center) + len(self.right) + len(self.unrated)

    def buckets(self) -> dict[str, list[Article]]:
        return {LEFT: self.left, CENTER: self.center, RIGHT: self.right, UNRATED: self.unrated}


@dataclass
class _MatchRun:
    """Mutable state of one find_matches invocation."""

    source: Article
    now: datetime
    window: tuple[datetime, datetime]
    cancel: CancellationToken | None
    visited: set[str] = field(default_factory=set)
    scores: dict[str, float] = field(default_factory=dict)
    articles: dict[str, Article] = field(default_factory=dict)
    lexical_used: bool = False
    search_blocked: bool = False

    def record(self, article: Article, score: float) -> None:
        self.scores[article.key] = score
        self.articles[article.key] = article


def build_search_query(source: Article) -> str:
    """Top salient terms of the title, or the start of the title when there are none."""
    terms = article_terms(source.title, None, source.source_name)
    query = " ".join(terms[:QUERY_TERMS]).strip()
    return query or source.title[:QUERY_TITLE_CHARS].strip()


def keyword_queries(source: Article, source_terms: list[str]) -> list[str]:
    """Escalating keyword-search queries: top terms, the first term alone, raw title tokens."""
    queries = []
    if source_terms:
        queries.append(" ".join(source_terms[:QUERY_TERMS]))
        queries.append(source_terms[0])
    queries.append(" ".join(title_tokens(source.title, FALLBACK_TITLE_TOKENS)))
    return queries


class MatchOrchestrator:
    """Produce a bias-categorized set of articles matching a source article.

    Args:
        store: Article/match-result store
        embedding_cache: Cache used for source and candidate embeddings
        search_provider: External search, or None to stay offline
        rating_provider: Source rating lookups
        config: Matching settings
        locks: Per-source-key leases shared between orchestrators
        log: Logger for match tracing (defaults to this module's logger)
    """

    def __init__(
        self,
        store: Store,
        embedding_cache: EmbeddingCache,
        search_provider: SearchProvider | None,
        rating_provider: RatingProvider,
        config: MatchingConfig | None = None,
        locks: KeyedLocks | None = None,
        log: logging.Logger | None = None,
    ):
        self.store = store
        self.embedding_cache = embedding_cache
        self.search_provider = search_provider
        self.rating_provider = rating_provider
        self.config = config or MatchingConfig()
        self._locks = locks or KeyedLocks()
        self.log = log or logger

    def find_matches(
        self,
        source: Article,
        now: datetime | None = None,
        cancel: CancellationToken | None = None,
    ) -> CategorizedResult:
        """Categorized matches for source.

        Raises:
            MatchingError: If no result could be produced at all (e.g. the store failed).
            OperationCancelled: If cancel was set; never wrapped.
        """
        now = parse_datetime(now)
        try:
            with self._locks.hold(source.key):
                return self._find_matches(source, now, cancel)
        except (OperationCancelled, MatchingError):
            raise
        except Exception as exc:
            self.log.error("Matching failed for %s: %s", source.key, exc)
            raise MatchingError(f"could not match {source.key}: {exc}") from exc

    def _find_matches(
        self, source: Article, now: datetime, cancel: CancellationToken | None
    ) -> CategorizedResult:
        raise_if_cancelled(cancel)
        cached = self._load_cached(source, now)
        if cached is not None:
            return cached

        if not self.store.has_article(source.key):
            self.store.put_article(source)

        run = _MatchRun(
            source=source,
            now=now,
            window=calculate_window(source.published_at, now),
            cancel=cancel,
            visited={source.key},
        )

        source_vector = self.embedding_cache.get_or_generate(source.key, now)
        raise_if_cancelled(cancel)

        if source_vector is not None:
            self.log.debug("Semantic matching for: %s", source.title[:40])
            self._feed_pass(run, source_vector)
            self.log.debug("Feed-internal pass found %d matches", len(run.scores))
            if len(run.scores) < self.config.min_matches:
                self._search_pass(run, source_vector)
            method = MatchMethod.HYBRID if run.lexical_used else MatchMethod.SEMANTIC
        else:
            self.log.warning("No embedding for %s, falling back to keyword matching", source.key)
            self._keyword_pass(run)
            method = MatchMethod.KEYWORD_FALLBACK

        self.log.info(
            "Found %d matches for %s (method=%s)", len(run.scores), source.key, method.value
        )
        if run.scores or not run.search_blocked:
            # Empty results expire sooner so the event gets searched again
            ttl_hours = self.config.result_ttl_hours if run.scores else self.config.empty_result_ttl_hours
            self.store.put_match_result(
                MatchResult(
                    source_key=source.key,
                    matches=MatchList.from_scores(run.scores),
                    method=method,
                    model_version=(
                        None
                        if method == MatchMethod.KEYWORD_FALLBACK
                        else self.embedding_cache.model_version
                    ),
                    computed_at=now,
                    expires_at=now + timedelta(hours=ttl_hours),
                )
            )
        else:
            self.log.info("Not caching empty result for %s: search was blocked", source.key)

        return self.categorize(source, list(run.articles.values()), run.scores, method)

    def _load_cached(self, source: Article, now: datetime) -> CategorizedResult | None:
        try:
            result = self.store.get_match_result(source.key)
        except MatchListError as exc:
            self.log.warning("Ignoring malformed cached matches for %s: %s", source.key, exc)
            return None
        if result is None or result.is_expired(now):
            return None
        if (
            result.method != MatchMethod.KEYWORD_FALLBACK
            and result.model_version != self.embedding_cache.model_version
        ):
            self.log.debug(
                "Cached matches for %s use model version %s, current is %s",
                source.key,
                result.model_version,
                self.embedding_cache.model_version,
            )
            return None

        keys = result.matches.keys
        articles = self.store.get_articles(keys)
        if any(key not in articles for key in keys):
            self.log.debug("Cached matches for %s reference evicted articles", source.key)
            return None

        self.log.debug("Cache hit: %d matches for %s", len(keys), source.key)
        return self.categorize(
            source,
            [articles[key] for key in keys],
            result.matches.as_dict(),
            result.method,
            from_cache=True,
        )

    def _feed_pass(self, run: _MatchRun, source_vector: list[float]) -> None:
        """Compare against every cached embedding; consumes no search quota."""
        candidates = self.embedding_cache.all_cached(run.now)
        matched: dict[str, float] = {}
        for key, vector in candidates.items():
            raise_if_cancelled(run.cancel)
            if key in run.visited:
                continue
            try:
                score = cosine_similarity(source_vector, vector)
            except DimensionMismatchError:
                self.log.debug("Skipping %s: embedding dimensions differ", key)
                continue
            if is_match(score):
                matched[key] = score

        articles = self.store.get_articles(matched)
        for key, score in matched.items():
            article = articles.get(key)
            if article is None:
                continue
            run.visited.add(key)
            run.record(article, score)

    def _search(self, run: _MatchRun, query: str) -> list[Article]:
        """Run one external search; quota signals block further searching for this run."""
        if self.search_provider is None or run.search_blocked or not query:
            return []
        start, end = run.window
        try:
            return self.search_provider.search(query, start, end, self.config.page_size)
        except (RateLimitedError, QuotaExhaustedError) as exc:
            self.log.warning("Search unavailable, using local results only: %s", exc)
            run.search_blocked = True
        except SearchError as exc:
            self.log.warning("Search failed for query %r: %s", query, exc)
        return []

    def _admit(self, run: _MatchRun, candidate: Article) -> Article | None:
        """Mark candidate visited; return the stored copy if it is new and in the window."""
        if candidate.key in run.visited:
            return None
        run.visited.add(candidate.key)
        if not is_within_window(run.source.published_at, candidate.published_at, run.now):
            self.log.debug("Skipping %s: outside the search window", candidate.key)
            return None
        return self.store.get_article(candidate.key) or candidate

    def _upsert_if_new(self, article: Article) -> None:
        if not self.store.has_article(article.key):
            self.store.put_article(article)

    def _search_pass(self, run: _MatchRun, source_vector: list[float]) -> None:
        query = build_search_query(run.source)
        self.log.debug("Searching for more matches: %s", query)
        candidates = self._search(run, query)
        source_terms = article_terms(
            run.source.title, run.source.description, run.source.source_name
        )

        for candidate in candidates:
            raise_if_cancelled(run.cancel)
            article = self._admit(run, candidate)
            if article is None:
                continue
            # Stored first so the cache can resolve its text
            self._upsert_if_new(article)

            vector = self.embedding_cache.get_or_generate(article.key, run.now)
            if vector is not None:
                try:
                    score = cosine_similarity(source_vector, vector)
                except DimensionMismatchError:
                    continue
                if match_strength(score) != MatchStrength.NONE:
                    run.record(article, score)
                    self.log.debug("Semantic match: %s (score: %.2f)", article.title[:40], score)
                continue

            candidate_terms = article_terms(article.title, article.description, article.source_name)
            overlap = term_overlap(source_terms, candidate_terms)
            if overlap >= self.config.lexical_overlap_threshold:
                run.lexical_used = True
                run.record(article, overlap * self.config.lexical_score_factor)
                self.log.debug("Lexical match: %s (overlap: %.2f)", article.title[:40], overlap)

    def _keyword_pass(self, run: _MatchRun) -> None:
        source = run.source
        source_terms = article_terms(source.title, source.description, source.source_name)
        for stage, query in enumerate(keyword_queries(source, source_terms), start=1):
            if len(run.scores) >= self.config.min_matches or run.search_blocked:
                break
            if not query:
                continue
            self.log.debug("Keyword stage %d query: %s", stage, query)
            for candidate in self._search(run, query):
                raise_if_cancelled(run.cancel)
                article = self._admit(run, candidate)
                if article is None:
                    continue
                similarity = self._keyword_similarity(source, source_terms, article)
                if similarity is None:
                    continue
                self._upsert_if_new(article)
                run.record(article, similarity / 100.0)

    def _keyword_similarity(
        self, source: Article, source_terms: list[str], candidate: Article
    ) -> float | None:
        """Title similarity (percent) if candidate passes the keyword filter, else None."""
        candidate_terms = article_terms(
            candidate.title, candidate.description, candidate.source_name
        )
        shared = shared_terms(source_terms, candidate_terms)
        overlap = term_overlap(source_terms, candidate_terms)
        if not shared and overlap < self.config.keyword_min_entity_overlap:
            return None
        similarity = title_similarity(source.title, candidate.title)
        if not self.config.keyword_min_title_similarity <= similarity <= 100.0:
            return None
        return similarity

    def categorize(
        self,
        source: Article,
        matches: list[Article],
        scores: dict[str, float],
        method: MatchMethod,
        from_cache: bool = False,
    ) -> CategorizedResult:
        """Bucket matches by the bias of their source, nearest in time first."""
        lookup = RatingLookup(self.rating_provider)
        result = CategorizedResult(
            source=source,
            method=method,
            scores={m.key: scores.get(m.key, 0.0) for m in matches},
            from_cache=from_cache,
        )
        buckets = result.buckets()
        for article in matches:
            rating = lookup.rating_for(article)
            if rating is None:
                buckets[UNRATED].append(article)
                continue
            result.ratings[article.key] = rating
            buckets[rating.bias_category()].append(article)

        source_rating = lookup.rating_for(source)
        if source_rating is not None:
            result.ratings[source.key] = source_rating

        def distance(article: Article) -> float:
            return abs((article.published_at - source.published_at).total_seconds())

        for bucket in buckets.values():
            bucket.sort(key=distance)
            del bucket[self.config.max_per_bucket :]
        return result
