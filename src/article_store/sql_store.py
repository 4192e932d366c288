"""SQLAlchemy-backed store (SQLite by default, PostgreSQL via DATABASE_URL)."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from article_store.errors import MatchListError, StoreError
from article_store.models import (
    Article,
    Embedding,
    EmbeddingStatus,
    FailureReason,
    MatchList,
    MatchMethod,
    MatchResult,
    SourceRating,
    Story,
)
from article_store.store import Store

logger = logging.getLogger(__name__)

metadata = MetaData()

articles_table = Table(
    "articles",
    metadata,
    Column("key", String, primary_key=True),
    Column("source_id", String),
    Column("source_name", String, nullable=False),
    Column("title", Text, nullable=False),
    Column("description", Text),
    Column("content", Text),
    Column("full_text", Text),
    Column("author", String),
    Column("image_url", Text),
    Column("published_at", DateTime(timezone=True), nullable=False),
    Column("fetched_at", DateTime(timezone=True), nullable=False, index=True),
    Column("expires_at", DateTime(timezone=True), nullable=False, index=True),
    Column("is_tracked", Boolean, nullable=False, default=False),
    Column("story_id", String, index=True),
    Column("is_novel", Boolean, nullable=False, default=True),
    Column("has_new_perspective", Boolean, nullable=False, default=False),
    Column("extraction_failed_at", DateTime(timezone=True)),
    Column("extraction_retry_count", Integer, nullable=False, default=0),
)

embeddings_table = Table(
    "embeddings",
    metadata,
    Column("article_key", String, primary_key=True),
    Column("model_version", Integer, primary_key=True),
    Column("model_name", String, nullable=False),
    Column("status", String, nullable=False),
    Column("vector", Text),
    Column("dimensions", Integer, nullable=False, default=0),
    Column("failure_reason", String),
    Column("computed_at", DateTime(timezone=True)),
    Column("last_attempt_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), index=True),
)

match_results_table = Table(
    "match_results",
    metadata,
    Column("source_key", String, primary_key=True),
    Column("matches", Text, nullable=False),
    Column("method", String, nullable=False),
    Column("model_version", Integer),
    Column("computed_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False, index=True),
)

stories_table = Table(
    "stories",
    metadata,
    Column("id", String, primary_key=True),
    Column("title", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("last_viewed_at", DateTime(timezone=True), nullable=False),
)

ratings_table = Table(
    "source_ratings",
    metadata,
    Column("source_id", String, primary_key=True),
    Column("display_name", String, nullable=False),
    Column("domain", String, index=True),
    Column("bias_score", Integer, nullable=False),
    Column("reliability_score", Integer, nullable=False),
    Column("bias_label", String),
    Column("reliability_label", String),
)

state_table = Table(
    "kv_state",
    metadata,
    Column("name", String, primary_key=True),
    Column("value", Text, nullable=False),
)


def _utc(value: datetime | None) -> datetime | None:
    """Normalize to aware UTC. SQLite drops the offset on write, so bind and read through this."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_domain(domain: str) -> str:
    domain = domain.strip().lower()
    return domain[4:] if domain.startswith("www.") else domain


def _article_values(article: Article) -> dict:
    return {
        "key": article.key,
        "source_id": article.source_id,
        "source_name": article.source_name,
        "title": article.title,
        "description": article.description,
        "content": article.content,
        "full_text": article.full_text,
        "author": article.author,
        "image_url": article.image_url,
        "published_at": _utc(article.published_at),
        "fetched_at": _utc(article.fetched_at),
        "expires_at": _utc(article.expires_at),
        "is_tracked": article.is_tracked,
        "story_id": article.story_id,
        "is_novel": article.is_novel,
        "has_new_perspective": article.has_new_perspective,
        "extraction_failed_at": _utc(article.extraction_failed_at),
        "extraction_retry_count": article.extraction_retry_count,
    }


def _row_to_article(row) -> Article:
    m = row._mapping
    return Article(
        key=m["key"],
        source_id=m["source_id"],
        source_name=m["source_name"],
        title=m["title"],
        description=m["description"],
        content=m["content"],
        full_text=m["full_text"],
        author=m["author"],
        image_url=m["image_url"],
        published_at=_utc(m["published_at"]),
        fetched_at=_utc(m["fetched_at"]),
        expires_at=_utc(m["expires_at"]),
        is_tracked=bool(m["is_tracked"]),
        story_id=m["story_id"],
        is_novel=bool(m["is_novel"]),
        has_new_perspective=bool(m["has_new_perspective"]),
        extraction_failed_at=_utc(m["extraction_failed_at"]),
        extraction_retry_count=m["extraction_retry_count"] or 0,
    )


def _row_to_embedding(row) -> Embedding:
    m = row._mapping
    return Embedding(
        article_key=m["article_key"],
        model_version=m["model_version"],
        model_name=m["model_name"],
        status=EmbeddingStatus(m["status"]),
        vector=json.loads(m["vector"]) if m["vector"] else [],
        failure_reason=FailureReason(m["failure_reason"]) if m["failure_reason"] else None,
        computed_at=_utc(m["computed_at"]),
        last_attempt_at=_utc(m["last_attempt_at"]),
        expires_at=_utc(m["expires_at"]),
    )


def _row_to_story(row) -> Story:
    m = row._mapping
    return Story(
        id=m["id"],
        title=m["title"],
        created_at=_utc(m["created_at"]),
        updated_at=_utc(m["updated_at"]),
        last_viewed_at=_utc(m["last_viewed_at"]),
    )


def _row_to_rating(row) -> SourceRating:
    m = row._mapping
    return SourceRating(
        source_id=m["source_id"],
        display_name=m["display_name"],
        domain=m["domain"] or "",
        bias_score=m["bias_score"],
        reliability_score=m["reliability_score"],
        bias_label=m["bias_label"],
        reliability_label=m["reliability_label"],
    )


class SqlStore(Store):
    """Store backed by any SQLAlchemy database with upsert support.

    Args:
        url: SQLAlchemy database URL, e.g. ``sqlite:///news_thread.db`` or
            ``postgresql+psycopg2://...``.
        echo: Log emitted SQL.
    """

    def __init__(self, url: str = "sqlite:///:memory:", echo: bool = False):
        kwargs = {"echo": echo}
        if url.startswith("sqlite") and (":memory:" in url or url == "sqlite://"):
            # One shared connection so every thread sees the same in-memory database
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        self._engine: Engine = create_engine(url, **kwargs)
        self._dialect = self._engine.dialect.name
        if self._dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif self._dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise StoreError(f"Unsupported database dialect: {self._dialect}")
        self._insert = insert
        self.ensure_schema()

    @property
    def engine(self) -> Engine:
        return self._engine

    def ensure_schema(self) -> None:
        """Create tables if they don't exist."""
        try:
            metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to create schema: {exc}") from exc

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        """Transaction with automatic commit/rollback; driver errors become StoreError."""
        try:
            with self._engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            logger.error("Store operation failed: %s", exc)
            raise StoreError(str(exc)) from exc

    def _upsert(self, conn: Connection, table: Table, values: dict, keys: list[str]) -> None:
        stmt = self._insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=keys,
            set_={name: stmt.excluded[name] for name in values if name not in keys},
        )
        conn.execute(stmt)

    def close(self) -> None:
        self._engine.dispose()

    # Articles

    def get_article(self, key: str) -> Article | None:
        with self._connection() as conn:
            row = conn.execute(
                select(articles_table).where(articles_table.c.key == key)
            ).first()
        return _row_to_article(row) if row else None

    def get_articles(self, keys: Iterable[str]) -> dict[str, Article]:
        keys = list(dict.fromkeys(keys))
        if not keys:
            return {}
        with self._connection() as conn:
            rows = conn.execute(
                select(articles_table).where(articles_table.c.key.in_(keys))
            ).fetchall()
        return {row._mapping["key"]: _row_to_article(row) for row in rows}

    def put_article(self, article: Article) -> None:
        with self._connection() as conn:
            self._upsert(conn, articles_table, _article_values(article), ["key"])

    def put_articles(self, articles: Iterable[Article]) -> None:
        with self._connection() as conn:
            for article in articles:
                self._upsert(conn, articles_table, _article_values(article), ["key"])

    def all_articles(self) -> list[Article]:
        with self._connection() as conn:
            rows = conn.execute(select(articles_table)).fetchall()
        return [_row_to_article(row) for row in rows]

    def recent_unassigned(self, since: datetime) -> list[Article]:
        with self._connection() as conn:
            rows = conn.execute(
                select(articles_table).where(
                    and_(
                        articles_table.c.story_id.is_(None),
                        articles_table.c.fetched_at >= _utc(since),
                    )
                )
            ).fetchall()
        return [_row_to_article(row) for row in rows]

    def articles_for_story(self, story_id: str) -> list[Article]:
        with self._connection() as conn:
            rows = conn.execute(
                select(articles_table).where(articles_table.c.story_id == story_id)
            ).fetchall()
        return [_row_to_article(row) for row in rows]

    def _update_article(self, key: str, **values) -> None:
        with self._connection() as conn:
            conn.execute(
                update(articles_table).where(articles_table.c.key == key).values(**values)
            )

    def update_full_text(self, key: str, full_text: str) -> None:
        self._update_article(key, full_text=full_text)

    def mark_extraction_failed(self, key: str, now: datetime) -> None:
        self._update_article(
            key,
            extraction_failed_at=_utc(now),
            extraction_retry_count=articles_table.c.extraction_retry_count + 1,
        )

    def clear_extraction_failure(self, key: str) -> None:
        self._update_article(key, extraction_failed_at=None, extraction_retry_count=0)

    def set_tracking(
        self,
        key: str,
        story_id: str | None,
        is_tracked: bool,
        is_novel: bool = True,
        has_new_perspective: bool = False,
    ) -> None:
        self._update_article(
            key,
            story_id=story_id,
            is_tracked=is_tracked,
            is_novel=is_novel,
            has_new_perspective=has_new_perspective,
        )

    def clear_tracking_for_story(self, story_id: str) -> int:
        with self._connection() as conn:
            result = conn.execute(
                update(articles_table)
                .where(articles_table.c.story_id == story_id)
                .values(story_id=None, is_tracked=False)
            )
        return result.rowcount

    def join_story(
        self,
        key: str,
        story_id: str,
        is_novel: bool,
        has_new_perspective: bool,
        now: datetime,
    ) -> None:
        with self._connection() as conn:
            conn.execute(
                update(articles_table)
                .where(articles_table.c.key == key)
                .values(
                    story_id=story_id,
                    is_tracked=True,
                    is_novel=is_novel,
                    has_new_perspective=has_new_perspective,
                )
            )
            conn.execute(
                update(stories_table)
                .where(stories_table.c.id == story_id)
                .values(updated_at=_utc(now))
            )

    # Embeddings

    def get_embedding(self, article_key: str, model_version: int) -> Embedding | None:
        with self._connection() as conn:
            row = conn.execute(
                select(embeddings_table).where(
                    and_(
                        embeddings_table.c.article_key == article_key,
                        embeddings_table.c.model_version == model_version,
                    )
                )
            ).first()
        return _row_to_embedding(row) if row else None

    def get_embeddings(
        self, article_keys: Iterable[str], model_version: int
    ) -> dict[str, Embedding]:
        keys = list(dict.fromkeys(article_keys))
        if not keys:
            return {}
        with self._connection() as conn:
            rows = conn.execute(
                select(embeddings_table).where(
                    and_(
                        embeddings_table.c.article_key.in_(keys),
                        embeddings_table.c.model_version == model_version,
                    )
                )
            ).fetchall()
        return {row._mapping["article_key"]: _row_to_embedding(row) for row in rows}

    def all_embeddings(self, model_version: int) -> list[Embedding]:
        with self._connection() as conn:
            rows = conn.execute(
                select(embeddings_table).where(
                    and_(
                        embeddings_table.c.model_version == model_version,
                        embeddings_table.c.status == EmbeddingStatus.SUCCESS.value,
                    )
                )
            ).fetchall()
        return [_row_to_embedding(row) for row in rows]

    def put_embedding(self, embedding: Embedding) -> None:
        values = {
            "article_key": embedding.article_key,
            "model_version": embedding.model_version,
            "model_name": embedding.model_name,
            "status": embedding.status.value,
            "vector": json.dumps(embedding.vector) if embedding.vector else None,
            "dimensions": embedding.dimensions,
            "failure_reason": embedding.failure_reason.value if embedding.failure_reason else None,
            "computed_at": _utc(embedding.computed_at),
            "last_attempt_at": _utc(embedding.last_attempt_at),
            "expires_at": _utc(embedding.expires_at),
        }
        with self._connection() as conn:
            self._upsert(conn, embeddings_table, values, ["article_key", "model_version"])

    # Match results

    def get_match_result(self, source_key: str) -> MatchResult | None:
        with self._connection() as conn:
            row = conn.execute(
                select(match_results_table).where(
                    match_results_table.c.source_key == source_key
                )
            ).first()
        if row is None:
            return None
        m = row._mapping
        try:
            method = MatchMethod(m["method"])
        except ValueError as exc:
            raise MatchListError(f"Unknown match method: {m['method']!r}") from exc
        return MatchResult(
            source_key=m["source_key"],
            matches=MatchList.from_json(m["matches"]),
            method=method,
            model_version=m["model_version"],
            computed_at=_utc(m["computed_at"]),
            expires_at=_utc(m["expires_at"]),
        )

    def put_match_result(self, result: MatchResult) -> None:
        values = {
            "source_key": result.source_key,
            "matches": result.matches.to_json(),
            "method": result.method.value,
            "model_version": result.model_version,
            "computed_at": _utc(result.computed_at),
            "expires_at": _utc(result.expires_at),
        }
        with self._connection() as conn:
            self._upsert(conn, match_results_table, values, ["source_key"])

    # Stories

    def get_story(self, story_id: str) -> Story | None:
        with self._connection() as conn:
            row = conn.execute(
                select(stories_table).where(stories_table.c.id == story_id)
            ).first()
        return _row_to_story(row) if row else None

    def list_stories(self) -> list[Story]:
        with self._connection() as conn:
            rows = conn.execute(
                select(stories_table).order_by(stories_table.c.updated_at.desc())
            ).fetchall()
        return [_row_to_story(row) for row in rows]

    def put_story(self, story: Story) -> None:
        values = {
            "id": story.id,
            "title": story.title,
            "created_at": _utc(story.created_at),
            "updated_at": _utc(story.updated_at),
            "last_viewed_at": _utc(story.last_viewed_at),
        }
        with self._connection() as conn:
            self._upsert(conn, stories_table, values, ["id"])

    def delete_story(self, story_id: str) -> None:
        with self._connection() as conn:
            conn.execute(delete(stories_table).where(stories_table.c.id == story_id))

    def count_stories(self) -> int:
        with self._connection() as conn:
            return conn.execute(select(func.count()).select_from(stories_table)).scalar_one()

    # Ratings

    def _rating_where(self, clause) -> SourceRating | None:
        with self._connection() as conn:
            row = conn.execute(select(ratings_table).where(clause)).first()
        return _row_to_rating(row) if row else None

    def rating_by_domain(self, domain: str) -> SourceRating | None:
        return self._rating_where(ratings_table.c.domain == _normalize_domain(domain))

    def rating_by_source_id(self, source_id: str) -> SourceRating | None:
        return self._rating_where(ratings_table.c.source_id == source_id)

    def rating_by_display_name(self, display_name: str) -> SourceRating | None:
        return self._rating_where(
            func.lower(ratings_table.c.display_name) == display_name.strip().lower()
        )

    def put_ratings(self, ratings: Iterable[SourceRating]) -> None:
        with self._connection() as conn:
            for rating in ratings:
                values = {
                    "source_id": rating.source_id,
                    "display_name": rating.display_name,
                    "domain": _normalize_domain(rating.domain) if rating.domain else None,
                    "bias_score": rating.bias_score,
                    "reliability_score": rating.reliability_score,
                    "bias_label": rating.bias_label,
                    "reliability_label": rating.reliability_label,
                }
                self._upsert(conn, ratings_table, values, ["source_id"])

    def all_ratings(self) -> list[SourceRating]:
        with self._connection() as conn:
            rows = conn.execute(select(ratings_table)).fetchall()
        return [_row_to_rating(row) for row in rows]

    # Key-value state

    def get_state(self, name: str) -> dict | None:
        with self._connection() as conn:
            value = conn.execute(
                select(state_table.c.value).where(state_table.c.name == name)
            ).scalar_one_or_none()
        return json.loads(value) if value is not None else None

    def put_state(self, name: str, value: dict) -> None:
        with self._connection() as conn:
            self._upsert(
                conn, state_table, {"name": name, "value": json.dumps(value, default=str)}, ["name"]
            )

    # Retention

    def delete_expired_embeddings(self, now: datetime) -> int:
        with self._connection() as conn:
            return conn.execute(
                delete(embeddings_table).where(embeddings_table.c.expires_at <= _utc(now))
            ).rowcount

    def delete_expired(self, now: datetime) -> dict[str, int]:
        cutoff = _utc(now)
        with self._connection() as conn:
            articles = conn.execute(
                delete(articles_table).where(
                    and_(
                        articles_table.c.expires_at <= cutoff,
                        articles_table.c.is_tracked.is_(False),
                    )
                )
            ).rowcount
            embeddings = conn.execute(
                delete(embeddings_table).where(embeddings_table.c.expires_at <= cutoff)
            ).rowcount
            match_results = conn.execute(
                delete(match_results_table).where(match_results_table.c.expires_at <= cutoff)
            ).rowcount
        return {"articles": articles, "embeddings": embeddings, "match_results": match_results}
