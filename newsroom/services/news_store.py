from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from newsroom.core.logging import get_logger
from newsroom.models.news_article import PERSISTED_FIELDS, Article, ArticleFilters, FeedError
from newsroom.services.db_service import execute, fetch, fetchval, fetchrow_with_conn, run_in_transaction

logger = get_logger()

NEWS_TABLE = "news"
FEED_ERRORS_TABLE = "feed_errors"

_DATE_RANGE_DAYS = {"week": 7, "month": 30}


class PersistenceError(Exception):
    """The batch upsert failed; nothing from the batch is committed."""


@dataclass
class UpsertResult:
    inserted: int = 0
    updated: int = 0
    inserted_by_news_type: Dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.inserted + self.updated


def _build_upsert_sql() -> str:
    columns = ", ".join(PERSISTED_FIELDS)
    placeholders = ", ".join(f"${i}" for i in range(1, len(PERSISTED_FIELDS) + 1))
    updates = ",\n            ".join(
        f"{col} = EXCLUDED.{col}" for col in PERSISTED_FIELDS if col != "source_url"
    )
    return f"""
        INSERT INTO {NEWS_TABLE} ({columns})
        VALUES ({placeholders})
        ON CONFLICT (source_url) DO UPDATE
        SET {updates},
            updated_at = NOW()
        RETURNING (xmax = 0) AS inserted
    """


UPSERT_SQL = _build_upsert_sql()


def _row_args(article: Article) -> List[Any]:
    row = article.to_row()
    return [row[col] for col in PERSISTED_FIELDS]


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def build_query(filters: ArticleFilters, *, now: Optional[datetime] = None) -> Tuple[str, List[Any]]:
    """Translate ArticleFilters into a parameterized SELECT over the news table."""
    now = now or datetime.now(timezone.utc)
    clauses: List[str] = []
    args: List[Any] = []

    def bind(value: Any) -> str:
        args.append(value)
        return f"${len(args)}"

    if filters.news_type:
        clauses.append(f"news_type = {bind(filters.news_type)}")
    if filters.category:
        clauses.append(f"category = {bind(filters.category)}")

    if filters.date_range == "today":
        clauses.append(f"published_date >= {bind(_start_of_day(now))}")
    elif filters.date_range in _DATE_RANGE_DAYS:
        since = now - timedelta(days=_DATE_RANGE_DAYS[filters.date_range])
        clauses.append(f"published_date >= {bind(since)}")
    if filters.published_after:
        clauses.append(f"published_date >= {bind(filters.published_after)}")
    if filters.published_before:
        clauses.append(f"published_date < {bind(filters.published_before)}")

    if filters.min_importance is not None:
        clauses.append(f"importance_score >= {bind(filters.min_importance)}")
    if filters.companies:
        clauses.append(f"companies && {bind(list(filters.companies))}::text[]")
    if filters.tags:
        clauses.append(f"tags && {bind(list(filters.tags))}::text[]")
    if filters.search_term and filters.search_term.strip():
        pattern = bind(f"%{filters.search_term.strip()}%")
        clauses.append(f"(title ILIKE {pattern} OR summary ILIKE {pattern})")
    if filters.link_status:
        clauses.append(f"link_status = {bind(filters.link_status)}")
    if filters.featured_only:
        clauses.append("is_featured = TRUE")

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    sql = f"""
        SELECT {", ".join(PERSISTED_FIELDS)}
        FROM {NEWS_TABLE}
        {where}
        ORDER BY importance_score DESC, published_date DESC
        LIMIT {bind(filters.limit)}
    """
    return sql, args


class NewsStore:
    """Narrow persistence gateway over the `news` and `feed_errors` tables."""

    async def ping(self) -> bool:
        return (await fetchval("SELECT 1")) == 1

    async def existing_urls_since(self, since: datetime) -> Set[str]:
        rows = await fetch(
            f"""
            SELECT source_url
            FROM {NEWS_TABLE}
            WHERE published_date >= $1 OR created_at >= $1
            """,
            since,
        )
        return {row["source_url"] for row in rows}

    async def upsert_batch(self, articles: Sequence[Article]) -> UpsertResult:
        """
        Idempotent write keyed on source_url, all-or-nothing.

        Raises PersistenceError on any failure; the transaction is rolled back.
        """
        result = UpsertResult()
        if not articles:
            return result
        try:
            async with run_in_transaction() as conn:
                for article in articles:
                    row = await fetchrow_with_conn(conn, UPSERT_SQL, *_row_args(article))
                    if row is not None and row["inserted"]:
                        result.inserted += 1
                        result.inserted_by_news_type[article.news_type] = (
                            result.inserted_by_news_type.get(article.news_type, 0) + 1
                        )
                    else:
                        result.updated += 1
        except Exception as exc:
            logger.error("news_store_upsert_failed", batch_size=len(articles), error=str(exc))
            raise PersistenceError(str(exc)) from exc

        logger.info(
            "news_store_upsert_completed",
            inserted=result.inserted,
            updated=result.updated,
        )
        return result

    async def purge_older_than(self, cutoff: datetime) -> int:
        """Best-effort retention cleanup; returns deleted row count (0 on failure)."""
        try:
            status = await execute(f"DELETE FROM {NEWS_TABLE} WHERE published_date < $1", cutoff)
        except Exception as exc:
            logger.warning("news_store_purge_failed", cutoff=cutoff.isoformat(), error=str(exc))
            return 0
        deleted = _affected_rows(status)
        logger.info("news_store_purged", cutoff=cutoff.isoformat(), deleted=deleted)
        return deleted

    async def log_feed_error(self, error: FeedError) -> None:
        """Append-only observability write. Never raises."""
        try:
            await execute(
                f"""
                INSERT INTO {FEED_ERRORS_TABLE} (
                    source_name, source_url, error_message, error_type, occurred_at
                ) VALUES ($1, $2, $3, $4, $5)
                """,
                error.source_name,
                error.source_url,
                error.error_message,
                error.error_type,
                error.occurred_at,
            )
        except Exception as exc:
            logger.warning(
                "news_store_feed_error_log_failed",
                source=error.source_name,
                original_error=error.error_message,
                error=str(exc),
            )

    async def query_articles(
        self,
        filters: ArticleFilters,
        *,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        sql, args = build_query(filters, now=now)
        rows = await fetch(sql, *args)
        return [dict(row) for row in rows]


def _affected_rows(status: Any) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 12"
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except (TypeError, ValueError):
        return 0
