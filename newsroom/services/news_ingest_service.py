from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from newsroom.config import settings
from newsroom.core.logging import get_logger
from newsroom.core.request_id import get_run_id
from newsroom.models.news_article import Article, FeedError
from newsroom.models.news_keywords import get_keyword_config
from newsroom.models.news_sources import NewsSource, get_all_news_sources
from newsroom.services.featured_selection import select_featured
from newsroom.services.feed_fetcher import FeedFetcher, SourceFetchResult
from newsroom.services.link_validation_service import LinkValidator
from newsroom.services.news_classification_service import NewsClassifier, classify_articles
from newsroom.services.news_dedupe_service import dedupe_with_stats
from newsroom.services.news_store import NewsStore, PersistenceError
from newsroom.services.rss_normalization import normalize_feed_entries

logger = get_logger()

HEALTH_PROBE_CANDIDATES = 3


class HealthCheckError(Exception):
    """Store or upstream unreachable after the retry window; the run must not proceed."""


class RunState(str, Enum):
    IDLE = "idle"
    HEALTH_CHECKING = "health_checking"
    FETCHING = "fetching"
    PROCESSING = "processing"
    PERSISTING = "persisting"
    CLEANING_UP = "cleaning_up"
    DONE = "done"
    DEGRADED = "degraded"
    FAILED = "failed"


class NewsTypeCounts(BaseModel):
    fetched: int = 0
    deduped: int = 0
    inserted: int = 0


class FailedSource(BaseModel):
    name: str
    url: str
    error: str


class RunSummary(BaseModel):
    run_id: Optional[str] = None
    state: RunState = RunState.IDLE
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    total_sources: int = 0
    failed_sources: List[FailedSource] = Field(default_factory=list)
    malformed_items: int = 0
    per_news_type: Dict[str, NewsTypeCounts] = Field(default_factory=dict)
    total_fetched: int = 0
    total_unique: int = 0
    total_inserted: int = 0
    total_updated: int = 0
    purged: int = 0
    link_validation: bool = True
    persist_failed: bool = False
    persist_error: Optional[str] = None
    degraded: bool = False

    def counts(self, news_type: str) -> NewsTypeCounts:
        if news_type not in self.per_news_type:
            self.per_news_type[news_type] = NewsTypeCounts()
        return self.per_news_type[news_type]

    @property
    def exit_code(self) -> int:
        return 2 if self.persist_failed else 0


class NewsIngestPipeline:
    """
    Drives one ingest run:

        idle -> health_checking -> fetching -> processing -> persisting
             -> cleaning_up -> done | degraded

    A failed health check ends in `failed` and raises HealthCheckError.
    """

    def __init__(
        self,
        *,
        sources: Sequence[NewsSource],
        store: NewsStore,
        classifier: NewsClassifier,
        fetcher_factory: Callable[..., FeedFetcher] = FeedFetcher,
        validator_factory: Callable[..., LinkValidator] = LinkValidator,
        link_validator: Optional[LinkValidator] = None,
        link_validation_enabled: bool = settings.LINK_VALIDATION_ENABLED,
        source_batch_size: int = settings.SOURCE_BATCH_SIZE,
        source_batch_pause_s: float = settings.SOURCE_BATCH_PAUSE_S,
        featured_per_news_type: int = settings.FEATURED_PER_NEWS_TYPE,
        dedup_lookback: timedelta = timedelta(hours=settings.DEDUP_LOOKBACK_HOURS),
        retention: timedelta = timedelta(days=settings.RETENTION_DAYS),
        health_retry_delay_s: float = settings.HEALTH_RETRY_DELAY_S,
        degraded_failure_ratio: float = settings.DEGRADED_FAILURE_RATIO,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.sources = list(sources)
        self.store = store
        self.classifier = classifier
        self.fetcher_factory = fetcher_factory
        self.validator_factory = validator_factory
        self._link_validator = link_validator
        self.link_validation_enabled = link_validation_enabled
        self.source_batch_size = max(1, int(source_batch_size))
        self.source_batch_pause_s = source_batch_pause_s
        self.featured_per_news_type = featured_per_news_type
        self.dedup_lookback = dedup_lookback
        self.retention = retention
        self.health_retry_delay_s = health_retry_delay_s
        self.degraded_failure_ratio = degraded_failure_ratio
        self._sleep = sleep
        self._clock = clock
        self.state = RunState.IDLE

    @property
    def link_validator(self) -> LinkValidator:
        """Validator kept across runs so its URL cache survives; the HTTP client is opened per run."""
        if self._link_validator is None:
            self._link_validator = self.validator_factory(enabled=True)
        return self._link_validator

    def _transition(self, state: RunState) -> None:
        logger.info("news_ingest_state", previous=self.state.value, state=state.value)
        self.state = state

    # ---- health check ------------------------------------------------------

    async def _store_healthy(self) -> bool:
        try:
            return bool(await self.store.ping())
        except Exception as exc:
            logger.warning("news_ingest_store_ping_failed", error=str(exc))
            return False

    async def _upstream_healthy(self, fetcher: FeedFetcher) -> bool:
        if not self.sources:
            return True
        ranked = sorted(self.sources, key=lambda s: s.priority, reverse=True)
        for source in ranked[:HEALTH_PROBE_CANDIDATES]:
            if await fetcher.probe(source):
                return True
        return False

    async def _health_check(self, fetcher: FeedFetcher) -> None:
        for attempt in (1, 2):
            store_ok = await self._store_healthy()
            upstream_ok = store_ok and await self._upstream_healthy(fetcher)
            if store_ok and upstream_ok:
                logger.info("news_ingest_health_ok", attempt=attempt)
                return
            logger.warning(
                "news_ingest_health_failed",
                attempt=attempt,
                store_ok=store_ok,
                upstream_ok=upstream_ok,
            )
            if attempt == 1:
                await self._sleep(self.health_retry_delay_s)

        message = "health check failed after retry"
        await self._log_fatal(message)
        raise HealthCheckError(message)

    async def _log_fatal(self, message: str) -> None:
        top = max(self.sources, key=lambda s: s.priority, default=None)
        try:
            await self.store.log_feed_error(
                FeedError(
                    source_name=top.name if top else "pipeline",
                    source_url=top.url if top else "",
                    error_message=message,
                    error_type="fatal_error",
                )
            )
        except Exception as exc:
            logger.warning("news_ingest_fatal_log_failed", error=str(exc))

    # ---- fetching ----------------------------------------------------------

    async def _fetch_all(self, fetcher: FeedFetcher) -> List[SourceFetchResult]:
        results: List[SourceFetchResult] = []
        for start in range(0, len(self.sources), self.source_batch_size):
            if start:
                await self._sleep(self.source_batch_pause_s)
            batch = self.sources[start : start + self.source_batch_size]
            outcomes = await asyncio.gather(
                *(fetcher.fetch_source(source) for source in batch),
                return_exceptions=True,
            )
            for source, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(
                        "news_ingest_fetch_task_crashed",
                        source=source.name,
                        error=str(outcome),
                    )
                    outcome = SourceFetchResult(source=source, error=str(outcome) or type(outcome).__name__)
                results.append(outcome)
        return results

    # ---- processing --------------------------------------------------------

    def _process(
        self,
        results: Sequence[SourceFetchResult],
        summary: RunSummary,
        now: datetime,
    ) -> List[Article]:
        articles: List[Article] = []
        for result in results:
            source = result.source
            summary.counts(source.news_type).fetched += len(result.items)
            summary.total_fetched += len(result.items)

            normalized, errors = normalize_feed_entries(result.items, source, now)
            for err in errors:
                raw = err.entry_raw or {}
                logger.warning(
                    "news_ingest_normalization_error",
                    source=source.name,
                    url=raw.get("link") or raw.get("permalink") or source.url,
                    error=str(err),
                )
            classified, dropped = classify_articles(self.classifier, normalized, source, now)
            summary.malformed_items += len(errors) + dropped
            articles.extend(classified)
        return articles

    # ---- persisting --------------------------------------------------------

    async def _persist(self, articles: List[Article], summary: RunSummary, now: datetime) -> None:
        try:
            existing = await self.store.existing_urls_since(now - self.dedup_lookback)
        except Exception as exc:
            self._mark_persist_failed(summary, exc)
            return

        unique, stats = dedupe_with_stats(articles, existing)
        summary.total_unique = len(unique)
        for article in unique:
            summary.counts(article.news_type).deduped += 1
        logger.info(
            "news_ingest_deduped",
            candidates=len(articles),
            kept=stats.kept,
            existing=stats.existing,
            in_batch=stats.in_batch,
        )

        if self.link_validation_enabled and unique:
            validator = self.link_validator
            validator.clear_expired(now)
            async with validator:
                unique = await validator.validate_batch(unique, now=now)
            logger.info("news_ingest_link_cache", **validator.stats())

        ranked = select_featured(unique, self.featured_per_news_type)

        try:
            result = await self.store.upsert_batch(ranked)
        except PersistenceError as exc:
            self._mark_persist_failed(summary, exc)
            return

        summary.total_inserted = result.inserted
        summary.total_updated = result.updated
        for news_type, inserted in result.inserted_by_news_type.items():
            summary.counts(news_type).inserted = inserted

    @staticmethod
    def _mark_persist_failed(summary: RunSummary, exc: Exception) -> None:
        logger.error("news_ingest_persist_failed", error=str(exc), error_type=type(exc).__name__)
        summary.persist_failed = True
        summary.persist_error = str(exc)
        summary.degraded = True

    # ---- run ---------------------------------------------------------------

    async def run(self) -> RunSummary:
        now = self._clock()
        summary = RunSummary(
            run_id=get_run_id(),
            started_at=now,
            total_sources=len(self.sources),
            link_validation=self.link_validation_enabled,
        )

        async with self.fetcher_factory(error_sink=self.store.log_feed_error) as fetcher:
            self._transition(RunState.HEALTH_CHECKING)
            try:
                await self._health_check(fetcher)
            except HealthCheckError:
                self._transition(RunState.FAILED)
                raise

            self._transition(RunState.FETCHING)
            results = await self._fetch_all(fetcher)

        failed = [r for r in results if r.failed]
        summary.failed_sources = [
            FailedSource(name=r.source.name, url=r.source.url, error=r.error or "") for r in failed
        ]
        if self.sources and len(failed) / len(self.sources) > self.degraded_failure_ratio:
            summary.degraded = True

        self._transition(RunState.PROCESSING)
        articles = self._process(results, summary, now)

        self._transition(RunState.PERSISTING)
        await self._persist(articles, summary, now)

        self._transition(RunState.CLEANING_UP)
        summary.purged = await self.store.purge_older_than(now - self.retention)

        summary.finished_at = self._clock()
        summary.state = RunState.DEGRADED if summary.degraded else RunState.DONE
        self._transition(summary.state)

        logger.info(
            "news_ingest_summary",
            state=summary.state.value,
            total_sources=summary.total_sources,
            failed_sources=[f.name for f in summary.failed_sources],
            total_fetched=summary.total_fetched,
            total_unique=summary.total_unique,
            total_inserted=summary.total_inserted,
            malformed_items=summary.malformed_items,
            per_news_type={k: v.model_dump() for k, v in summary.per_news_type.items()},
            persist_failed=summary.persist_failed,
            degraded=summary.degraded,
        )
        return summary


_link_validator: Optional[LinkValidator] = None


def get_link_validator() -> LinkValidator:
    """Process-wide validator; its TTL cache spans every run in this process."""
    global _link_validator
    if _link_validator is None:
        _link_validator = LinkValidator(enabled=True)
    return _link_validator


async def run_news_ingest(
    limit: Optional[int] = None,
    *,
    skip_link_validation: bool = False,
    sources_path: Optional[Path] = None,
    store: Optional[NewsStore] = None,
    **pipeline_kwargs: Any,
) -> RunSummary:
    """Build the pipeline from configuration and execute one run."""
    sources = get_all_news_sources(sources_path)
    if limit is not None:
        sources = sources[:limit]
    if not sources:
        logger.info("news_ingest_no_sources_configured")

    pipeline_kwargs.setdefault("link_validator", get_link_validator())

    pipeline = NewsIngestPipeline(
        sources=sources,
        store=store or NewsStore(),
        classifier=NewsClassifier(get_keyword_config()),
        link_validation_enabled=settings.LINK_VALIDATION_ENABLED and not skip_link_validation,
        **pipeline_kwargs,
    )
    return await pipeline.run()
