from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List

import httpx
import pytest

from newsroom.config import CONFIGS_DIR
from newsroom.core.retry import BackoffPolicy
from newsroom.models.news_article import Article, FeedError
from newsroom.models.news_keywords import get_keyword_config
from newsroom.models.news_sources import NewsSource
from newsroom.services import news_ingest_service
from newsroom.services.feed_fetcher import FeedFetcher, SourceFetchResult
from newsroom.services.link_validation_service import LinkValidator
from newsroom.services.news_classification_service import NewsClassifier
from newsroom.services.news_ingest_service import (
    HealthCheckError,
    NewsIngestPipeline,
    RunState,
    get_link_validator,
    run_news_ingest,
)
from newsroom.services.news_store import PersistenceError, UpsertResult

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _source(name: str, priority: int = 8, news_type: str = "world") -> NewsSource:
    url = f"https://{name.lower()}.example/rss"
    return NewsSource(key=url, name=name, url=url, news_type=news_type, priority=priority)


def _rss(*links: str) -> bytes:
    items = "".join(f"<item><title>Story {link}</title><link>{link}</link></item>" for link in links)
    return f'<?xml version="1.0"?><rss version="2.0"><channel><title>t</title>{items}</channel></rss>'.encode()


class FakeStore:
    def __init__(self, *, ping_results: List[bool] | None = None, existing: set | None = None):
        self.ping_results = list(ping_results or [True])
        self.existing = existing or set()
        self.upserted: List[Article] = []
        self.feed_errors: List[FeedError] = []
        self.purged_before: List[datetime] = []
        self.upsert_error: Exception | None = None

    async def ping(self) -> bool:
        return self.ping_results.pop(0) if len(self.ping_results) > 1 else self.ping_results[0]

    async def existing_urls_since(self, since: datetime) -> set:
        return set(self.existing)

    async def upsert_batch(self, articles) -> UpsertResult:
        if self.upsert_error:
            raise self.upsert_error
        result = UpsertResult()
        for article in articles:
            self.upserted.append(article)
            result.inserted += 1
            result.inserted_by_news_type[article.news_type] = result.inserted_by_news_type.get(article.news_type, 0) + 1
        return result

    async def purge_older_than(self, cutoff: datetime) -> int:
        self.purged_before.append(cutoff)
        return 0

    async def log_feed_error(self, error: FeedError) -> None:
        self.feed_errors.append(error)


class UrlClient:
    def __init__(self, routes: Dict[str, object]):
        self.routes = routes
        self.calls: List[str] = []

    async def get(self, url, **kwargs):
        self.calls.append(url)
        target = self.routes[url]
        if isinstance(target, Exception):
            raise target
        return httpx.Response(200, content=target, request=httpx.Request("GET", url))

    async def aclose(self):
        return None


class FakeValidator:
    def __init__(self, **kwargs):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def validate_batch(self, articles, now=None):
        for article in articles:
            article.link_status = "valid"
            article.last_validated = now
        return list(articles)

    def clear_expired(self, now=None):
        return 0

    def stats(self):
        return {"size": 0, "hits": 0, "misses": 0}


class Sleeps:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture(scope="module")
def classifier() -> NewsClassifier:
    return NewsClassifier(get_keyword_config(CONFIGS_DIR / "news_keywords.yml"))


def _pipeline(sources, store, classifier, client, sleeps=None, **kwargs) -> NewsIngestPipeline:
    sleeps = sleeps or Sleeps()

    def fetcher_factory(**kw):
        return FeedFetcher(
            client=client,
            sleep=sleeps,
            max_attempts=3,
            backoff=BackoffPolicy(base_s=1.0, max_s=8.0, jitter_fraction=0.0),
            **kw,
        )

    return NewsIngestPipeline(
        sources=sources,
        store=store,
        classifier=classifier,
        fetcher_factory=fetcher_factory,
        validator_factory=FakeValidator,
        link_validation_enabled=kwargs.pop("link_validation_enabled", True),
        sleep=sleeps,
        clock=lambda: NOW,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_full_run_dedupes_across_sources_and_survives_timeout(classifier):
    a, b, c = _source("A", priority=10), _source("B", priority=8), _source("C", priority=5)
    client = UrlClient(
        {
            a.url: _rss("https://news.example/shared", "https://news.example/a2"),
            b.url: _rss("https://news.example/shared"),
            c.url: httpx.ReadTimeout("timed out"),
        }
    )
    store = FakeStore()
    pipeline = _pipeline([a, b, c], store, classifier, client)

    summary = await pipeline.run()

    urls = [art.source_url for art in store.upserted]
    assert sorted(urls) == ["https://news.example/a2", "https://news.example/shared"]
    shared = next(art for art in store.upserted if art.source_url == "https://news.example/shared")
    assert shared.source == "A"
    assert all(art.link_status == "valid" for art in store.upserted)

    assert client.calls.count(c.url) == 3
    assert [e.source_name for e in store.feed_errors] == ["C"]
    assert store.feed_errors[0].error_type == "fetch_failure"
    assert all(art.source != "C" for art in store.upserted)

    assert summary.state == RunState.DONE
    assert pipeline.state == RunState.DONE
    assert summary.degraded is False
    assert [f.name for f in summary.failed_sources] == ["C"]
    assert summary.per_news_type["world"].fetched == 3
    assert summary.per_news_type["world"].deduped == 2
    assert summary.per_news_type["world"].inserted == 2
    assert summary.exit_code == 0
    assert store.purged_before == [NOW - timedelta(days=90)]


@pytest.mark.asyncio
async def test_existing_urls_are_not_reinserted(classifier):
    a = _source("A", priority=10)
    client = UrlClient({a.url: _rss("https://news.example/old", "https://news.example/new")})
    store = FakeStore(existing={"https://news.example/old"})

    summary = await _pipeline([a], store, classifier, client).run()

    assert [art.source_url for art in store.upserted] == ["https://news.example/new"]
    assert summary.total_inserted == 1


@pytest.mark.asyncio
async def test_featured_flags_applied_before_upsert(classifier):
    a = _source("A", priority=10)
    links = [f"https://news.example/{i}" for i in range(8)]
    client = UrlClient({a.url: _rss(*links)})
    store = FakeStore()

    await _pipeline([a], store, classifier, client, featured_per_news_type=3).run()

    assert sum(1 for art in store.upserted if art.is_featured) == 3


@pytest.mark.asyncio
async def test_majority_failure_marks_run_degraded(classifier):
    a, b, c = _source("A", priority=10), _source("B"), _source("C")
    client = UrlClient(
        {
            a.url: _rss("https://news.example/1"),
            b.url: httpx.ConnectError("refused"),
            c.url: httpx.ConnectError("refused"),
        }
    )
    store = FakeStore()

    summary = await _pipeline([a, b, c], store, classifier, client).run()

    assert summary.degraded is True
    assert summary.state == RunState.DEGRADED
    assert summary.exit_code == 0
    assert len(store.upserted) == 1


@pytest.mark.asyncio
async def test_health_check_failure_retries_once_then_raises(classifier):
    a = _source("A", priority=10)
    client = UrlClient({a.url: _rss("https://news.example/1")})
    store = FakeStore(ping_results=[False])
    sleeps = Sleeps()
    pipeline = _pipeline([a], store, classifier, client, sleeps=sleeps, health_retry_delay_s=30)

    with pytest.raises(HealthCheckError):
        await pipeline.run()

    assert sleeps.calls == [30]
    assert pipeline.state == RunState.FAILED
    assert store.feed_errors[0].error_type == "fatal_error"
    assert store.upserted == []


@pytest.mark.asyncio
async def test_health_check_recovers_on_second_attempt(classifier):
    a = _source("A", priority=10)
    client = UrlClient({a.url: _rss("https://news.example/1")})
    store = FakeStore(ping_results=[False, True])
    sleeps = Sleeps()

    summary = await _pipeline([a], store, classifier, client, sleeps=sleeps).run()

    assert summary.state == RunState.DONE
    assert sleeps.calls[0] == 30


@pytest.mark.asyncio
async def test_persistence_failure_is_reported_not_raised(classifier):
    a = _source("A", priority=10)
    client = UrlClient({a.url: _rss("https://news.example/1")})
    store = FakeStore()
    store.upsert_error = PersistenceError("connection reset")

    summary = await _pipeline([a], store, classifier, client).run()

    assert summary.persist_failed is True
    assert summary.exit_code == 2
    assert summary.state == RunState.DEGRADED
    assert store.purged_before, "cleanup still runs after a failed upsert"


@pytest.mark.asyncio
async def test_source_batches_pause_between_batches(classifier):
    sources = [_source(f"S{i}", priority=10 - i) for i in range(5)]
    client = UrlClient({s.url: _rss(f"https://news.example/{s.name}") for s in sources})
    store = FakeStore()
    sleeps = Sleeps()

    summary = await _pipeline(
        sources, store, classifier, client, sleeps=sleeps, source_batch_size=2, source_batch_pause_s=1.0
    ).run()

    assert sleeps.calls == [1.0, 1.0]
    assert summary.total_inserted == 5


@pytest.mark.asyncio
async def test_skipping_link_validation_leaves_unchecked(classifier):
    a = _source("A", priority=10)
    client = UrlClient({a.url: _rss("https://news.example/1")})
    store = FakeStore()

    await _pipeline([a], store, classifier, client, link_validation_enabled=False).run()

    assert store.upserted[0].link_status == "unchecked"


@pytest.mark.asyncio
async def test_run_news_ingest_applies_limit(monkeypatch, classifier):
    sources = [_source("A", priority=10), _source("B")]
    seen = {}

    class DummyPipeline:
        def __init__(self, *, sources, store, classifier, link_validation_enabled, **kwargs):
            seen["sources"] = sources
            seen["link_validation_enabled"] = link_validation_enabled

        async def run(self):
            return news_ingest_service.RunSummary(total_sources=len(seen["sources"]))

    monkeypatch.setattr(news_ingest_service, "get_all_news_sources", lambda path=None: sources)
    monkeypatch.setattr(news_ingest_service, "NewsIngestPipeline", DummyPipeline)

    summary = await run_news_ingest(limit=1, skip_link_validation=True, store=FakeStore())

    assert summary.total_sources == 1
    assert [s.name for s in seen["sources"]] == ["A"]
    assert seen["link_validation_enabled"] is False


@pytest.mark.asyncio
async def test_crashed_fetch_task_counts_as_failed_source(classifier):
    a, b = _source("A", priority=10), _source("B")

    class CrashingFetcher:
        def __init__(self, **kwargs):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def probe(self, source):
            return True

        async def fetch_source(self, source):
            if source.name == "B":
                raise RuntimeError("bug")
            return SourceFetchResult(
                source=source,
                items=[{"title": "ok", "link": "https://news.example/ok"}],
            )

    pipeline = NewsIngestPipeline(
        sources=[a, b],
        store=FakeStore(),
        classifier=classifier,
        fetcher_factory=CrashingFetcher,
        link_validation_enabled=False,
        sleep=Sleeps(),
        clock=lambda: NOW,
    )

    summary = await pipeline.run()

    assert [f.name for f in summary.failed_sources] == ["B"]
    assert summary.total_unique == 1


class HeadCounter:
    """Link-check client: every HEAD succeeds and is counted per URL."""

    def __init__(self):
        self.heads: Dict[str, int] = {}

    async def head(self, url, **kwargs):
        self.heads[url] = self.heads.get(url, 0) + 1
        return httpx.Response(200, request=httpx.Request("HEAD", url))

    async def get(self, url, **kwargs):
        return httpx.Response(404, request=httpx.Request("GET", url))

    async def aclose(self):
        return None


@pytest.mark.asyncio
async def test_link_cache_survives_between_runs(classifier):
    a = _source("A", priority=10)
    feed_client = UrlClient({a.url: _rss("https://news.example/shared")})
    link_client = HeadCounter()
    validator = LinkValidator(enabled=True, client=link_client)
    store = FakeStore()

    def fetcher_factory(**kw):
        return FeedFetcher(client=feed_client, sleep=Sleeps(), **kw)

    pipeline = NewsIngestPipeline(
        sources=[a],
        store=store,
        classifier=classifier,
        fetcher_factory=fetcher_factory,
        link_validator=validator,
        link_validation_enabled=True,
        sleep=Sleeps(),
        clock=lambda: NOW,
    )

    await pipeline.run()
    await pipeline.run()

    assert link_client.heads == {"https://news.example/shared": 1}
    assert [art.link_status for art in store.upserted] == ["valid", "valid"]
    assert validator.stats()["hits"] == 1


def test_process_wide_link_validator_is_reused():
    assert get_link_validator() is get_link_validator()


@pytest.mark.asyncio
async def test_run_news_ingest_shares_link_validator(monkeypatch):
    seen = []

    class DummyPipeline:
        def __init__(self, *, link_validator, **kwargs):
            seen.append(link_validator)

        async def run(self):
            return news_ingest_service.RunSummary()

    monkeypatch.setattr(news_ingest_service, "get_all_news_sources", lambda path=None: [_source("A")])
    monkeypatch.setattr(news_ingest_service, "NewsIngestPipeline", DummyPipeline)

    await run_news_ingest(store=FakeStore())
    await run_news_ingest(store=FakeStore())

    assert seen[0] is seen[1] is get_link_validator()
