from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Tuple

import httpx
import pytest

from newsroom.core.retry import BackoffPolicy
from newsroom.models.news_article import Article
from newsroom.services.link_validation_service import LinkValidator

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
ARCHIVE = "https://archive.test/wayback/available"


class RoutingClient:
    """Minimal async client stand-in; `routes` maps (method, url) to a status, payload or exception."""

    def __init__(self, routes: Dict[Tuple[str, str], Any]):
        self.routes = routes
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def _respond(self, method: str, url: str, **kwargs) -> httpx.Response:
        self.calls.append((method, url, kwargs))
        target = self.routes.get((method, url), 404)
        if callable(target):
            target = target()
        if isinstance(target, Exception):
            raise target
        request = httpx.Request(method, url)
        if isinstance(target, dict):
            return httpx.Response(200, json=target, request=request)
        return httpx.Response(target, request=request)

    async def head(self, url, **kwargs):
        return self._respond("HEAD", url, **kwargs)

    async def get(self, url, **kwargs):
        if url == ARCHIVE:
            url = f"{ARCHIVE}?url={kwargs['params']['url']}"
        return self._respond("GET", url, **kwargs)

    async def aclose(self):
        return None

    def count(self, method: str, url: str) -> int:
        return sum(1 for m, u, _ in self.calls if m == method and u == url)


async def _no_sleep(_: float) -> None:
    return None


def _validator(client: RoutingClient, **kwargs) -> LinkValidator:
    return LinkValidator(
        enabled=kwargs.pop("enabled", True),
        client=client,
        archive_url=ARCHIVE,
        sleep=_no_sleep,
        backoff=BackoffPolicy(base_s=0.0, max_s=0.0, jitter_fraction=0.0),
        **kwargs,
    )


def _article(url: str) -> Article:
    return Article(
        title="t",
        content="c",
        source="S",
        source_url=url,
        published_date=NOW,
        news_type="world",
    )


def _snapshot(url: str) -> Dict[str, Any]:
    return {"archived_snapshots": {"closest": {"available": True, "url": url, "status": "200"}}}


@pytest.mark.asyncio
async def test_reachable_link_is_valid():
    url = "https://ok.example/a"
    client = RoutingClient({("HEAD", url): 200})

    async with _validator(client) as validator:
        (article,) = await validator.validate_batch([_article(url)], now=NOW)

    assert article.link_status == "valid"
    assert article.last_validated == NOW
    assert article.alternate_url is None


@pytest.mark.asyncio
async def test_head_rejected_falls_back_to_ranged_get():
    url = "https://nohead.example/a"
    client = RoutingClient({("HEAD", url): 405, ("GET", url): 206})

    async with _validator(client) as validator:
        (article,) = await validator.validate_batch([_article(url)], now=NOW)

    assert article.link_status == "valid"
    get_call = next(kw for m, u, kw in client.calls if m == "GET" and u == url)
    assert get_call["headers"] == {"Range": "bytes=0-1024"}


@pytest.mark.asyncio
async def test_broken_link_with_snapshot_stays_invalid_with_alternate():
    url = "https://gone.example/a"
    snapshot = "http://web.archive.org/web/2024/https://gone.example/a"
    client = RoutingClient(
        {
            ("HEAD", url): 404,
            ("GET", f"{ARCHIVE}?url={url}"): _snapshot(snapshot),
        }
    )

    async with _validator(client) as validator:
        (article,) = await validator.validate_batch([_article(url)], now=NOW)

    assert article.link_status == "invalid"
    assert article.alternate_url == snapshot
    assert client.count("HEAD", url) == 1


@pytest.mark.asyncio
async def test_transient_errors_are_retried_then_marked_invalid():
    url = "https://flaky.example/a"
    client = RoutingClient(
        {
            ("HEAD", url): httpx.ConnectTimeout("slow"),
            ("GET", f"{ARCHIVE}?url={url}"): {"archived_snapshots": {}},
        }
    )

    async with _validator(client, max_attempts=2) as validator:
        (article,) = await validator.validate_batch([_article(url)], now=NOW)

    assert article.link_status == "invalid"
    assert article.alternate_url is None
    assert client.count("HEAD", url) == 2


@pytest.mark.asyncio
async def test_server_error_retried_until_success():
    url = "https://recovering.example/a"
    responses = iter([503, 200])
    client = RoutingClient({("HEAD", url): lambda: next(responses)})

    async with _validator(client, max_attempts=2) as validator:
        (article,) = await validator.validate_batch([_article(url)], now=NOW)

    assert article.link_status == "valid"


@pytest.mark.asyncio
async def test_archive_failure_is_contained():
    url = "https://gone.example/b"
    client = RoutingClient(
        {
            ("HEAD", url): 410,
            ("GET", f"{ARCHIVE}?url={url}"): httpx.ConnectError("archive down"),
        }
    )

    async with _validator(client) as validator:
        (article,) = await validator.validate_batch([_article(url)], now=NOW)

    assert article.link_status == "invalid"
    assert article.alternate_url is None


@pytest.mark.asyncio
async def test_every_article_resolved_and_one_failure_does_not_abort_batch():
    urls = [f"https://site.example/{i}" for i in range(25)]
    routes: Dict[Tuple[str, str], Any] = {("HEAD", u): 200 for u in urls}
    routes[("HEAD", urls[3])] = RuntimeError("unexpected")
    client = RoutingClient(routes)

    async with _validator(client, batch_size=10) as validator:
        articles = await validator.validate_batch([_article(u) for u in urls], now=NOW)

    assert all(a.link_status in {"valid", "invalid"} for a in articles)
    assert articles[3].link_status == "invalid"
    assert sum(1 for a in articles if a.link_status == "valid") == 24


@pytest.mark.asyncio
async def test_results_are_cached_until_ttl_expires():
    url = "https://cached.example/a"
    client = RoutingClient({("HEAD", url): 200})

    async with _validator(client, cache_ttl=timedelta(hours=24)) as validator:
        await validator.validate_batch([_article(url)], now=NOW)
        await validator.validate_batch([_article(url)], now=NOW + timedelta(hours=1))
        assert client.count("HEAD", url) == 1
        assert validator.stats()["hits"] == 1

        await validator.validate_batch([_article(url)], now=NOW + timedelta(hours=25))
        assert client.count("HEAD", url) == 2


@pytest.mark.asyncio
async def test_clear_expired_and_stats():
    client = RoutingClient({("HEAD", "https://a.example/"): 200, ("HEAD", "https://b.example/"): 404})

    async with _validator(client, cache_ttl=timedelta(hours=1)) as validator:
        await validator.check_url("https://a.example/", NOW)
        await validator.check_url("https://b.example/", NOW + timedelta(minutes=30))

        stats = validator.stats()
        assert stats["size"] == 2
        assert stats["valid"] == 1
        assert stats["invalid"] == 1

        removed = validator.clear_expired(NOW + timedelta(minutes=61))
        assert removed == 1
        assert validator.stats()["size"] == 1


@pytest.mark.asyncio
async def test_disabled_validator_leaves_articles_unchecked():
    client = RoutingClient({})

    async with _validator(client, enabled=False) as validator:
        (article,) = await validator.validate_batch([_article("https://x.example/")], now=NOW)

    assert article.link_status == "unchecked"
    assert client.calls == []
