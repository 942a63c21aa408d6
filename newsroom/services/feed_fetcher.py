from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import feedparser
import httpx

from newsroom.config import settings
from newsroom.core.logging import get_logger
from newsroom.core.retry import BackoffPolicy, RetryExhaustedError, with_retry
from newsroom.models.news_article import FeedError
from newsroom.models.news_sources import NewsSource

logger = get_logger()

ErrorSink = Callable[[FeedError], Awaitable[None]]


class FeedFetchError(Exception):
    """Network, HTTP status or parse failure for one fetch attempt."""

    def __init__(self, message: str, *, source: Optional[NewsSource] = None):
        super().__init__(message)
        self.source = source


class EmptyFeedError(FeedFetchError):
    """The feed parsed but carried no items; treated as transient."""


@dataclass
class SourceFetchResult:
    source: NewsSource
    items: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def _parse_reddit_listing(payload: Any) -> List[Dict[str, Any]]:
    if not isinstance(payload, dict):
        raise FeedFetchError("reddit_listing_invalid_root")
    data = payload.get("data")
    children = data.get("children") if isinstance(data, dict) else None
    if not isinstance(children, list):
        raise FeedFetchError("reddit_listing_missing_children")
    return [
        child["data"]
        for child in children
        if isinstance(child, dict) and isinstance(child.get("data"), dict)
    ]


def _parse_feed(content: bytes) -> List[Dict[str, Any]]:
    parsed = feedparser.parse(content)
    entries = list(getattr(parsed, "entries", []) or [])
    if not entries and getattr(parsed, "bozo", False):
        raise FeedFetchError(f"feed_parse_error: {parsed.get('bozo_exception')}")
    return entries


class FeedFetcher:
    """
    Retrieves raw items for one source at a time.

    The HTTP client is owned by the async context manager:

        async with FeedFetcher(error_sink=store.log_feed_error) as fetcher:
            items = await fetcher.fetch(source)
    """

    def __init__(
        self,
        *,
        timeout_s: float = settings.FETCH_TIMEOUT_S,
        max_attempts: int = settings.FETCH_MAX_ATTEMPTS,
        backoff: Optional[BackoffPolicy] = None,
        error_sink: Optional[ErrorSink] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.timeout_s = timeout_s
        self.max_attempts = max_attempts
        self.backoff = backoff or BackoffPolicy(
            base_s=settings.FETCH_BACKOFF_BASE_S,
            max_s=settings.FETCH_BACKOFF_MAX_S,
        )
        self.error_sink = error_sink
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    async def __aenter__(self) -> "FeedFetcher":
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_s,
                follow_redirects=True,
                headers={"User-Agent": settings.USER_AGENT},
            )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _fetch_once(self, source: NewsSource) -> List[Dict[str, Any]]:
        if not self._client:
            raise RuntimeError("FeedFetcher client not initialized")
        try:
            headers = {"Accept": "application/json"} if source.is_discussion else None
            response = await self._client.get(source.url, headers=headers, timeout=self.timeout_s)
            response.raise_for_status()
            if source.is_discussion:
                items = _parse_reddit_listing(response.json())
            else:
                items = _parse_feed(response.content)
        except FeedFetchError:
            raise
        except (httpx.HTTPError, ValueError) as exc:
            raise FeedFetchError(f"{type(exc).__name__}: {exc}", source=source) from exc

        if not items:
            raise EmptyFeedError("empty_feed", source=source)
        return items

    async def fetch_source(self, source: NewsSource) -> SourceFetchResult:
        """Fetch with retries; exhausted retries become a recorded FeedError, not an exception."""
        try:
            items = await with_retry(
                lambda: self._fetch_once(source),
                max_attempts=self.max_attempts,
                backoff=self.backoff,
                retry_on=lambda exc: isinstance(exc, FeedFetchError),
                sleep=self._sleep,
                label=f"feed:{source.name}",
            )
        except RetryExhaustedError as exc:
            message = str(exc.last_error) or type(exc.last_error).__name__
            logger.warning(
                "feed_fetch_failed",
                source=source.name,
                url=source.url,
                attempts=exc.attempts,
                error=message,
            )
            await self._report(source, message)
            return SourceFetchResult(source=source, error=message)
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            logger.error(
                "feed_fetch_unexpected_error",
                source=source.name,
                url=source.url,
                error=message,
            )
            await self._report(source, message)
            return SourceFetchResult(source=source, error=message)

        capped = items[: source.max_items]
        logger.info(
            "feed_fetch_succeeded",
            source=source.name,
            received=len(items),
            kept=len(capped),
        )
        return SourceFetchResult(source=source, items=capped)

    async def fetch(self, source: NewsSource) -> List[Dict[str, Any]]:
        result = await self.fetch_source(source)
        return result.items

    async def probe(self, source: NewsSource) -> bool:
        """Single unretried request used by the health check."""
        try:
            await self._fetch_once(source)
            return True
        except Exception as exc:
            logger.warning("feed_probe_failed", source=source.name, url=source.url, error=str(exc))
            return False

    async def _report(self, source: NewsSource, message: str) -> None:
        if self.error_sink is None:
            return
        try:
            await self.error_sink(
                FeedError(
                    source_name=source.name,
                    source_url=source.url,
                    error_message=message,
                    error_type="fetch_failure",
                )
            )
        except Exception as exc:
            logger.warning("feed_error_sink_failed", source=source.name, error=str(exc))
