"""
Link validation for ingested articles.

Each article URL gets a lightweight existence probe (HEAD, falling back to a
ranged GET when the server rejects HEAD). Broken links are looked up in the
web archive; a snapshot fills `alternate_url` while the article stays
`invalid`. Results are cached in-process by URL for a TTL.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from newsroom.config import settings
from newsroom.core.logging import get_logger
from newsroom.core.retry import BackoffPolicy, RetryExhaustedError, with_retry
from newsroom.models.news_article import Article

logger = get_logger()

HEAD_FALLBACK_STATUSES = frozenset({405, 501})
RANGE_HEADER = {"Range": "bytes=0-1024"}


class TransientProbeError(Exception):
    """Server-side failure (5xx) worth another attempt."""

    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, (httpx.TransportError, TransientProbeError))


@dataclass(frozen=True)
class LinkCheck:
    status: str
    checked_at: datetime
    status_code: Optional[int] = None
    alternate_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.status == "valid"


def apply_check(article: Article, check: LinkCheck) -> Article:
    article.link_status = check.status
    article.last_validated = check.checked_at
    article.alternate_url = None if check.is_valid else check.alternate_url
    return article


class LinkValidator:
    """
    Batch link checker with a TTL cache.

        async with LinkValidator() as validator:
            await validator.validate_batch(articles)
    """

    def __init__(
        self,
        *,
        enabled: bool = settings.LINK_VALIDATION_ENABLED,
        timeout_s: float = settings.LINK_TIMEOUT_S,
        max_attempts: int = settings.LINK_MAX_ATTEMPTS,
        backoff: Optional[BackoffPolicy] = None,
        batch_size: int = settings.LINK_BATCH_SIZE,
        cache_ttl: timedelta = timedelta(hours=settings.LINK_CACHE_TTL_HOURS),
        archive_url: str = settings.ARCHIVE_AVAILABILITY_URL,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.enabled = enabled
        self.timeout_s = timeout_s
        self.max_attempts = max_attempts
        self.backoff = backoff or BackoffPolicy(base_s=settings.LINK_BACKOFF_BASE_S, max_s=4.0)
        self.batch_size = max(1, int(batch_size))
        self.cache_ttl = cache_ttl
        self.archive_url = archive_url
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self._cache: Dict[str, Tuple[LinkCheck, datetime]] = {}
        self._hits = 0
        self._misses = 0

    async def __aenter__(self) -> "LinkValidator":
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_s,
                headers={"User-Agent": settings.USER_AGENT},
            )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ---- probing -----------------------------------------------------------

    async def _head_with_fallback(self, url: str) -> httpx.Response:
        if not self._client:
            raise RuntimeError("LinkValidator client not initialized")
        response = await self._client.head(url, follow_redirects=True, timeout=self.timeout_s)
        if response.status_code in HEAD_FALLBACK_STATUSES:
            response = await self._client.get(
                url,
                follow_redirects=True,
                headers=RANGE_HEADER,
                timeout=self.timeout_s,
            )
        return response

    async def _probe_once(self, url: str) -> int:
        response = await self._head_with_fallback(url)
        if response.status_code >= 500:
            raise TransientProbeError(response.status_code)
        return response.status_code

    async def lookup_archive(self, url: str) -> Optional[str]:
        """Closest available snapshot URL, or None."""
        if not self._client:
            raise RuntimeError("LinkValidator client not initialized")
        try:
            response = await self._client.get(
                self.archive_url,
                params={"url": url},
                timeout=self.timeout_s,
            )
            response.raise_for_status()
            payload: Any = response.json()
        except Exception as exc:
            logger.warning("link_archive_lookup_failed", url=url, error=str(exc))
            return None

        snapshots = payload.get("archived_snapshots") if isinstance(payload, dict) else None
        closest = snapshots.get("closest") if isinstance(snapshots, dict) else None
        if isinstance(closest, dict) and closest.get("available") and closest.get("url"):
            return str(closest["url"])
        return None

    async def _check_uncached(self, url: str, now: datetime) -> LinkCheck:
        status_code: Optional[int] = None
        error: Optional[str] = None
        try:
            status_code = await with_retry(
                lambda: self._probe_once(url),
                max_attempts=self.max_attempts,
                backoff=self.backoff,
                retry_on=_is_transient,
                sleep=self._sleep,
                label="link_probe",
            )
        except RetryExhaustedError as exc:
            last = exc.last_error
            if isinstance(last, TransientProbeError):
                status_code = last.status_code
            error = str(last) or type(last).__name__
        except httpx.HTTPError as exc:
            error = str(exc) or type(exc).__name__

        if status_code is not None and 200 <= status_code < 400:
            return LinkCheck(status="valid", checked_at=now, status_code=status_code)

        logger.info("link_probe_invalid", url=url, status_code=status_code, error=error)
        alternate = await self.lookup_archive(url)
        return LinkCheck(
            status="invalid",
            checked_at=now,
            status_code=status_code,
            alternate_url=alternate,
            error=error,
        )

    async def check_url(self, url: str, now: Optional[datetime] = None) -> LinkCheck:
        now = now or datetime.now(timezone.utc)
        cached = self._cache.get(url)
        if cached is not None and cached[1] > now:
            self._hits += 1
            return cached[0]
        self._misses += 1
        check = await self._check_uncached(url, now)
        self._cache[url] = (check, now + self.cache_ttl)
        return check

    # ---- batch -------------------------------------------------------------

    async def validate_batch(
        self,
        articles: Sequence[Article],
        now: Optional[datetime] = None,
    ) -> List[Article]:
        """
        Resolve link_status for every article.

        When disabled, articles are returned untouched (`unchecked`).
        """
        items = list(articles)
        if not self.enabled:
            logger.info("link_validation_skipped", total=len(items))
            return items

        now = now or datetime.now(timezone.utc)
        for start in range(0, len(items), self.batch_size):
            batch = items[start : start + self.batch_size]
            results = await asyncio.gather(
                *(self.check_url(article.source_url, now) for article in batch),
                return_exceptions=True,
            )
            for article, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.warning(
                        "link_probe_failed",
                        url=article.source_url,
                        error=str(result),
                        error_type=type(result).__name__,
                    )
                    apply_check(article, LinkCheck(status="invalid", checked_at=now, error=str(result)))
                else:
                    apply_check(article, result)

        valid = sum(1 for a in items if a.link_status == "valid")
        logger.info(
            "link_validation_completed",
            total=len(items),
            valid=valid,
            invalid=len(items) - valid,
            archived=sum(1 for a in items if a.alternate_url),
        )
        return items

    # ---- cache maintenance -------------------------------------------------

    def clear_expired(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        expired = [url for url, (_, expires_at) in self._cache.items() if expires_at <= now]
        for url in expired:
            del self._cache[url]
        return len(expired)

    def stats(self) -> Dict[str, int]:
        checks = [check for check, _ in self._cache.values()]
        return {
            "size": len(checks),
            "valid": sum(1 for c in checks if c.is_valid),
            "invalid": sum(1 for c in checks if not c.is_valid),
            "hits": self._hits,
            "misses": self._misses,
        }
