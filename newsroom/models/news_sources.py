"""
News sources registry loader.

Parses configs/news_sources.yml into immutable NewsSource objects with
structlog-backed validation and caching.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml

from newsroom.config import settings
from newsroom.core.logging import get_logger
from newsroom.models.news_article import NEWS_TYPES

logger = get_logger()

SOURCE_KINDS: Sequence[str] = ("rss", "reddit")
REDDIT_LISTING_URL = "https://www.reddit.com/r/{subreddit}/hot.json?limit={limit}"
REDDIT_LISTING_LIMIT = 25

# Discussion sources carry no location of their own; derive it from the bucket.
_NEWS_TYPE_LOCATIONS: Dict[str, str] = {
    "nyc": "New York",
    "costa-rica": "Costa Rica",
}


@dataclass(frozen=True)
class NewsSource:
    """Single feed definition. Immutable for the process lifetime."""

    key: str
    name: str
    url: str
    news_type: str
    kind: str = "rss"
    location: Optional[str] = None
    sub_location: Optional[str] = None
    language: str = "en"
    owner_company: Optional[str] = None
    priority: int = 5
    raw: Dict[str, object] = field(default_factory=dict, compare=False, hash=False)

    @property
    def max_items(self) -> int:
        """Items consumed per fetch; keeps one prolific source from dominating."""
        if self.priority >= 9:
            return 10
        if self.priority >= 7:
            return 7
        return 5

    @property
    def is_discussion(self) -> bool:
        return self.kind == "reddit"


def load_news_sources_config(path: Optional[Path] = None) -> Dict[str, object]:
    """
    Load raw YAML config.

    Returns empty dict if file is missing or invalid so the worker degrades
    to an empty run instead of crashing.
    """
    cfg_path = Path(path) if path else settings.NEWS_SOURCES_PATH
    try:
        text = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.error("news_sources_config_not_found", path=str(cfg_path))
        return {}
    except OSError as exc:
        logger.error("news_sources_config_read_error", path=str(cfg_path), error=str(exc))
        return {}

    try:
        data = yaml.safe_load(text) or {}
    except Exception as exc:
        logger.error("news_sources_config_parse_error", path=str(cfg_path), error=str(exc))
        return {}

    if not isinstance(data, dict):
        logger.error(
            "news_sources_config_invalid_root",
            path=str(cfg_path),
            root_type=type(data).__name__,
        )
        return {}

    return data


def _clean_str(value: object) -> Optional[str]:
    if isinstance(value, str):
        value = value.strip()
        if value:
            return value
    return None


def _coerce_priority(value: object, *, source: str) -> Optional[int]:
    try:
        priority = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        logger.warning("news_source_invalid_priority", source=source, value=value)
        return None
    if not 1 <= priority <= 10:
        logger.warning("news_source_priority_out_of_range", source=source, value=priority)
        return None
    return priority


def _resolve_url(raw: Dict[str, Any], kind: str) -> Optional[str]:
    if kind == "reddit":
        subreddit = _clean_str(raw.get("subreddit"))
        if subreddit:
            return REDDIT_LISTING_URL.format(subreddit=subreddit, limit=REDDIT_LISTING_LIMIT)
    return _clean_str(raw.get("url"))


def _validate_source(raw: Dict[str, Any], defaults: Dict[str, Any]) -> Optional[NewsSource]:
    """Validate raw dict and convert to NewsSource, logging issues."""
    merged: Dict[str, Any] = {**defaults, **raw}

    kind = (_clean_str(merged.get("kind")) or "rss").lower()
    if kind not in SOURCE_KINDS:
        logger.warning("news_source_invalid_kind", kind=kind, allowed=list(SOURCE_KINDS), raw=raw)
        return None

    url = _resolve_url(merged, kind)
    name = _clean_str(merged.get("name"))
    if name is None and kind == "reddit" and merged.get("subreddit"):
        name = f"r/{str(merged['subreddit']).strip()}"
    news_type = _clean_str(merged.get("news_type"))

    missing = [k for k, v in (("name", name), ("url", url), ("news_type", news_type)) if not v]
    if missing:
        logger.warning("news_source_invalid_missing_fields", missing=missing, raw=raw)
        return None

    if news_type not in NEWS_TYPES:
        logger.warning(
            "news_source_invalid_news_type",
            news_type=news_type,
            allowed=list(NEWS_TYPES),
            raw=raw,
        )
        return None

    if not url.startswith(("http://", "https://")):
        logger.warning("news_source_invalid_url", url=url, raw=raw)
        return None

    priority = _coerce_priority(merged.get("priority", 5), source=name)
    if priority is None:
        return None

    location = _clean_str(merged.get("location"))
    if location is None and kind == "reddit":
        location = _NEWS_TYPE_LOCATIONS.get(news_type)

    return NewsSource(
        key=_clean_str(merged.get("key")) or url,
        name=name,
        url=url,
        news_type=news_type,
        kind=kind,
        location=location,
        sub_location=_clean_str(merged.get("sub_location")),
        language=_clean_str(merged.get("language")) or "en",
        owner_company=_clean_str(merged.get("owner_company")),
        priority=priority,
        raw=dict(raw),
    )


@lru_cache(maxsize=8)
def _load_sources_from_path(path_str: str) -> tuple[NewsSource, ...]:
    cfg_path = Path(path_str)
    cfg = load_news_sources_config(cfg_path)
    raw_sources = cfg.get("sources", [])
    defaults = cfg.get("defaults") or {}
    defaults_dict = defaults if isinstance(defaults, dict) else {}

    if not isinstance(raw_sources, list):
        logger.error(
            "news_sources_invalid_sources_type",
            actual_type=type(raw_sources).__name__,
            path=str(cfg_path),
        )
        return ()

    result: List[NewsSource] = []
    seen_urls: set[str] = set()
    for idx, raw in enumerate(raw_sources):
        if not isinstance(raw, dict):
            logger.warning(
                "news_source_invalid_entry_type",
                index=idx,
                value_type=type(raw).__name__,
            )
            continue
        parsed = _validate_source(raw, defaults_dict)
        if not parsed:
            continue
        if parsed.url in seen_urls:
            logger.warning("news_source_duplicate_url", source=parsed.name, url=parsed.url)
            continue
        seen_urls.add(parsed.url)
        result.append(parsed)

    logger.info("news_sources_loaded", path=str(cfg_path), total=len(result))
    return tuple(result)


def get_all_news_sources(path: Optional[Path] = None) -> List[NewsSource]:
    """
    Public accessor for all valid news sources.

    Accepts optional path (useful for tests). Results are cached per-path.
    """
    cfg_path = Path(path) if path else settings.NEWS_SOURCES_PATH
    return list(_load_sources_from_path(str(cfg_path.resolve())))


def clear_news_sources_cache() -> None:
    """Reset LRU cache (useful for tests)."""
    _load_sources_from_path.cache_clear()
