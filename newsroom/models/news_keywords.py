"""
Classifier keyword tables.

Loads configs/news_keywords.yml once into an immutable KeywordConfig that is
passed explicitly into NewsClassifier.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from newsroom.config import settings
from newsroom.core.logging import get_logger

logger = get_logger()

DEFAULT_FALLBACK_CATEGORY = "general"

# (threshold, boost) pairs, evaluated in order.
Tiers = Tuple[Tuple[float, int], ...]


@dataclass(frozen=True)
class ImportanceRules:
    base: int = 5
    high_keywords: Tuple[str, ...] = ()
    high_boost: int = 3
    medium_keywords: Tuple[str, ...] = ()
    medium_boost: int = 1
    financial_keywords: Tuple[str, ...] = ()
    financial_boost: int = 2
    upvotes: Tiers = ()
    comments: Tiers = ()
    recency: Mapping[str, Tiers] = field(default_factory=dict)
    sub_location_boost: int = 1
    multi_company_threshold: int = 2
    multi_company_boost: int = 1


@dataclass(frozen=True)
class SentimentRules:
    positive: Tuple[str, ...] = ()
    negative: Tuple[str, ...] = ()
    margin: int = 0


@dataclass(frozen=True)
class KeywordConfig:
    categories: Mapping[str, Tuple[str, ...]]
    category_keywords: Mapping[str, Tuple[str, ...]]
    fallback_categories: Mapping[str, str]
    ai_tags: Tuple[str, ...] = ()
    location_keywords: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    companies: Tuple[str, ...] = ()
    sentiment: SentimentRules = field(default_factory=SentimentRules)
    importance: ImportanceRules = field(default_factory=ImportanceRules)

    def categories_for(self, news_type: str) -> Tuple[str, ...]:
        return self.categories.get(news_type, ())

    def fallback_for(self, news_type: str) -> str:
        return self.fallback_categories.get(
            news_type,
            self.fallback_categories.get("default", DEFAULT_FALLBACK_CATEGORY),
        )


def _str_tuple(value: Any, *, key: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)):
        logger.warning("news_keywords_invalid_list", key=key, value_type=type(value).__name__)
        return ()
    out = []
    for item in value:
        if isinstance(item, str) and item.strip():
            out.append(item.strip().lower() if key != "companies" else item.strip())
    return tuple(out)


def _str_mapping(value: Any, *, key: str) -> Dict[str, Tuple[str, ...]]:
    if not isinstance(value, dict):
        if value is not None:
            logger.warning("news_keywords_invalid_mapping", key=key, value_type=type(value).__name__)
        return {}
    return {str(k): _str_tuple(v, key=f"{key}.{k}") for k, v in value.items()}


def _tiers(value: Any, *, key: str) -> Tiers:
    if not isinstance(value, (list, tuple)):
        return ()
    out = []
    for pair in value:
        try:
            threshold, boost = pair
            out.append((float(threshold), int(boost)))
        except (TypeError, ValueError):
            logger.warning("news_keywords_invalid_tier", key=key, value=pair)
    return tuple(out)


def _importance(raw: Any) -> ImportanceRules:
    if not isinstance(raw, dict):
        return ImportanceRules()
    recency_raw = raw.get("recency") or {}
    recency = {
        str(kind): _tiers(tiers, key=f"importance.recency.{kind}")
        for kind, tiers in (recency_raw.items() if isinstance(recency_raw, dict) else [])
    }
    return ImportanceRules(
        base=int(raw.get("base", 5)),
        high_keywords=_str_tuple(raw.get("high_keywords"), key="importance.high_keywords"),
        high_boost=int(raw.get("high_boost", 3)),
        medium_keywords=_str_tuple(raw.get("medium_keywords"), key="importance.medium_keywords"),
        medium_boost=int(raw.get("medium_boost", 1)),
        financial_keywords=_str_tuple(raw.get("financial_keywords"), key="importance.financial_keywords"),
        financial_boost=int(raw.get("financial_boost", 2)),
        upvotes=_tiers(raw.get("upvotes"), key="importance.upvotes"),
        comments=_tiers(raw.get("comments"), key="importance.comments"),
        recency=recency,
        sub_location_boost=int(raw.get("sub_location_boost", 1)),
        multi_company_threshold=int(raw.get("multi_company_threshold", 2)),
        multi_company_boost=int(raw.get("multi_company_boost", 1)),
    )


def parse_keyword_config(data: Mapping[str, Any]) -> KeywordConfig:
    """Build a KeywordConfig from an already-parsed mapping."""
    fallback_raw = data.get("fallback_categories") or {}
    fallbacks = {
        str(k): str(v).strip()
        for k, v in (fallback_raw.items() if isinstance(fallback_raw, dict) else [])
        if isinstance(v, str) and v.strip()
    }
    fallbacks.setdefault("default", DEFAULT_FALLBACK_CATEGORY)

    sentiment_raw = data.get("sentiment") or {}
    if not isinstance(sentiment_raw, dict):
        sentiment_raw = {}
    sentiment = SentimentRules(
        positive=_str_tuple(sentiment_raw.get("positive"), key="sentiment.positive"),
        negative=_str_tuple(sentiment_raw.get("negative"), key="sentiment.negative"),
        margin=int(sentiment_raw.get("margin", 0)),
    )

    location_raw = data.get("location_keywords")
    location_keywords = _str_mapping(location_raw, key="location_keywords")

    return KeywordConfig(
        categories=_str_mapping(data.get("categories"), key="categories"),
        category_keywords=_str_mapping(data.get("category_keywords"), key="category_keywords"),
        fallback_categories=fallbacks,
        ai_tags=_str_tuple(data.get("ai_tags"), key="ai_tags"),
        location_keywords=location_keywords,
        companies=_str_tuple(data.get("companies"), key="companies"),
        sentiment=sentiment,
        importance=_importance(data.get("importance")),
    )


@lru_cache(maxsize=4)
def _load_from_path(path_str: str) -> KeywordConfig:
    cfg_path = Path(path_str)
    try:
        data = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
    except FileNotFoundError:
        logger.error("news_keywords_config_not_found", path=path_str)
        data = {}
    except Exception as exc:
        logger.error("news_keywords_config_parse_error", path=path_str, error=str(exc))
        data = {}

    if not isinstance(data, dict):
        logger.error("news_keywords_config_invalid_root", path=path_str, root_type=type(data).__name__)
        data = {}

    config = parse_keyword_config(data)
    logger.info(
        "news_keywords_loaded",
        path=path_str,
        news_types=len(config.categories),
        categories=len(config.category_keywords),
    )
    return config


def get_keyword_config(path: Optional[Path] = None) -> KeywordConfig:
    cfg_path = Path(path) if path else settings.NEWS_KEYWORDS_PATH
    return _load_from_path(str(cfg_path.resolve()))


def clear_keyword_config_cache() -> None:
    _load_from_path.cache_clear()
