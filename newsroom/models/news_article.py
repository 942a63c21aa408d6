from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

NewsType = Literal["ai", "world", "business", "nyc", "costa-rica", "local"]
Sentiment = Literal["positive", "negative", "neutral"]
LinkStatus = Literal["unchecked", "valid", "invalid"]
FeedErrorType = Literal["fetch_failure", "fatal_error"]

NEWS_TYPES: tuple[str, ...] = ("ai", "world", "business", "nyc", "costa-rica", "local")
SUMMARY_MAX_CHARS = 500
MIN_IMPORTANCE = 0
MAX_IMPORTANCE = 10

# Columns written to the `news` table; transient scoring inputs are excluded.
PERSISTED_FIELDS: tuple[str, ...] = (
    "title",
    "summary",
    "content",
    "source",
    "source_url",
    "published_date",
    "news_type",
    "location",
    "sub_location",
    "language",
    "category",
    "tags",
    "companies",
    "sentiment",
    "image_url",
    "author",
    "is_featured",
    "importance_score",
    "link_status",
    "last_validated",
    "alternate_url",
)


def clamp_importance(value: Any) -> int:
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        score = MIN_IMPORTANCE
    return max(MIN_IMPORTANCE, min(MAX_IMPORTANCE, score))


def _unique(values: List[str]) -> List[str]:
    seen: set[str] = set()
    ordered: List[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        value = value.strip()
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


class Article(BaseModel):
    """
    Canonical news record, the unit persisted by the ingest pipeline.

    Created by the normalizer, enriched in place by the classifier, link
    validator and featured selector, then written once via upsert keyed on
    `source_url`.
    """

    title: str
    summary: str = ""
    content: str
    source: str
    source_url: str
    published_date: datetime
    news_type: NewsType
    location: Optional[str] = None
    sub_location: Optional[str] = None
    language: str = "en"
    category: str = "general"
    tags: List[str] = Field(default_factory=list)
    companies: List[str] = Field(default_factory=list)
    sentiment: Sentiment = "neutral"
    image_url: Optional[str] = None
    author: Optional[str] = None
    is_featured: bool = False
    importance_score: int = 5
    link_status: LinkStatus = "unchecked"
    last_validated: Optional[datetime] = None
    alternate_url: Optional[str] = None

    # Engagement signals from discussion sources; scoring input only.
    upvotes: Optional[int] = None
    comment_count: Optional[int] = None

    model_config = {"validate_assignment": True}

    @field_validator("summary")
    @classmethod
    def _cap_summary(cls, value: str) -> str:
        return (value or "")[:SUMMARY_MAX_CHARS]

    @field_validator("importance_score", mode="before")
    @classmethod
    def _clamp_score(cls, value: Any) -> int:
        return clamp_importance(value)

    @field_validator("tags", "companies")
    @classmethod
    def _dedupe(cls, value: List[str]) -> List[str]:
        return _unique(value)

    @field_validator("published_date", "last_validated")
    @classmethod
    def _ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(include=set(PERSISTED_FIELDS))


class FeedError(BaseModel):
    """Append-only observability record for a failed source."""

    source_name: str
    source_url: str
    error_message: str
    error_type: FeedErrorType = "fetch_failure"
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("error_message")
    @classmethod
    def _trim_message(cls, value: str) -> str:
        return (value or "")[:500]


DateRange = Literal["today", "week", "month", "all"]


class ArticleFilters(BaseModel):
    """Read-side filters used by downstream consumers of the `news` table."""

    news_type: Optional[NewsType] = None
    category: Optional[str] = None
    date_range: DateRange = "all"
    published_after: Optional[datetime] = None
    published_before: Optional[datetime] = None
    min_importance: Optional[int] = Field(default=None, ge=MIN_IMPORTANCE, le=MAX_IMPORTANCE)
    search_term: Optional[str] = None
    companies: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    link_status: Optional[LinkStatus] = None
    featured_only: bool = False
    limit: int = Field(default=50, ge=1, le=500)
