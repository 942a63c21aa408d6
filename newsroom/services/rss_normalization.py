from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from html import unescape
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from newsroom.models.news_article import SUMMARY_MAX_CHARS, Article
from newsroom.models.news_sources import NewsSource

_HTML_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")
_IMG_SRC_RE = re.compile(r"""<img[^>]+src\s*=\s*["']([^"']+)["']""", re.IGNORECASE)
_IMAGE_EXT_RE = re.compile(r"\.(jpe?g|png|gif|webp)(\?|$)", re.IGNORECASE)
_REDDIT_DIRECT_IMAGE_RE = re.compile(r"\.(jpg|png|gif)", re.IGNORECASE)


class NormalizationError(Exception):
    """
    Recoverable normalization failure for a single feed entry or post.
    These errors are logged and counted but never abort the source.
    """

    def __init__(self, message: str, entry_raw: Dict[str, Any] | None = None):
        super().__init__(message)
        self.entry_raw = entry_raw or {}


# -------- ImageRef -----------------------------------------------------------

@dataclass(frozen=True)
class DirectImage:
    """Image given as a plain URL string."""

    url: str


@dataclass(frozen=True)
class NestedImage:
    """Image given as a structured object carrying the URL in a field."""

    url: str


ImageRef = Union[None, DirectImage, NestedImage]

_NESTED_URL_KEYS = ("url", "href", "src")


def _is_http_url(value: Any) -> bool:
    return isinstance(value, str) and value.strip().lower().startswith(("http://", "https://"))


def image_ref_from(value: Any) -> ImageRef:
    """Classify an upstream image field; lists resolve to their first usable element."""
    if isinstance(value, str):
        return DirectImage(value.strip()) if _is_http_url(value) else None
    if isinstance(value, dict):
        for key in _NESTED_URL_KEYS:
            candidate = value.get(key)
            if _is_http_url(candidate):
                return NestedImage(candidate.strip())
        return None
    if isinstance(value, (list, tuple)):
        for item in value:
            ref = image_ref_from(item)
            if ref is not None:
                return ref
    return None


def resolve_image_url(ref: ImageRef) -> Optional[str]:
    if ref is None:
        return None
    return ref.url


# -------- helpers ------------------------------------------------------------

def _struct_time_to_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        timestamp = calendar.timegm(value)
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except Exception:
        return None


def _epoch_to_datetime(value: Any) -> datetime | None:
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def strip_html(value: str) -> str:
    text = _HTML_TAG_RE.sub(" ", value or "")
    text = unescape(text)
    text = _WHITESPACE_RE.sub(" ", text)
    return text.strip()


def _first_str(entry: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return ""


def _get_first_content_value(entry: Dict[str, Any]) -> str:
    content = entry.get("content")
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict):
                val = block.get("value")
                if isinstance(val, str) and val.strip():
                    return val
    if isinstance(content, dict):
        val = content.get("value")
        if isinstance(val, str):
            return val
    if isinstance(content, str):
        return content
    return ""


def _raw_content_markup(entry: Dict[str, Any]) -> str:
    """Best available markup, in content preference order, before stripping."""
    return (
        _get_first_content_value(entry)
        or _first_str(entry, "content_encoded", "content:encoded")
        or _first_str(entry, "content_snippet", "contentSnippet")
        or _first_str(entry, "summary", "description")
    )


def _extract_title(entry: Dict[str, Any]) -> str:
    title = entry.get("title")
    if isinstance(title, str) and title.strip():
        return strip_html(title)
    return ""


def _extract_link(entry: Dict[str, Any]) -> str:
    link = entry.get("link")
    if isinstance(link, str) and link.strip():
        return link.strip()

    links = entry.get("links")
    if isinstance(links, list):
        for link_entry in links:
            if not isinstance(link_entry, dict):
                continue
            rel = str(link_entry.get("rel") or "").lower()
            href = link_entry.get("href")
            if isinstance(href, str) and href.strip() and (not rel or rel == "alternate"):
                return href.strip()

    guid = entry.get("id") or entry.get("guid")
    if _is_http_url(guid):
        return guid.strip()
    return ""


def _extract_author(entry: Dict[str, Any]) -> Optional[str]:
    author = _first_str(entry, "author", "dc_creator", "creator")
    if author:
        return author.strip()
    detail = entry.get("author_detail")
    if isinstance(detail, dict):
        name = detail.get("name")
        if isinstance(name, str) and name.strip():
            return name.strip()
    return None


def _extract_published(entry: Dict[str, Any], now: datetime) -> datetime:
    return (
        _struct_time_to_datetime(entry.get("published_parsed"))
        or _struct_time_to_datetime(entry.get("updated_parsed"))
        or now
    )


def _enclosure_image(entry: Dict[str, Any]) -> ImageRef:
    enclosures = entry.get("enclosures")
    if isinstance(enclosures, list):
        for enc in enclosures:
            if not isinstance(enc, dict):
                continue
            mime = str(enc.get("type") or "").lower()
            href = enc.get("href") or enc.get("url")
            if mime.startswith("image/") or (isinstance(href, str) and _IMAGE_EXT_RE.search(href)):
                ref = image_ref_from(enc)
                if ref is not None:
                    return ref
    return image_ref_from(entry.get("image"))


def _inline_image(markup: str) -> ImageRef:
    for match in _IMG_SRC_RE.finditer(markup or ""):
        ref = image_ref_from(unescape(match.group(1)))
        if ref is not None:
            return ref
    return None


def _extract_entry_image(entry: Dict[str, Any], markup: str) -> ImageRef:
    return (
        image_ref_from(entry.get("media_content"))
        or image_ref_from(entry.get("media_thumbnail"))
        or _enclosure_image(entry)
        or _inline_image(markup)
    )


def _build_article(
    *,
    source: NewsSource,
    title: str,
    content: str,
    link: str,
    published: datetime,
    image: ImageRef,
    author: Optional[str],
    **extra: Any,
) -> Article:
    return Article(
        title=title,
        summary=content[:SUMMARY_MAX_CHARS],
        content=content,
        source=source.name,
        source_url=link,
        published_date=published,
        news_type=source.news_type,
        location=source.location,
        sub_location=source.sub_location,
        language=source.language or "en",
        image_url=resolve_image_url(image),
        author=author,
        **extra,
    )


# -------- RSS / Atom ---------------------------------------------------------

def _normalize_feed_entry(entry: Dict[str, Any], source: NewsSource, now: datetime) -> Article:
    link = _extract_link(entry)
    if not link:
        raise NormalizationError("missing_link", entry_raw=entry)

    title = _extract_title(entry)
    markup = _raw_content_markup(entry)
    content = strip_html(markup) or title
    if not content:
        raise NormalizationError("missing_title_and_content", entry_raw=entry)

    return _build_article(
        source=source,
        title=title or "Untitled",
        content=content,
        link=link,
        published=_extract_published(entry, now),
        image=_extract_entry_image(entry, markup),
        author=_extract_author(entry),
    )


# -------- Reddit -------------------------------------------------------------

def _reddit_image(post: Dict[str, Any]) -> ImageRef:
    url = post.get("url")
    if _is_http_url(url) and _REDDIT_DIRECT_IMAGE_RE.search(url):
        return DirectImage(url)

    metadata = post.get("media_metadata")
    if post.get("is_gallery") and isinstance(metadata, dict):
        first = next(iter(metadata.values()), None)
        if isinstance(first, dict) and isinstance(first.get("s"), dict):
            nested = first["s"].get("u")
            if _is_http_url(nested):
                return NestedImage(nested.replace("&amp;", "&"))

    preview = post.get("preview")
    if isinstance(preview, dict):
        images = preview.get("images")
        if isinstance(images, list) and images and isinstance(images[0], dict):
            src = images[0].get("source")
            if isinstance(src, dict) and _is_http_url(src.get("url")):
                return NestedImage(src["url"].replace("&amp;", "&"))

    return image_ref_from(post.get("thumbnail"))


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _normalize_reddit_post(post: Dict[str, Any], source: NewsSource, now: datetime) -> Article:
    if post.get("over_18"):
        raise NormalizationError("nsfw_post", entry_raw=post)
    if post.get("is_video"):
        raise NormalizationError("video_post", entry_raw=post)

    permalink = post.get("permalink")
    if not isinstance(permalink, str) or not permalink.strip():
        raise NormalizationError("missing_link", entry_raw=post)

    title = _extract_title(post)
    selftext = post.get("selftext") if isinstance(post.get("selftext"), str) else ""
    content = selftext.strip() or title
    if not content:
        raise NormalizationError("missing_title_and_content", entry_raw=post)

    author = post.get("author") if isinstance(post.get("author"), str) else None
    subreddit = post.get("subreddit")

    return _build_article(
        source=source,
        title=title or "Untitled",
        content=content,
        link=f"https://reddit.com{permalink.strip()}",
        published=_epoch_to_datetime(post.get("created_utc")) or now,
        image=_reddit_image(post),
        author=author,
        tags=[subreddit.lower()] if isinstance(subreddit, str) and subreddit else [],
        upvotes=_as_int(post.get("ups", post.get("score"))),
        comment_count=_as_int(post.get("num_comments")),
    )


# -------- public API ---------------------------------------------------------

def normalize_entry(raw: Dict[str, Any], source: NewsSource, now: datetime) -> Article:
    """
    Map one raw item onto an Article (pre-classification).

    Raises NormalizationError for items that cannot produce a stable
    `source_url` or carry no text at all.
    """
    if not isinstance(raw, dict):
        raise NormalizationError(f"unsupported_entry_type:{type(raw).__name__}")
    if source.is_discussion:
        return _normalize_reddit_post(raw, source, now)
    return _normalize_feed_entry(raw, source, now)


def _iter_entries(entries: Any) -> Iterable[Any]:
    if isinstance(entries, dict):
        return entries.get("entries") or []
    if isinstance(entries, (list, tuple)):
        return entries
    return getattr(entries, "entries", []) or []


def normalize_feed_entries(
    entries: Any,
    source: NewsSource,
    now: Optional[datetime] = None,
) -> Tuple[List[Article], List[NormalizationError]]:
    """
    Normalize every entry, preserving feed order.

    Accepts a list of raw items or a parsed feedparser result. Never raises:
    malformed items end up in the error list.
    """
    now = now or datetime.now(timezone.utc)
    items: List[Article] = []
    errors: List[NormalizationError] = []
    for entry in _iter_entries(entries):
        try:
            items.append(normalize_entry(entry, source, now))
        except NormalizationError as err:
            errors.append(err)
        except Exception as exc:
            raw = entry if isinstance(entry, dict) else {}
            errors.append(NormalizationError(str(exc), entry_raw=raw))
    return items, errors
