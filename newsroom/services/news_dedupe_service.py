from __future__ import annotations

from dataclasses import dataclass, field
from typing import Collection, Dict, List, Sequence

from newsroom.models.news_article import Article


@dataclass
class DedupeStats:
    kept: int = 0
    existing: int = 0
    in_batch: int = 0
    removed_by_news_type: Dict[str, int] = field(default_factory=dict)

    @property
    def removed(self) -> int:
        return self.existing + self.in_batch


def dedupe_with_stats(
    candidates: Sequence[Article],
    existing_urls: Collection[str],
) -> tuple[List[Article], DedupeStats]:
    """
    Drop candidates already persisted or repeated earlier in the batch.

    Iteration order is the tie-break: the first candidate for a URL wins.
    """
    stats = DedupeStats()
    seen: set[str] = set()
    kept: List[Article] = []
    for article in candidates:
        url = article.source_url
        if url in existing_urls:
            stats.existing += 1
        elif url in seen:
            stats.in_batch += 1
        else:
            seen.add(url)
            kept.append(article)
            continue
        stats.removed_by_news_type[article.news_type] = (
            stats.removed_by_news_type.get(article.news_type, 0) + 1
        )
    stats.kept = len(kept)
    return kept, stats


def dedupe(candidates: Sequence[Article], existing_urls: Collection[str]) -> List[Article]:
    kept, _ = dedupe_with_stats(candidates, existing_urls)
    return kept
