from __future__ import annotations

import re
from datetime import datetime
from functools import lru_cache
from typing import List, Optional, Sequence, Tuple

from newsroom.core.logging import get_logger
from newsroom.models.news_article import Article, clamp_importance
from newsroom.models.news_keywords import KeywordConfig, Tiers
from newsroom.models.news_sources import NewsSource

logger = get_logger()


@lru_cache(maxsize=256)
def _word_pattern(keyword: str) -> "re.Pattern[str]":
    return re.compile(rf"\b{re.escape(keyword)}\b")


def _any_in(text: str, keywords: Sequence[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def _count_in(text: str, keywords: Sequence[str]) -> int:
    return sum(1 for keyword in keywords if keyword in text)


def _first_tier(value: float, tiers: Tiers, *, below: bool) -> int:
    """Boost of the first tier whose threshold `value` crosses."""
    for threshold, boost in tiers:
        if (value < threshold) if below else (value > threshold):
            return boost
    return 0


class NewsClassifier:
    """
    Keyword classifier and importance scorer.

    Pure with respect to its inputs: the keyword tables are injected once and
    the only time input is the `now` passed to `classify`.
    """

    def __init__(self, keywords: KeywordConfig) -> None:
        self.keywords = keywords

    # ---- category ----------------------------------------------------------

    def category_for(self, news_type: str, text: str) -> str:
        lowered = text.lower()
        for category in self.keywords.categories_for(news_type):
            if _any_in(lowered, self.keywords.category_keywords.get(category, ())):
                return category
        return self.keywords.fallback_for(news_type)

    # ---- tags / locations --------------------------------------------------

    def micro_locations(self, text: str) -> List[str]:
        lowered = text.lower()
        found: List[str] = []
        for name, keywords in self.keywords.location_keywords.items():
            if any(_word_pattern(keyword).search(lowered) for keyword in keywords):
                found.append(name)
        return found

    def tags_for(self, news_type: str, text: str, locations: Sequence[str]) -> List[str]:
        lowered = text.lower()
        tags: List[str] = []
        if news_type == "ai":
            tags.extend(tag for tag in self.keywords.ai_tags if tag in lowered)
        tags.extend(name.lower() for name in locations)
        return tags

    # ---- companies ---------------------------------------------------------

    def companies_for(self, text: str, owner_company: Optional[str]) -> List[str]:
        lowered = text.lower()
        companies = [
            company
            for company in self.keywords.companies
            if company in text or company.lower() in lowered
        ]
        if owner_company and owner_company not in companies:
            companies.append(owner_company)
        return companies

    # ---- sentiment ---------------------------------------------------------

    def sentiment_for(self, text: str) -> str:
        lowered = text.lower()
        rules = self.keywords.sentiment
        positive = _count_in(lowered, rules.positive)
        negative = _count_in(lowered, rules.negative)
        if positive > negative + rules.margin:
            return "positive"
        if negative > positive + rules.margin:
            return "negative"
        return "neutral"

    # ---- importance --------------------------------------------------------

    def importance_for(
        self,
        article: Article,
        source: NewsSource,
        now: datetime,
        *,
        text: Optional[str] = None,
    ) -> int:
        rules = self.keywords.importance
        lowered = (text if text is not None else f"{article.title} {article.content}").lower()

        score = rules.base
        if _any_in(lowered, rules.high_keywords):
            score += rules.high_boost
        if _any_in(lowered, rules.medium_keywords):
            score += rules.medium_boost
        if _any_in(lowered, rules.financial_keywords):
            score += rules.financial_boost

        if article.upvotes is not None:
            score += _first_tier(article.upvotes, rules.upvotes, below=False)
        if article.comment_count is not None:
            score += _first_tier(article.comment_count, rules.comments, below=False)

        age_hours = (now - article.published_date).total_seconds() / 3600
        recency = rules.recency.get(source.kind) or rules.recency.get("rss", ())
        score += _first_tier(age_hours, recency, below=True)

        if article.sub_location:
            score += rules.sub_location_boost
        if len(article.companies) >= rules.multi_company_threshold:
            score += rules.multi_company_boost

        return clamp_importance(score)

    # ---- entry point -------------------------------------------------------

    def classify(self, article: Article, source: NewsSource, now: datetime) -> Article:
        """Set category, tags, companies, sentiment and importance in place."""
        text = f"{article.title} {article.content}"

        locations = self.micro_locations(text)
        if locations and not article.sub_location:
            article.sub_location = locations[0]

        article.category = self.category_for(article.news_type, text)
        article.tags = [*article.tags, *self.tags_for(article.news_type, text, locations)]
        article.companies = self.companies_for(text, source.owner_company)
        article.sentiment = self.sentiment_for(text)
        article.importance_score = self.importance_for(article, source, now, text=text)
        return article


def classify_articles(
    classifier: NewsClassifier,
    articles: Sequence[Article],
    source: NewsSource,
    now: datetime,
) -> Tuple[List[Article], int]:
    """Classify a source's articles in order; items that fail are dropped and counted."""
    classified: List[Article] = []
    dropped = 0
    for article in articles:
        try:
            classified.append(classifier.classify(article, source, now))
        except Exception as exc:
            dropped += 1
            logger.warning(
                "news_classification_item_failed",
                source=source.name,
                url=article.source_url,
                error=str(exc),
            )
    return classified, dropped
