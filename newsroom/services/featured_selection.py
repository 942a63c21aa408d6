from __future__ import annotations

from typing import Dict, List, Sequence

from newsroom.models.news_article import Article


def rank_key(article: Article) -> tuple:
    """Sort key: importance first, most recent publication breaks ties."""
    return (article.importance_score, article.published_date.timestamp())


def select_featured(articles: Sequence[Article], per_news_type_limit: int) -> List[Article]:
    """
    Flag the top `per_news_type_limit` articles of every news_type as featured.

    Returns the batch ranked by (importance desc, published_date desc); every
    article outside the top slots is reset to not featured. Articles whose link
    failed validation never take a slot; `unchecked` ones stay eligible.
    """
    ranked = sorted(articles, key=rank_key, reverse=True)
    limit = max(0, int(per_news_type_limit))
    taken: Dict[str, int] = {}
    for article in ranked:
        count = taken.get(article.news_type, 0)
        if article.link_status != "invalid" and count < limit:
            article.is_featured = True
            taken[article.news_type] = count + 1
        else:
            article.is_featured = False
    return ranked
