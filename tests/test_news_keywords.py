import textwrap

import pytest

from newsroom.config import CONFIGS_DIR
from newsroom.models.news_keywords import (
    clear_keyword_config_cache,
    get_keyword_config,
    parse_keyword_config,
)


@pytest.fixture(autouse=True)
def _reset_cache():
    clear_keyword_config_cache()
    yield
    clear_keyword_config_cache()


def test_shipped_keyword_tables():
    config = get_keyword_config(CONFIGS_DIR / "news_keywords.yml")

    assert config.categories_for("ai")[:3] == ("funding", "partnership", "product_launch")
    assert config.fallback_for("ai") == "industry_news"
    assert config.fallback_for("world") == "general"
    assert config.sentiment.margin == 0
    assert "OpenAI" in config.companies
    assert "les" in config.location_keywords["Bowery"]
    assert config.importance.recency["reddit"] == ((1.0, 2), (6.0, 1))


def test_keyword_config_is_cached_per_path():
    path = CONFIGS_DIR / "news_keywords.yml"
    assert get_keyword_config(path) is get_keyword_config(path)


def test_parse_keyword_config_tolerates_bad_sections():
    config = parse_keyword_config(
        {
            "categories": {"world": ["politics"]},
            "category_keywords": {"politics": ["Election"]},
            "sentiment": "nonsense",
            "importance": {"upvotes": [[100, 1], "broken"]},
        }
    )

    assert config.category_keywords["politics"] == ("election",)
    assert config.sentiment.positive == ()
    assert config.importance.upvotes == ((100.0, 1),)
    assert config.fallback_for("nyc") == "general"


def test_missing_keyword_file_yields_empty_tables(tmp_path):
    cfg = tmp_path / "kw.yml"
    cfg.write_text(textwrap.dedent("- just\n- a list\n"), encoding="utf-8")

    config = get_keyword_config(cfg)

    assert config.categories == {}
    assert config.fallback_for("ai") == "general"
