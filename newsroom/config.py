# newsroom/config.py
from __future__ import annotations

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# newsroom/config.py -> parents[1] = repo root (holds .env and configs/)
REPO_ROOT = Path(__file__).resolve().parents[1]
ENV_FILE = REPO_ROOT / ".env"
CONFIGS_DIR = REPO_ROOT / "configs"
load_dotenv(ENV_FILE, override=False)


class Settings(BaseSettings):
    # ---- App / Infra ----
    APP_VERSION: str = "0.1.0"
    # Not required at class level so unit tests and --help work without a store;
    # the worker validates it at runtime via require_database_url().
    DATABASE_URL: Optional[str] = None
    USER_AGENT: str = "Mozilla/5.0 (compatible; NewsAggregator/1.0)"

    # ---- Registries ----
    NEWS_SOURCES_PATH: Path = CONFIGS_DIR / "news_sources.yml"
    NEWS_KEYWORDS_PATH: Path = CONFIGS_DIR / "news_keywords.yml"

    # ---- Fetcher ----
    FETCH_TIMEOUT_S: float = 10.0
    FETCH_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    FETCH_BACKOFF_BASE_S: float = 1.0
    FETCH_BACKOFF_MAX_S: float = 8.0
    SOURCE_BATCH_SIZE: int = Field(default=10, ge=1)
    SOURCE_BATCH_PAUSE_S: float = 1.0

    # ---- Link validation ----
    LINK_VALIDATION_ENABLED: bool = True
    LINK_TIMEOUT_S: float = 5.0
    LINK_MAX_ATTEMPTS: int = Field(default=2, ge=1)
    LINK_BACKOFF_BASE_S: float = 0.5
    LINK_BATCH_SIZE: int = Field(default=20, ge=1)
    LINK_CACHE_TTL_HOURS: float = 24.0
    ARCHIVE_AVAILABILITY_URL: str = "https://archive.org/wayback/available"

    # ---- Pipeline policy ----
    FEATURED_PER_NEWS_TYPE: int = Field(default=5, ge=0)
    DEDUP_LOOKBACK_HOURS: int = 48
    RETENTION_DAYS: int = 90
    HEALTH_RETRY_DELAY_S: float = 30.0
    DEGRADED_FAILURE_RATIO: float = 0.5

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

settings = Settings()


def require_database_url() -> str:
    """
    Runtime check with a clear message when the store DSN is missing.
    """
    if not settings.DATABASE_URL:
        raise RuntimeError(
            "DATABASE_URL is missing. Set it in the environment or in "
            f"{ENV_FILE}."
        )
    return settings.DATABASE_URL
