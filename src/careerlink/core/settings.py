from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Description: Global settings loaded from .env.
    Layer: L0
    Input: environment
    Output: typed settings
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Storage
    DATABASE_URL: str = "sqlite:///outputs/careerlink.db"
    SCHEMA_AUDIT_COLUMNS: bool = True

    # Notification cache
    NOTIFICATION_PAGE_SIZE: int = 10
    NOTIFICATION_HISTORY_LIMIT: int = 50

    # Moderation
    SNOOZE_DAYS: int = 30

    # Delivery retry
    DELIVERY_RETRY_BASE_SECONDS: float = 1.0
    DELIVERY_RETRY_MAX_SECONDS: float = 300.0
    DELIVERY_POLL_SECONDS: float = 2.0
    DELIVERY_MAX_ATTEMPTS: int = 20

    # Fan-out (0 = unbounded)
    FANOUT_QUEUE_SIZE: int = 0

    # Runtime
    LOG_LEVEL: str = "INFO"
    API_BASE_URL: Optional[str] = None
    MAX_HTTP_SECONDS: float = 15.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Description: Cached settings accessor for the API and background workers.
    Layer: L0
    Input: None
    Output: Settings
    """
    return Settings()


def sqlite_path_from_database_url(database_url: str) -> str:
    """Convert sqlite:///path into local path."""
    if database_url.startswith("sqlite:///"):
        return database_url.replace("sqlite:///", "")
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "")
    # fallback: treat as file
    return database_url
