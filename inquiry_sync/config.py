from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Remote data store - required from .env
    STORE_URL: str
    STORE_API_KEY: Optional[str] = None
    STORE_TIMEOUT_SECONDS: float = 20.0

    # Local durable storage for the acknowledgement ledger
    LEDGER_DATABASE_URL: str = "sqlite:///./ledger.db"
    LEDGER_STORAGE_KEY: str = "seen_inquiries"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Polling
    THREAD_POLL_INTERVAL_SECONDS: float = 8.0
    REGISTRY_POLL_INTERVAL_SECONDS: float = 15.0

    # Opening message dedup tolerance (clock/serialization skew)
    OPENING_MESSAGE_DEDUP_WINDOW_MS: int = 5000

    NOTIFICATION_HISTORY_LIMIT: int = 50


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every access.
    """
    return Settings()


# Global settings instance
settings = get_settings()
