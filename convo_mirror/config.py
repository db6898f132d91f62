from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./conversations.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Webhook Security - base64 shared secret issued by the provider.
    # Left unset, the webhook answers 500 (misconfiguration).
    WEBHOOK_SECRET: Optional[str] = None
    WEBHOOK_TOLERANCE_SECONDS: Optional[int] = Field(default=None, ge=1)

    # Provider history API
    PROVIDER_API_BASE_URL: str = "https://api.openphone.com/v1"
    PROVIDER_API_KEY: Optional[str] = None
    HISTORY_PAGE_SIZE: int = Field(default=100, ge=1, le=100)
    HISTORY_LOOKBACK_DAYS: int = Field(default=30, ge=1)
    HISTORY_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
