from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Every external collaborator is optional: when its settings are missing
    the feature it gates is silently disabled.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "*"
    STATIC_DIR: str = "public"

    # Storage: document collection when DATABASE_URL is set, JSON file otherwise
    DATABASE_URL: Optional[str] = None
    MESSAGES_FILE: str = "messages.json"

    # IP geolocation
    GEO_API_URL: str = "http://ip-api.com/json/{ip}"
    GEO_API_KEY: Optional[str] = None
    GEO_TIMEOUT_SECONDS: float = 3.0

    # Outbound email notifications
    EMAIL_API_URL: str = "https://api.resend.com/emails"
    EMAIL_API_KEY: Optional[str] = None
    EMAIL_FROM: Optional[str] = None
    EMAIL_TO: Optional[str] = None

    # Drafts shorter than this (after trimming) are not stored
    ABANDONED_MIN_LENGTH: int = 3

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def email_enabled(self) -> bool:
        return bool(self.EMAIL_API_KEY and self.EMAIL_FROM and self.EMAIL_TO)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
