"""Application settings loaded from the environment."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the bot, the webhook API and background jobs.

    Values come from environment variables (case-insensitive) and an optional
    ``.env`` file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    # Required connections
    database_url: str
    redis_url: str
    api_base_url: str
    platform_api_key: str
    discord_bot_token: str
    discord_application_id: str

    # Public links used by fallback responses
    website_url: str = Field(default="https://naffles.com")
    support_url: str = Field(default="https://naffles.com/support")
    status_url: str = Field(default="https://status.naffles.com")
    help_chat_url: str = Field(default="https://discord.gg/naffles")

    # Security
    token_encryption_key: Optional[str] = Field(default=None)
    webhook_secret: Optional[str] = Field(default=None)
    min_account_age_days: int = Field(default=7, ge=0)

    # Timing
    api_timeout: float = Field(default=30.0, gt=0)
    health_check_interval: int = Field(default=30, gt=0)
    cleanup_interval_minutes: int = Field(default=60, gt=0)

    # Retries of idempotent Platform calls
    retry_max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=1.0, gt=0)
    retry_max_delay: float = Field(default=30.0, gt=0)
    retry_budget_seconds: float = Field(default=45.0, gt=0)

    # Webhook / OAuth API
    sync_api_host: str = Field(default="0.0.0.0")
    sync_api_port: int = Field(default=8080)
    oauth_client_id: Optional[str] = Field(default=None)
    oauth_client_secret: Optional[str] = Field(default=None)
    oauth_redirect_uri: Optional[str] = Field(default=None)
    oauth_authorize_url: str = Field(default="https://discord.com/oauth2/authorize")
    oauth_token_url: str = Field(default="https://discord.com/api/oauth2/token")

    @field_validator("api_base_url", "website_url", "support_url", "status_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_testing(self) -> bool:
        return self.environment.lower() == "test"


@lru_cache()
def get_settings() -> Settings:
    """Get the cached settings instance."""
    return Settings()
