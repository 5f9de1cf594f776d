"""
Bot configuration using Pydantic Settings.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from apps.bot.src.rate_limiter import Quota


class BotSettings(BaseSettings):
    """Bot settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Discord
    discord_token: Optional[str] = None
    discord_api_url: str = "https://discord.com/api/v10"

    # Database
    db_url: Optional[str] = None
    db_path: str = "data/feeds.sqlite"

    # Publisher
    poll_interval: float = 300.0
    max_concurrent_fetches: Optional[int] = None
    poll_unsubscribed_feeds: bool = False

    # Voice
    heartbeat_interval: float = 10.0

    # HTTP
    request_timeout: float = 30.0
    user_agent: str = "feedwatch/0.1"
    # Per-platform overrides keyed by platform name, e.g. {"MangaDex": "5/second"}
    rate_limits: dict[str, str] = {}

    # Redis/Celery
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: Optional[str] = None

    log_level: str = "INFO"

    @field_validator("rate_limits")
    @classmethod
    def _check_rate_limits(cls, value: dict[str, str]) -> dict[str, str]:
        for quota in value.values():
            Quota.parse(quota)
        return value

    @property
    def database_url(self) -> str:
        """Get the async SQLAlchemy URL."""
        if self.db_url:
            return self.db_url
        return f"sqlite+aiosqlite:///{self.db_path}"

    @property
    def broker_url(self) -> str:
        """Get Celery broker URL."""
        return self.celery_broker_url or self.redis_url

    def quota_for(self, platform_name: str, default: Quota) -> Quota:
        """Rate-limit quota for a platform, honouring overrides."""
        override = self.rate_limits.get(platform_name)
        return Quota.parse(override) if override else default

    def ensure_db_dir(self) -> None:
        """Create the SQLite parent directory when using db_path."""
        if not self.db_url:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_bot_settings() -> BotSettings:
    """Get cached bot settings instance."""
    return BotSettings()
