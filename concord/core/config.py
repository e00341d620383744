"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
    )

    # Database (optional, enables the SQL transaction journal)
    database_url: str | None = Field(
        default=None,
        description="SQLAlchemy URL for the durable journal (postgresql:// or sqlite://)",
    )

    # Concord Configuration
    concord_log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    concord_debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    concord_log_dir: str = Field(
        default="logs",
        description="Directory for rotating log files",
    )
    concord_max_commit_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Commit attempts per submission before escalating to manual resolution",
    )
    concord_sweep_interval: float = Field(
        default=30.0,
        gt=0,
        description="Seconds between manual-resolution timeout sweeps",
    )
    concord_policy_file: str | None = Field(
        default=None,
        description="Path to a JSON or YAML policy book",
    )
    concord_event_buffer: int = Field(
        default=1000,
        ge=1,
        description="Maximum queued events per subscriber",
    )

    @property
    def database_url_async(self) -> str | None:
        """Get async database URL (asyncpg / aiosqlite driver)."""
        if self.database_url is None:
            return None
        url = self.database_url
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("sqlite://"):
            return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance loaded from environment.

    Example:
        >>> settings = get_settings()
        >>> settings.concord_max_commit_attempts
        3
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
