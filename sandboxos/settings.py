"""Application settings using pydantic-settings.

Loads configuration from environment variables with .env file support.
All variables use the ``SANDBOXOS_`` prefix, e.g. ``SANDBOXOS_HOST_ROOT``.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SANDBOXOS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Literal["development", "production", "testing"] = "development"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"

    # Host filesystem
    host_root: Path = Field(
        default=Path("."),
        description="Host directory that backs the sandbox-absolute path space (/rom, /sandbox, /tmp)",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are loaded once and reused.
    """
    return Settings()
