"""
Configuration system with environment-based settings.
Uses pydantic-settings for validation and type safety.

Only the process edges (HTTP app, CLI) call get_settings(); the scan engine
receives a Settings instance explicitly.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_VERSION: str = "1.0.0"
    ENV: Literal["development", "staging", "production"] = "development"
    DEBUG: bool = False
    API_KEY_HEADER: str = "X-Api-Key"

    # Crawler
    CRAWLER_USER_AGENT: str = "LinkScanBot/1.0 (+https://linkscan.dev/bot)"
    CRAWLER_MAX_CONCURRENCY: int = Field(default=8, ge=1, le=64)
    CRAWLER_MAX_PAGES: int = Field(default=500, ge=1)
    CRAWLER_MAX_DEPTH: int = Field(default=5, ge=0)
    CRAWLER_MAX_DURATION_SECONDS: float = Field(default=600.0, gt=0)
    CRAWLER_REQUEST_TIMEOUT: float = 10.0
    CRAWLER_MAX_REDIRECTS: int = 5
    CRAWLER_POLITENESS_DELAY: float = 1.0       # seconds between requests to one host
    CRAWLER_MIN_CONTENT_BYTES: int = 512        # static bodies below this escalate to render
    CRAWLER_SEED_FROM_SITEMAP: bool = False

    # Resource ceilings (0 disables the memory check)
    CRAWLER_MAX_FRONTIER_SIZE: int = 100_000
    CRAWLER_MAX_MEMORY_MB: int = 0

    # Validator
    VALIDATOR_RANGE_BYTES: int = 1024

    # Headless rendering
    RENDER_ENABLED: bool = True
    RENDER_HEADLESS: bool = True
    RENDER_TIMEOUT_MS: int = 30_000
    RENDER_SETTLE_MS: int = 500
    RENDER_MAX_CONTEXTS: int = Field(default=2, ge=1)

    # Logging
    VERBOSE: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Literal["json", "console"] = "json"

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.VERBOSE else self.LOG_LEVEL


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance - created once per process."""
    return Settings()
