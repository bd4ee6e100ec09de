"""Application settings loaded from environment variables and .env file."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CACHE_DIR = Path.home() / ".cache/github-catalog-sync"
DEFAULT_CREDENTIALS_DIR = Path.home() / ".config/github-catalog-sync"


class Settings(BaseSettings):
    """Settings for the catalog sync engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Used only when no credential has been stored in the vault
    github_token: str | None = None

    # Base search qualifiers every feed is scoped to
    catalog_query: str = "topic:android"
    catalog_org: str | None = None
    per_page: int = 30

    cache_dir: Path = DEFAULT_CACHE_DIR
    credentials_dir: Path = DEFAULT_CREDENTIALS_DIR
    cache_ttl_seconds: int = 6 * 60 * 60
    stale_after_seconds: int = 10 * 60

    request_timeout: float = 30.0
    # Steady-state throttle; keeps bursts under GitHub's secondary limits
    requests_per_second: float = 5.0
    # Connect retries done by the httpx transport; nothing else is retried
    transport_retries: int = 2

    banner_max_probes: int = 10
    log_level: str = "WARNING"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
