"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

HOUR = 60 * 60
DAY = 24 * HOUR


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="CineFeed", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    release_feed_url: HttpUrl | None = Field(default=None, alias="RELEASE_FEED_URL")
    request_timeout_seconds: float = Field(
        default=8.0, alias="REQUEST_TIMEOUT", gt=0, le=60
    )

    cache_namespace: str = Field(default="cine_cache_", alias="CACHE_NAMESPACE")
    cache_schema_version: int = Field(default=1, alias="CACHE_SCHEMA_VERSION", ge=1)
    cache_ttl_seconds: float = Field(default=4 * HOUR, alias="CACHE_TTL", ge=0)
    cache_long_ttl_seconds: float = Field(default=7 * DAY, alias="CACHE_LONG_TTL", ge=0)
    cache_hard_expiry_seconds: float = Field(
        default=7 * DAY, alias="CACHE_HARD_EXPIRY", gt=0
    )
    cache_max_entries: int = Field(default=50, alias="CACHE_MAX_ENTRIES", ge=1)
    cache_database_url: str | None = Field(default=None, alias="CACHE_DATABASE_URL")
    cache_quota_bytes: int | None = Field(default=None, alias="CACHE_QUOTA_BYTES", ge=1)

    retry_limit: int = Field(default=3, alias="RETRY_LIMIT", ge=0, le=10)
    retry_initial_delay: float = Field(default=0.5, alias="RETRY_INITIAL_DELAY", ge=0)
    retry_max_delay: float = Field(default=10.0, alias="RETRY_MAX_DELAY", ge=0)

    interleave_limit: int = Field(default=20, alias="INTERLEAVE_LIMIT", ge=1, le=200)
    lane_item_limit: int = Field(default=20, alias="LANE_ITEM_LIMIT", ge=1, le=200)
    enrichment_limit: int = Field(default=10, alias="ENRICHMENT_LIMIT", ge=0, le=100)

    activity_recency_seconds: float = Field(
        default=300.0, alias="ACTIVITY_RECENCY_WINDOW", gt=0
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("cache_namespace")
    @classmethod
    def _validate_namespace(cls, value: str) -> str:
        """Reject blank namespaces so ``clear()`` never spans foreign keys."""

        cleaned = value.strip()
        if not cleaned:
            raise ValueError("CACHE_NAMESPACE must not be blank")
        return cleaned

    @field_validator("cache_database_url", "tmdb_api_key", "release_feed_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _check_retry_delays(self) -> "Settings":
        if self.retry_max_delay < self.retry_initial_delay:
            raise ValueError("RETRY_MAX_DELAY must not be lower than RETRY_INITIAL_DELAY")
        return self

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
