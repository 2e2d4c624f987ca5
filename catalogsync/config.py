"""Application configuration models."""

from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import ContentFamily, ContentType, family_of


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="catalogsync", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./catalogsync.db", alias="DATABASE_URL"
    )

    channel_ttl_seconds: int = Field(default=3_600, alias="CHANNEL_TTL", ge=60)
    movie_ttl_seconds: int = Field(default=14_400, alias="MOVIE_TTL", ge=60)
    series_ttl_seconds: int = Field(default=14_400, alias="SERIES_TTL", ge=60)
    guide_ttl_seconds: int = Field(default=21_600, alias="GUIDE_TTL", ge=60)

    sync_movies_on_initial: bool = Field(default=True, alias="SYNC_MOVIES_ON_INITIAL")
    sync_series_on_initial: bool = Field(default=True, alias="SYNC_SERIES_ON_INITIAL")
    sync_guide_on_initial: bool = Field(default=True, alias="SYNC_GUIDE_ON_INITIAL")

    guide_refresh_interval_seconds: int = Field(
        default=21_600, alias="GUIDE_REFRESH_INTERVAL", ge=60
    )
    guide_keep_past_hours: int = Field(
        default=6, alias="GUIDE_KEEP_PAST_HOURS", ge=0, le=168
    )
    default_guide_url: HttpUrl | None = Field(default=None, alias="GUIDE_URL")

    provider_timeout_seconds: float = Field(default=20.0, alias="PROVIDER_TIMEOUT", gt=0)
    guide_download_timeout_seconds: float = Field(
        default=180.0, alias="GUIDE_DOWNLOAD_TIMEOUT", gt=0
    )
    provider_max_retries: int = Field(default=3, alias="PROVIDER_MAX_RETRIES", ge=0, le=10)
    user_agent: str = Field(default="catalogsync/1.0", alias="USER_AGENT")

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> str:
        """Accept log levels case-insensitively."""

        level = str(value or "INFO").strip().upper()
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if level not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {sorted(allowed)}")
        return level

    @model_validator(mode="after")
    def _check_ttl_ordering(self) -> "Settings":
        """Catalog families should not refresh faster than live channels."""

        if min(self.movie_ttl_seconds, self.series_ttl_seconds) < self.channel_ttl_seconds:
            raise ValueError("MOVIE_TTL and SERIES_TTL must be >= CHANNEL_TTL")
        return self

    @property
    def family_ttls(self) -> dict[ContentFamily, timedelta]:
        return {
            ContentFamily.CHANNELS: timedelta(seconds=self.channel_ttl_seconds),
            ContentFamily.MOVIES: timedelta(seconds=self.movie_ttl_seconds),
            ContentFamily.SERIES: timedelta(seconds=self.series_ttl_seconds),
            ContentFamily.GUIDE: timedelta(seconds=self.guide_ttl_seconds),
        }

    def ttl_for(self, content_type: ContentType) -> timedelta:
        """Return the TTL governing ``content_type``.

        Category listings share the TTL of the items they group.
        """

        return self.family_ttls[family_of(content_type)]

    def initial_families(self) -> set[ContentFamily]:
        """Families that take part in the initial sync pass."""

        families = {ContentFamily.CHANNELS}
        if self.sync_movies_on_initial:
            families.add(ContentFamily.MOVIES)
        if self.sync_series_on_initial:
            families.add(ContentFamily.SERIES)
        if self.sync_guide_on_initial:
            families.add(ContentFamily.GUIDE)
        return families

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]
