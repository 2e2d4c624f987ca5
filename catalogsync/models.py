"""Pydantic models and runtime snapshots describing catalog content."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .utils import as_naive_utc, short_digest, utc_now


class ContentType(str, Enum):
    """Kinds of records synchronised from a provider."""

    LIVE_CATEGORIES = "live_categories"
    CHANNELS = "channels"
    MOVIE_CATEGORIES = "movie_categories"
    MOVIES = "movies"
    SERIES_CATEGORIES = "series_categories"
    SERIES = "series"
    GUIDE = "guide"

    @property
    def is_category(self) -> bool:
        return self in CATEGORY_TYPES

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


class ContentFamily(str, Enum):
    """Groups of content types sharing a TTL and a force flag."""

    CHANNELS = "channels"
    MOVIES = "movies"
    SERIES = "series"
    GUIDE = "guide"


# Fixed priority order of a full sync pass.
SYNC_ORDER: tuple[ContentType, ...] = (
    ContentType.LIVE_CATEGORIES,
    ContentType.CHANNELS,
    ContentType.MOVIE_CATEGORIES,
    ContentType.MOVIES,
    ContentType.SERIES_CATEGORIES,
    ContentType.SERIES,
    ContentType.GUIDE,
)

CATEGORY_TYPES = frozenset(
    {
        ContentType.LIVE_CATEGORIES,
        ContentType.MOVIE_CATEGORIES,
        ContentType.SERIES_CATEGORIES,
    }
)

ITEM_TYPES = frozenset({ContentType.CHANNELS, ContentType.MOVIES, ContentType.SERIES})

_FAMILIES: dict[ContentType, ContentFamily] = {
    ContentType.LIVE_CATEGORIES: ContentFamily.CHANNELS,
    ContentType.CHANNELS: ContentFamily.CHANNELS,
    ContentType.MOVIE_CATEGORIES: ContentFamily.MOVIES,
    ContentType.MOVIES: ContentFamily.MOVIES,
    ContentType.SERIES_CATEGORIES: ContentFamily.SERIES,
    ContentType.SERIES: ContentFamily.SERIES,
    ContentType.GUIDE: ContentFamily.GUIDE,
}

_CATEGORY_OF: dict[ContentType, ContentType] = {
    ContentType.CHANNELS: ContentType.LIVE_CATEGORIES,
    ContentType.MOVIES: ContentType.MOVIE_CATEGORIES,
    ContentType.SERIES: ContentType.SERIES_CATEGORIES,
}


def family_of(content_type: ContentType) -> ContentFamily:
    return _FAMILIES[content_type]


def types_in_family(family: ContentFamily) -> tuple[ContentType, ...]:
    """Return the content types of ``family`` in sync order."""

    return tuple(ct for ct in SYNC_ORDER if _FAMILIES[ct] is family)


def category_type_for(content_type: ContentType) -> ContentType:
    """Return the category listing that groups ``content_type`` items."""

    try:
        return _CATEGORY_OF[content_type]
    except KeyError:
        raise ValueError(f"{content_type.value} has no category listing") from None


class ProviderCredentials(BaseModel):
    """Connection details of one provider account."""

    model_config = ConfigDict(frozen=True)

    base_url: str
    username: str
    password: str

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        cleaned = value.strip().rstrip("/")
        if not cleaned.lower().startswith(("http://", "https://")):
            raise ValueError("Provider URL must be HTTP/HTTPS")
        return cleaned

    def profile_id(self) -> str:
        """Deterministic profile identifier for this account."""

        return short_digest(f"{self.base_url.lower()}|{self.username}", length=16)


class AccountInfo(BaseModel):
    """Subset of the login response kept for display."""

    username: str
    status: str = "Active"
    expires_at: datetime | None = None
    max_connections: int | None = None
    active_connections: int | None = None
    server_timezone: str | None = None


class Category(BaseModel):
    """A provider category grouping channels, movies or series."""

    id: str
    name: str
    content_type: ContentType
    parent_id: str | None = None
    item_count: int = 0


class Episode(BaseModel):
    id: str
    episode_number: int = 1
    title: str = ""
    container_extension: str = "mp4"
    plot: str | None = None
    artwork_url: str | None = None
    duration_seconds: int | None = None
    air_date: str | None = None


class Season(BaseModel):
    season_number: int
    name: str
    episodes: list[Episode] = Field(default_factory=list)


class ContentItem(BaseModel):
    """A channel, movie or series as stored for one profile.

    Records are always written whole; two items with the same
    ``(content_type, id)`` replace each other instead of merging fields.
    """

    id: str
    name: str
    content_type: ContentType
    category_id: str | None = None
    artwork_url: str | None = None
    stream_id: str | None = None
    container_extension: str | None = None
    epg_channel_id: str | None = None
    rating: float | None = None
    plot: str | None = None
    genre: str | None = None
    release_date: str | None = None
    duration_seconds: int | None = None
    added_at: datetime | None = None
    position: int = 0
    seasons: list[Season] = Field(default_factory=list)

    @field_validator("added_at")
    @classmethod
    def _naive_added_at(cls, value: datetime | None) -> datetime | None:
        return as_naive_utc(value) if value is not None else None

    @property
    def episode_count(self) -> int:
        return sum(len(season.episodes) for season in self.seasons)

    @property
    def has_episodes(self) -> bool:
        return self.episode_count > 0

    @property
    def has_details(self) -> bool:
        """Whether the per-item info call has filled this record in."""

        if self.content_type is ContentType.SERIES:
            return self.has_episodes
        return self.duration_seconds is not None


class ProgramGuideEntry(BaseModel):
    """A programme occupying the half-open interval ``[start, end)``."""

    channel_id: str
    title: str
    start: datetime
    end: datetime
    description: str | None = None
    category: str | None = None
    language: str | None = None
    subtitle: str | None = None
    icon_url: str | None = None

    @field_validator("start", "end")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        return as_naive_utc(value)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def is_airing(self, now: datetime) -> bool:
        return self.start <= now < self.end

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and self.end > start

    def progress(self, now: datetime) -> float:
        if now < self.start:
            return 0.0
        if now >= self.end:
            return 1.0
        total = self.duration.total_seconds()
        if total <= 0:
            return 0.0
        return min(max((now - self.start).total_seconds() / total, 0.0), 1.0)


GuideData = dict[str, list[ProgramGuideEntry]]


class EpgSourceKind(str, Enum):
    NONE = "none"
    URL = "url"
    PROVIDER = "provider"


class EpgSourceConfig(BaseModel):
    """Which programme guide source is active for a profile."""

    kind: EpgSourceKind = EpgSourceKind.NONE
    url: str | None = None
    profile_id: str | None = None
    refresh_interval_seconds: int = Field(default=21_600, ge=60)
    auto_refresh: bool = True

    @classmethod
    def none(cls) -> "EpgSourceConfig":
        return cls(kind=EpgSourceKind.NONE, auto_refresh=False)

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "EpgSourceConfig":
        return cls(kind=EpgSourceKind.URL, url=url, **kwargs)

    @classmethod
    def from_provider(cls, profile_id: str, **kwargs: Any) -> "EpgSourceConfig":
        return cls(kind=EpgSourceKind.PROVIDER, profile_id=profile_id, **kwargs)

    @model_validator(mode="after")
    def _check_target(self) -> "EpgSourceConfig":
        if self.kind is EpgSourceKind.URL and self.url:
            if not self.url.lower().startswith(("http://", "https://")):
                raise ValueError("Guide URL must start with http:// or https://")
        return self

    @property
    def refresh_interval(self) -> timedelta:
        return timedelta(seconds=self.refresh_interval_seconds)

    @property
    def is_configured(self) -> bool:
        if self.kind is EpgSourceKind.URL:
            return bool(self.url)
        if self.kind is EpgSourceKind.PROVIDER:
            return bool(self.profile_id)
        return False

    @property
    def source_key(self) -> str:
        """Identity of the source; cache entries are keyed by it."""

        if self.kind is EpgSourceKind.URL and self.url:
            return f"url_{short_digest(self.url, length=12)}"
        if self.kind is EpgSourceKind.PROVIDER and self.profile_id:
            return provider_source_key(self.profile_id)
        return "none"


def provider_source_key(profile_id: str) -> str:
    return f"provider_{profile_id}"


def guide_source_key(config: EpgSourceConfig | None) -> str:
    """Cache key space of a guide source; ``none`` when nothing is configured."""

    if config is None or not config.is_configured:
        return "none"
    return config.source_key


@dataclass
class ProfileState:
    """Snapshot of a stored profile used for runtime decisions."""

    id: str
    credentials: ProviderCredentials
    display_name: str | None = None
    account: AccountInfo | None = None
    guide_source: EpgSourceConfig = field(default_factory=EpgSourceConfig.none)
    created_at: datetime | None = None


@dataclass(slots=True)
class LedgerEntry:
    last_synced_at: datetime
    item_count: int


@dataclass
class SyncLedger:
    """Per-profile bookkeeping of the last successful sync of each type."""

    profile_id: str
    entries: dict[ContentType, LedgerEntry] = field(default_factory=dict)
    initial_sync_complete: bool = False

    def last_synced(self, content_type: ContentType) -> datetime | None:
        entry = self.entries.get(content_type)
        return entry.last_synced_at if entry else None

    def item_count(self, content_type: ContentType) -> int:
        entry = self.entries.get(content_type)
        return entry.item_count if entry else 0

    def is_stale(
        self,
        content_type: ContentType,
        ttl: timedelta,
        now: datetime | None = None,
    ) -> bool:
        last = self.last_synced(content_type)
        if last is None:
            return True
        return (now or utc_now()) - last > ttl

    def has_synced(self, content_type: ContentType) -> bool:
        return content_type in self.entries

    def summary(
        self,
        ttl_for: Callable[[ContentType], timedelta],
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Describe every content type's sync state for status displays."""

        now = now or utc_now()
        types: dict[str, Any] = {}
        for content_type in SYNC_ORDER:
            last = self.last_synced(content_type)
            types[content_type.value] = {
                "lastSyncedAt": last.isoformat() if last else None,
                "itemCount": self.item_count(content_type),
                "stale": self.is_stale(content_type, ttl_for(content_type), now),
                "neverSynced": last is None,
            }
        return {
            "profileId": self.profile_id,
            "initialSyncComplete": self.initial_sync_complete,
            "types": types,
        }


@dataclass
class SyncStats:
    """Aggregate outcome of a sync call."""

    imported: dict[ContentType, int] = field(default_factory=dict)
    skipped: list[ContentType] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration: timedelta = field(default_factory=timedelta)

    @property
    def total_items(self) -> int:
        return sum(self.imported.values())

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def categories_imported(self) -> int:
        return sum(
            count for ct, count in self.imported.items() if ct in CATEGORY_TYPES
        )

    def count(self, content_type: ContentType) -> int:
        return self.imported.get(content_type, 0)

    def to_payload(self) -> dict[str, Any]:
        return {
            "imported": {ct.value: count for ct, count in self.imported.items()},
            "skipped": [ct.value for ct in self.skipped],
            "errors": list(self.errors),
            "totalItems": self.total_items,
            "durationSeconds": round(self.duration.total_seconds(), 3),
        }


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class SyncProgress:
    """One discrete stage update published while a sync runs."""

    profile_id: str | None = None
    state: SyncState = SyncState.IDLE
    operation: str | None = None
    progress: float = 0.0
    error: str | None = None
    stats: SyncStats | None = None
