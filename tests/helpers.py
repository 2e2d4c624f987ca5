"""Shared builders and fakes for the test-suite."""

from __future__ import annotations

import asyncio
import copy
from collections import Counter
from datetime import datetime, timedelta
from typing import Any

from catalogsync.config import Settings
from catalogsync.database import Database
from catalogsync.errors import AuthenticationFailure
from catalogsync.models import (
    AccountInfo,
    Category,
    ContentItem,
    ContentType,
    Episode,
    GuideData,
    ProgramGuideEntry,
    ProviderCredentials,
    Season,
)
from catalogsync.services.store import CatalogStore

CREDENTIALS = ProviderCredentials(
    base_url="http://provider.test", username="alice", password="secret"
)
PROFILE_ID = "profile-1"


def build_settings(**overrides: Any) -> Settings:
    """Return a settings object that ignores any local ``.env`` file."""

    return Settings(_env_file=None, **overrides)  # type: ignore[arg-type]


async def open_store(tmp_path, name: str = "catalog.db") -> tuple[Database, CatalogStore]:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / name}")
    await database.create_all()
    return database, CatalogStore(database.session_factory)


def make_category(content_type: ContentType, index: int) -> Category:
    return Category(id=f"cat-{index}", name=f"Category {index}", content_type=content_type)


def make_channel(index: int, *, category_id: str = "cat-1") -> ContentItem:
    return ContentItem(
        id=str(index),
        name=f"Channel {index}",
        content_type=ContentType.CHANNELS,
        category_id=category_id,
        stream_id=str(index),
        container_extension="ts",
        epg_channel_id=f"ch{index}.test",
    )


def make_movie(index: int, *, category_id: str = "cat-1") -> ContentItem:
    return ContentItem(
        id=str(100 + index),
        name=f"Movie {index}",
        content_type=ContentType.MOVIES,
        category_id=category_id,
        stream_id=str(100 + index),
        container_extension="mkv",
    )


def make_series(index: int, *, episodes: int = 0) -> ContentItem:
    seasons = []
    if episodes:
        seasons = [
            Season(
                season_number=1,
                name="Season 1",
                episodes=[
                    Episode(id=f"{index}-{number}", episode_number=number)
                    for number in range(1, episodes + 1)
                ],
            )
        ]
    return ContentItem(
        id=str(500 + index),
        name=f"Series {index}",
        content_type=ContentType.SERIES,
        category_id="cat-1",
        seasons=seasons,
    )


def make_entry(
    channel_id: str, start: datetime, minutes: int = 30, title: str = "Show"
) -> ProgramGuideEntry:
    return ProgramGuideEntry(
        channel_id=channel_id,
        title=title,
        start=start,
        end=start + timedelta(minutes=minutes),
    )


class FakeRemoteClient:
    """In-memory provider recording every call it receives."""

    def __init__(
        self,
        *,
        channels: list[ContentItem] | None = None,
        movies: list[ContentItem] | None = None,
        series: list[ContentItem] | None = None,
        guide: GuideData | None = None,
    ):
        self.listings: dict[ContentType, list[Any]] = {
            ContentType.LIVE_CATEGORIES: [make_category(ContentType.LIVE_CATEGORIES, 1)],
            ContentType.CHANNELS: list(channels or []),
            ContentType.MOVIE_CATEGORIES: [make_category(ContentType.MOVIE_CATEGORIES, 1)],
            ContentType.MOVIES: list(movies or []),
            ContentType.SERIES_CATEGORIES: [make_category(ContentType.SERIES_CATEGORIES, 1)],
            ContentType.SERIES: list(series or []),
        }
        self.guide: GuideData = guide or {}
        self.series_details: dict[str, ContentItem] = {}
        self.movie_details: dict[str, ContentItem] = {}
        self.failures: dict[str, Exception] = {}
        self.hang: set[str] = set()
        self.calls: Counter[str] = Counter()
        self._release = asyncio.Event()

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if operation in self.hang:
            await self._release.wait()
        failure = self.failures.get(operation)
        if failure is not None:
            raise failure

    def release(self) -> None:
        """Let calls blocked by ``hang`` continue."""

        self.hang.clear()
        self._release.set()

    async def login(self, credentials: ProviderCredentials) -> AccountInfo:
        await self._enter("login")
        if credentials.password != CREDENTIALS.password:
            raise AuthenticationFailure("Invalid username or password")
        return AccountInfo(username=credentials.username)

    async def fetch_categories(
        self, credentials: ProviderCredentials, content_type: ContentType
    ) -> list[Category]:
        await self._enter(content_type.value)
        return copy.deepcopy(self.listings[content_type])

    async def fetch_channels(self, credentials, category_id=None) -> list[ContentItem]:
        return await self._items("channels", ContentType.CHANNELS, category_id)

    async def fetch_movies(self, credentials, category_id=None) -> list[ContentItem]:
        return await self._items("movies", ContentType.MOVIES, category_id)

    async def fetch_series(self, credentials, category_id=None) -> list[ContentItem]:
        return await self._items("series", ContentType.SERIES, category_id)

    async def fetch_movie_detail(self, credentials, movie_id: str) -> ContentItem:
        await self._enter("movie_detail")
        return copy.deepcopy(self.movie_details[movie_id])

    async def fetch_series_detail(self, credentials, series_id: str) -> ContentItem:
        await self._enter("series_detail")
        return copy.deepcopy(self.series_details[series_id])

    async def fetch_program_guide(self, credentials) -> GuideData:
        await self._enter("guide")
        return copy.deepcopy(self.guide)

    async def _items(
        self, operation: str, content_type: ContentType, category_id: str | None
    ) -> list[ContentItem]:
        await self._enter(operation)
        items = copy.deepcopy(self.listings[content_type])
        if category_id is not None:
            items = [item for item in items if item.category_id == category_id]
        return items
