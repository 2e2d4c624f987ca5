"""Local-first read path over the store, the coordinator and the provider."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Union

from ..config import Settings
from ..errors import AuthenticationFailure, ContentFetchError, SyncInProgress
from ..models import (
    Category,
    ContentItem,
    ContentType,
    ProviderCredentials,
    SyncStats,
)
from ..utils import content_cache_key
from .provider import (
    episode_stream_url,
    fetch_listing,
    live_stream_url,
    movie_stream_url,
)
from .store import CatalogStore
from .sync import SyncCoordinator
from .tiers import Tier, TierResult, resolve

logger = logging.getLogger(__name__)

Listing = Union[list[Category], list[ContentItem]]

_REMOTE_FAILURES = (AuthenticationFailure, *ContentFetchError)


class ContentCache:
    """Disposable in-memory projection of stored listings.

    One instance belongs to one repository; nothing here is authoritative.
    Every invalidation bumps a generation so a store read that raced a
    write cannot put its older snapshot back.
    """

    def __init__(self) -> None:
        self._entries: dict[str, list[Any]] = {}
        self._epoch = 0
        self._profile_generations: dict[str, int] = {}
        self._type_generations: dict[tuple[str, ContentType], int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> list[Any] | None:
        return self._entries.get(key)

    def put(self, key: str, values: list[Any]) -> None:
        self._entries[key] = list(values)

    def generation(
        self, profile_id: str, content_type: ContentType
    ) -> tuple[int, int, int]:
        return (
            self._epoch,
            self._profile_generations.get(profile_id, 0),
            self._type_generations.get((profile_id, content_type), 0),
        )

    def put_if_current(
        self,
        key: str,
        values: list[Any],
        profile_id: str,
        content_type: ContentType,
        generation: tuple[int, int, int],
    ) -> bool:
        """Store ``values`` unless the type was invalidated after ``generation``."""

        if self.generation(profile_id, content_type) != generation:
            return False
        self.put(key, values)
        return True

    def invalidate(self, profile_id: str, content_type: ContentType | None = None) -> int:
        """Drop every projection of ``content_type`` (or all of the profile)."""

        if content_type is None:
            prefix = f"{profile_id}:"
            self._profile_generations[profile_id] = (
                self._profile_generations.get(profile_id, 0) + 1
            )
        else:
            prefix = f"{profile_id}:{content_type.value}:"
            type_key = (profile_id, content_type)
            self._type_generations[type_key] = self._type_generations.get(type_key, 0) + 1
        stale = [key for key in self._entries if key.startswith(prefix)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()
        self._epoch += 1


class LocalFirstRepository:
    """Serve catalog reads from the fastest tier holding an answer.

    Reads resolve through ``memory -> store -> remote -> stale``. A cached
    answer is returned without waiting on the network; when the ledger says
    it is stale a background refresh is scheduled whose result only affects
    later reads.
    """

    def __init__(
        self,
        settings: Settings,
        coordinator: SyncCoordinator,
        *,
        cache: ContentCache | None = None,
    ):
        self._settings = settings
        self._coordinator = coordinator
        self._store: CatalogStore = coordinator.store
        self._cache = cache or ContentCache()
        self._background: dict[tuple[str, ContentType], asyncio.Task[None]] = {}
        coordinator.add_listener(self._on_content_changed)

    @property
    def cache(self) -> ContentCache:
        return self._cache

    @property
    def coordinator(self) -> SyncCoordinator:
        return self._coordinator

    def close(self) -> None:
        self._coordinator.remove_listener(self._on_content_changed)
        self._cache.clear()

    async def get(
        self,
        profile_id: str,
        content_type: ContentType,
        *,
        category_id: str | None = None,
        force_refresh: bool = False,
    ) -> Listing:
        """Return the listing for ``content_type``, optionally one category.

        Remote failures are only raised when neither the store nor the
        provider produced an answer; an empty but successful fetch returns an
        empty list.
        """

        if content_type is ContentType.GUIDE:
            raise ValueError("Programme guide reads go through the guide router")
        if category_id is not None and content_type.is_category:
            raise ValueError("Category listings cannot be filtered by category")

        key = content_cache_key(profile_id, content_type, category_id)
        stored: list[Any] = []

        async def memory() -> TierResult[list[Any]]:
            if force_refresh:
                return TierResult.miss()
            cached = self._cache.get(key)
            if not cached:
                return TierResult.miss()
            await self._refresh_if_stale(profile_id, content_type)
            return TierResult.hit(cached)

        async def store() -> TierResult[list[Any]]:
            nonlocal stored
            generation = self._cache.generation(profile_id, content_type)
            stored = await self._read_store(profile_id, content_type, category_id)
            if not stored:
                return TierResult.miss()
            if not self._cache.put_if_current(
                key, stored, profile_id, content_type, generation
            ):
                logger.debug(
                    "Not caching %s for profile %s; it changed during the read",
                    content_type.value,
                    profile_id,
                )
            if force_refresh:
                return TierResult.miss()
            await self._refresh_if_stale(profile_id, content_type)
            return TierResult.hit(stored)

        async def remote() -> TierResult[list[Any]]:
            try:
                fresh = await self._fetch_remote(profile_id, content_type, category_id)
            except _REMOTE_FAILURES as exc:
                logger.warning(
                    "Remote fetch of %s for profile %s failed: %s",
                    content_type.value,
                    profile_id,
                    exc,
                )
                return TierResult.failed(exc)
            return TierResult.hit(fresh)

        async def stale() -> TierResult[list[Any]]:
            return TierResult.hit(stored) if stored else TierResult.miss()

        outcome = await resolve(
            [
                Tier("memory", memory),
                Tier("store", store),
                Tier("remote", remote),
                Tier("stale", stale),
            ]
        )
        if outcome.answered:
            logger.debug(
                "Served %s for profile %s from %s",
                content_type.value,
                profile_id,
                outcome.tier,
            )
            return list(outcome.value or [])
        if outcome.errors:
            raise outcome.errors[-1]
        return []

    async def get_item(
        self, profile_id: str, content_type: ContentType, item_id: str
    ) -> ContentItem | None:
        cached = self._cache.get(content_cache_key(profile_id, content_type))
        if cached:
            for item in cached:
                if item.id == item_id:
                    return item
        return await self._store.get_item(profile_id, content_type, item_id)

    async def get_series_detail(self, profile_id: str, series_id: str) -> ContentItem:
        """Return a series with its seasons, fetching them when not cached."""

        return await self._get_detail(profile_id, ContentType.SERIES, series_id)

    async def get_movie_detail(self, profile_id: str, movie_id: str) -> ContentItem:
        """Return a movie with its info fields, fetching them when not cached."""

        return await self._get_detail(profile_id, ContentType.MOVIES, movie_id)

    async def _get_detail(
        self, profile_id: str, content_type: ContentType, item_id: str
    ) -> ContentItem:
        cached = await self._store.get_item(profile_id, content_type, item_id)
        if cached is not None and cached.has_details:
            return cached

        credentials = await self._credentials(profile_id)
        client = self._coordinator.client
        try:
            if content_type is ContentType.SERIES:
                detail = await client.fetch_series_detail(credentials, item_id)
            else:
                detail = await client.fetch_movie_detail(credentials, item_id)
        except _REMOTE_FAILURES:
            if cached is not None:
                logger.warning(
                    "Serving %s %s without details for profile %s",
                    content_type.value,
                    item_id,
                    profile_id,
                )
                return cached
            raise

        if cached is not None:
            detail = detail.model_copy(
                update={
                    "category_id": detail.category_id or cached.category_id,
                    "position": cached.position,
                }
            )
        await self._coordinator.store_item(profile_id, detail)
        return detail

    async def stream_url(
        self,
        profile_id: str,
        item: ContentItem,
        *,
        episode_id: str | None = None,
        extension: str | None = None,
    ) -> str:
        credentials = await self._credentials(profile_id)
        if item.content_type is ContentType.CHANNELS:
            return live_stream_url(
                credentials, item.stream_id or item.id, extension=extension or "ts"
            )
        if item.content_type is ContentType.MOVIES:
            return movie_stream_url(
                credentials,
                item.stream_id or item.id,
                extension=extension or item.container_extension or "mp4",
            )
        if item.content_type is ContentType.SERIES:
            if episode_id is None:
                raise ValueError("Series playback needs an episode id")
            container = extension
            for season in item.seasons:
                for episode in season.episodes:
                    if episode.id == episode_id:
                        container = container or episode.container_extension
            return episode_stream_url(credentials, episode_id, extension=container or "mp4")
        raise ValueError(f"{item.content_type.value} items are not playable")

    async def ensure_initial_sync(self, profile_id: str) -> SyncStats | None:
        """Run the initial sync unless the ledger says it already completed."""

        if not await self._coordinator.needs_initial_sync(profile_id):
            return None
        credentials = await self._credentials(profile_id)
        return await self._coordinator.initial_sync(profile_id, credentials)

    async def force_refresh_all(self, profile_id: str) -> SyncStats:
        credentials = await self._credentials(profile_id)
        return await self._coordinator.incremental_sync(
            profile_id,
            credentials,
            force_channels=True,
            force_movies=True,
            force_series=True,
            force_guide=True,
        )

    async def release_profile(self, profile_id: str) -> None:
        """Drop the in-memory state of a profile whose session ended."""

        await self._cancel_background(profile_id)
        dropped = self._cache.invalidate(profile_id)
        logger.debug("Released %s cached projections of profile %s", dropped, profile_id)

    async def clear_profile(self, profile_id: str) -> None:
        await self._cancel_background(profile_id)
        self._cache.invalidate(profile_id)
        await self._store.clear_profile(profile_id)

    def background_pending(self, profile_id: str | None = None) -> int:
        return sum(
            1
            for (owner, _), task in self._background.items()
            if not task.done() and (profile_id is None or owner == profile_id)
        )

    async def wait_for_background(self) -> None:
        """Wait until every background refresh started so far has finished."""

        while True:
            pending = [task for task in self._background.values() if not task.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        self._prune()

    async def cancel_background(self) -> None:
        await self._cancel_background(None)

    async def _cancel_background(self, profile_id: str | None) -> None:
        tasks = [
            task
            for (owner, _), task in list(self._background.items())
            if profile_id is None or owner == profile_id
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._prune()

    def _prune(self) -> None:
        for key, task in list(self._background.items()):
            if task.done():
                self._background.pop(key, None)

    async def _read_store(
        self,
        profile_id: str,
        content_type: ContentType,
        category_id: str | None,
    ) -> list[Any]:
        if content_type.is_category:
            return await self._store.get_categories(profile_id, content_type)
        return await self._store.get_items(
            profile_id, content_type, category_id=category_id
        )

    async def _fetch_remote(
        self,
        profile_id: str,
        content_type: ContentType,
        category_id: str | None,
    ) -> list[Any]:
        credentials = await self._credentials(profile_id)
        if category_id is not None:
            # Filtered slices are never written back.
            return await fetch_listing(
                self._coordinator.client,
                credentials,
                content_type,
                category_id=category_id,
            )
        try:
            await self._coordinator.refresh(
                profile_id, credentials, [content_type], isolate_failures=False
            )
        except SyncInProgress:
            logger.info(
                "Sync running for profile %s, fetching %s without storing",
                profile_id,
                content_type.value,
            )
            return await fetch_listing(self._coordinator.client, credentials, content_type)
        return await self._read_store(profile_id, content_type, None)

    async def _refresh_if_stale(self, profile_id: str, content_type: ContentType) -> None:
        ledger = await self._store.get_ledger(profile_id)
        if ledger.is_stale(content_type, self._settings.ttl_for(content_type)):
            self._schedule_refresh(profile_id, content_type)

    def _schedule_refresh(self, profile_id: str, content_type: ContentType) -> None:
        key = (profile_id, content_type)
        existing = self._background.get(key)
        if existing and not existing.done():
            return
        if self._coordinator.is_syncing(profile_id):
            logger.debug(
                "Skipping background refresh of %s; profile %s is syncing",
                content_type.value,
                profile_id,
            )
            return

        async def _runner() -> None:
            try:
                credentials = await self._credentials(profile_id)
                await self._coordinator.refresh(profile_id, credentials, [content_type])
            except SyncInProgress:
                logger.debug(
                    "Background refresh of %s for %s lost the race to another sync",
                    content_type.value,
                    profile_id,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception(
                    "Background refresh of %s for profile %s failed: %s",
                    content_type.value,
                    profile_id,
                    exc,
                )
            finally:
                if self._background.get(key) is task:
                    self._background.pop(key, None)

        logger.info(
            "Scheduling background refresh of %s for profile %s",
            content_type.value,
            profile_id,
        )
        task = asyncio.create_task(_runner())
        self._background[key] = task

    async def _credentials(self, profile_id: str) -> ProviderCredentials:
        profile = await self._store.require_profile(profile_id)
        return profile.credentials

    def _on_content_changed(self, profile_id: str, content_type: ContentType) -> None:
        dropped = self._cache.invalidate(profile_id, content_type)
        if dropped:
            logger.debug(
                "Dropped %s cached %s projections for profile %s",
                dropped,
                content_type.value,
                profile_id,
            )


__all__ = ["ContentCache", "LocalFirstRepository"]
