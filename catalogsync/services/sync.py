"""Synchronisation of provider content into the local store."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

from ..config import Settings
from ..errors import AuthenticationFailure, ContentFetchError, SyncInProgress
from ..models import (
    SYNC_ORDER,
    ContentFamily,
    ContentItem,
    ContentType,
    ProviderCredentials,
    SyncProgress,
    SyncState,
    SyncStats,
    family_of,
    provider_source_key,
)
from ..utils import utc_now
from .progress import ProgressFeed
from .provider import RemoteContentClient, fetch_listing
from .store import CatalogStore

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str, ContentType], None]


class SyncCoordinator:
    """Fetch-and-store of every content type, one sync per profile at a time.

    The coordinator is the only writer of categories, items and the sync
    ledger. A content type's ledger entry is recorded right after that type
    is stored, so a later failure never rolls back earlier progress.
    """

    def __init__(
        self,
        settings: Settings,
        client: RemoteContentClient,
        store: CatalogStore,
        *,
        progress: ProgressFeed | None = None,
    ):
        self._settings = settings
        self._client = client
        self._store = store
        self.progress = progress or ProgressFeed()
        self._locks: dict[str, asyncio.Lock] = {}
        self._listeners: list[ChangeListener] = []

    @property
    def store(self) -> CatalogStore:
        return self._store

    @property
    def client(self) -> RemoteContentClient:
        return self._client

    def add_listener(self, listener: ChangeListener) -> None:
        """Call ``listener(profile_id, content_type)`` after each stored write."""

        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def is_syncing(self, profile_id: str) -> bool:
        lock = self._locks.get(profile_id)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def _exclusive(self, profile_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(profile_id, asyncio.Lock())
        if lock.locked():
            logger.warning("Sync already in progress for profile %s", profile_id)
            raise SyncInProgress(profile_id)
        async with lock:
            yield

    async def initial_sync(
        self, profile_id: str, credentials: ProviderCredentials
    ) -> SyncStats:
        """Run the first full pass for a profile.

        Authentication failures abort before any content is fetched and are
        re-raised. Per-type failures are collected in ``SyncStats.errors``
        and the profile is marked as initially synced regardless.
        """

        async with self._exclusive(profile_id):
            started = time.monotonic()
            await self._authenticate(profile_id, credentials)

            families = self._settings.initial_families()
            types = [ct for ct in SYNC_ORDER if family_of(ct) in families]
            stats = SyncStats(skipped=[ct for ct in SYNC_ORDER if ct not in types])
            logger.info(
                "Starting initial sync for profile %s (%s)",
                profile_id,
                ", ".join(ct.value for ct in types),
            )
            await self._run(profile_id, credentials, types, stats)
            await self._store.mark_initial_sync_complete(profile_id)

            if ContentType.CHANNELS not in stats.imported:
                logger.warning(
                    "Initial sync for profile %s finished without channels", profile_id
                )
            return self._finish(profile_id, stats, started)

    async def incremental_sync(
        self,
        profile_id: str,
        credentials: ProviderCredentials,
        *,
        force_channels: bool = False,
        force_movies: bool = False,
        force_series: bool = False,
        force_guide: bool = False,
    ) -> SyncStats:
        """Refresh only the content types whose TTL expired or that are forced."""

        forced = {
            ContentFamily.CHANNELS: force_channels,
            ContentFamily.MOVIES: force_movies,
            ContentFamily.SERIES: force_series,
            ContentFamily.GUIDE: force_guide,
        }
        async with self._exclusive(profile_id):
            started = time.monotonic()
            ledger = await self._store.get_ledger(profile_id)
            now = utc_now()
            due = [
                ct
                for ct in SYNC_ORDER
                if forced[family_of(ct)]
                or ledger.is_stale(ct, self._settings.ttl_for(ct), now)
            ]
            stats = SyncStats(skipped=[ct for ct in SYNC_ORDER if ct not in due])
            if not due:
                logger.debug("Everything is fresh for profile %s", profile_id)
                return self._finish(profile_id, stats, started)

            await self._authenticate(profile_id, credentials)
            logger.info(
                "Incremental sync for profile %s: %s",
                profile_id,
                ", ".join(ct.value for ct in due),
            )
            await self._run(profile_id, credentials, due, stats)
            return self._finish(profile_id, stats, started)

    async def refresh(
        self,
        profile_id: str,
        credentials: ProviderCredentials,
        content_types: Iterable[ContentType],
        *,
        isolate_failures: bool = True,
    ) -> SyncStats:
        """Fetch and store exactly ``content_types``, regardless of staleness.

        With ``isolate_failures=False`` a content failure is re-raised after
        the lock is released instead of being collected into the stats.
        """

        requested = set(content_types)
        types = [ct for ct in SYNC_ORDER if ct in requested]
        async with self._exclusive(profile_id):
            started = time.monotonic()
            await self._ensure_profile(profile_id, credentials)
            stats = SyncStats()
            await self._run(
                profile_id, credentials, types, stats, isolate=isolate_failures
            )
            return self._finish(profile_id, stats, started)

    async def refresh_live(
        self, profile_id: str, credentials: ProviderCredentials
    ) -> SyncStats:
        return await self.incremental_sync(
            profile_id, credentials, force_channels=True, force_guide=True
        )

    async def refresh_vod(
        self, profile_id: str, credentials: ProviderCredentials
    ) -> SyncStats:
        return await self.incremental_sync(
            profile_id, credentials, force_movies=True, force_series=True
        )

    async def store_item(self, profile_id: str, item: ContentItem) -> None:
        """Persist one fetched item, such as a series with its episodes."""

        await self._store.put_item(profile_id, item)
        self._notify(profile_id, item.content_type)

    async def needs_initial_sync(self, profile_id: str) -> bool:
        ledger = await self._store.get_ledger(profile_id)
        return not ledger.initial_sync_complete

    async def needs_refresh(self, profile_id: str) -> bool:
        ledger = await self._store.get_ledger(profile_id)
        now = utc_now()
        return any(
            ledger.is_stale(ct, self._settings.ttl_for(ct), now) for ct in SYNC_ORDER
        )

    async def status_summary(self, profile_id: str) -> dict[str, Any]:
        ledger = await self._store.get_ledger(profile_id)
        summary = ledger.summary(self._settings.ttl_for)
        summary["syncing"] = self.is_syncing(profile_id)
        # Content never synced is shown as degraded; stale content is not.
        summary["degraded"] = [
            ct.value
            for ct in SYNC_ORDER
            if ledger.initial_sync_complete and not ledger.has_synced(ct)
        ]
        latest = self.progress.latest
        if latest.profile_id == profile_id:
            summary["progress"] = {
                "state": latest.state.value,
                "operation": latest.operation,
                "progress": latest.progress,
                "error": latest.error,
            }
        return summary

    async def _authenticate(
        self, profile_id: str, credentials: ProviderCredentials
    ) -> None:
        self._publish(profile_id, SyncState.SYNCING, "Authenticating", 0.0)
        try:
            account = await self._client.login(credentials)
        except (AuthenticationFailure, *ContentFetchError) as exc:
            logger.warning("Sync for profile %s aborted: %s", profile_id, exc)
            self._publish(
                profile_id, SyncState.FAILED, "Authenticating", 0.0, error=str(exc)
            )
            raise
        await self._store.upsert_profile(
            credentials, profile_id=profile_id, account=account
        )

    async def _ensure_profile(
        self, profile_id: str, credentials: ProviderCredentials
    ) -> None:
        if await self._store.get_profile(profile_id) is None:
            await self._store.upsert_profile(credentials, profile_id=profile_id)

    async def _run(
        self,
        profile_id: str,
        credentials: ProviderCredentials,
        types: Sequence[ContentType],
        stats: SyncStats,
        *,
        isolate: bool = True,
    ) -> None:
        total = len(types) or 1
        for index, content_type in enumerate(types):
            operation = f"Syncing {content_type.label}"
            self._publish(profile_id, SyncState.SYNCING, operation, index / total)
            try:
                count = await self._sync_type(profile_id, credentials, content_type)
            except ContentFetchError as exc:
                if not isolate:
                    self._publish(
                        profile_id,
                        SyncState.FAILED,
                        operation,
                        index / total,
                        error=str(exc),
                    )
                    raise
                message = f"{content_type.label.capitalize()}: {exc}"
                logger.warning(
                    "Sync of %s for profile %s failed: %s",
                    content_type.value,
                    profile_id,
                    exc,
                )
                stats.errors.append(message)
                continue
            except AuthenticationFailure as exc:
                self._publish(
                    profile_id, SyncState.FAILED, operation, index / total, error=str(exc)
                )
                raise
            except Exception as exc:
                logger.exception(
                    "Unexpected error syncing %s for profile %s",
                    content_type.value,
                    profile_id,
                )
                self._publish(
                    profile_id, SyncState.FAILED, operation, index / total, error=str(exc)
                )
                raise
            stats.imported[content_type] = count
            self._notify(profile_id, content_type)

    async def _sync_type(
        self,
        profile_id: str,
        credentials: ProviderCredentials,
        content_type: ContentType,
    ) -> int:
        if content_type is ContentType.GUIDE:
            guide = await self._client.fetch_program_guide(credentials)
            count = await self._store.replace_guide(
                profile_id,
                provider_source_key(profile_id),
                guide,
                kind="provider",
                keep_past=timedelta(hours=self._settings.guide_keep_past_hours),
            )
        elif content_type.is_category:
            categories = await self._client.fetch_categories(credentials, content_type)
            count = await self._store.replace_categories(
                profile_id, content_type, categories
            )
        else:
            items = await fetch_listing(self._client, credentials, content_type)
            count = await self._store.replace_items(profile_id, content_type, items)

        await self._store.record_sync(profile_id, content_type, count)
        logger.info(
            "Stored %s %s for profile %s", count, content_type.label, profile_id
        )
        return count

    def _notify(self, profile_id: str, content_type: ContentType) -> None:
        for listener in list(self._listeners):
            try:
                listener(profile_id, content_type)
            except Exception:
                logger.exception("Content change listener failed")

    def _finish(self, profile_id: str, stats: SyncStats, started: float) -> SyncStats:
        stats.duration = timedelta(seconds=time.monotonic() - started)
        logger.info(
            "Sync for profile %s finished: %s items, %s errors in %.1fs",
            profile_id,
            stats.total_items,
            len(stats.errors),
            stats.duration.total_seconds(),
        )
        self._publish(profile_id, SyncState.COMPLETED, None, 1.0, stats=stats)
        return stats

    def _publish(
        self,
        profile_id: str,
        state: SyncState,
        operation: str | None,
        progress: float,
        *,
        error: str | None = None,
        stats: SyncStats | None = None,
    ) -> None:
        self.progress.publish(
            SyncProgress(
                profile_id=profile_id,
                state=state,
                operation=operation,
                progress=progress,
                error=error,
                stats=stats,
            )
        )
