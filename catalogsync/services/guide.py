"""Programme guide routing across interchangeable guide sources."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Protocol

import httpx

from ..config import Settings
from ..errors import AuthenticationFailure, ContentFetchError, NotConfigured
from ..models import (
    ContentType,
    EpgSourceConfig,
    EpgSourceKind,
    GuideData,
    ProgramGuideEntry,
    ProviderCredentials,
    guide_source_key,
    provider_source_key,
)
from ..schedule import count_programs, current_entry, entries_in_range, next_entry
from ..utils import utc_now
from .provider import RemoteContentClient, get_with_retries
from .store import CatalogStore
from .tiers import Tier, TierResult, resolve
from .xmltv import GuideParser, XmltvParser

logger = logging.getLogger(__name__)

_FETCH_FAILURES = (AuthenticationFailure, NotConfigured, *ContentFetchError)


class GuideSource(Protocol):
    """A place programme guide data can be fetched from."""

    @property
    def key(self) -> str:
        ...

    @property
    def kind(self) -> EpgSourceKind:
        ...

    def validate(self) -> None:
        """Raise :class:`NotConfigured` when the source cannot be used."""

    async def fetch(self) -> GuideData:
        ...


class UrlGuideSource:
    """XMLTV document downloaded from a fixed URL."""

    kind = EpgSourceKind.URL

    def __init__(
        self,
        config: EpgSourceConfig,
        http_client: httpx.AsyncClient,
        settings: Settings,
        *,
        parser: GuideParser | None = None,
    ):
        self._config = config
        self._client = http_client
        self._settings = settings
        self._parser = parser or XmltvParser()

    @property
    def key(self) -> str:
        return self._config.source_key

    def validate(self) -> None:
        if not self._config.url:
            raise NotConfigured("Guide URL is missing")

    async def fetch(self) -> GuideData:
        self.validate()
        response = await get_with_retries(
            self._client,
            self._config.url or "",
            headers={"User-Agent": self._settings.user_agent},
            resource="guide document",
            timeout=self._settings.guide_download_timeout_seconds,
            max_retries=self._settings.provider_max_retries,
        )
        logger.info(
            "Downloaded guide from %s (%s bytes)", self._config.url, len(response.content)
        )
        return self._parser.parse(response.content).programs


class ProviderGuideSource:
    """Guide served by the provider account the profile belongs to."""

    kind = EpgSourceKind.PROVIDER

    def __init__(
        self,
        profile_id: str,
        credentials: ProviderCredentials | None,
        client: RemoteContentClient,
    ):
        self._profile_id = profile_id
        self._credentials = credentials
        self._client = client

    @property
    def key(self) -> str:
        return provider_source_key(self._profile_id)

    def validate(self) -> None:
        if self._credentials is None:
            raise NotConfigured("Provider guide needs the profile's credentials")

    async def fetch(self) -> GuideData:
        credentials = self._credentials
        if credentials is None:
            raise NotConfigured("Provider guide needs the profile's credentials")
        return await self._client.fetch_program_guide(credentials)


def build_guide_source(
    config: EpgSourceConfig,
    *,
    settings: Settings,
    http_client: httpx.AsyncClient,
    remote_client: RemoteContentClient,
    credentials: ProviderCredentials | None = None,
    parser: GuideParser | None = None,
) -> GuideSource | None:
    """Select the source implementation named by ``config``."""

    if not config.is_configured:
        return None
    if config.kind is EpgSourceKind.URL:
        return UrlGuideSource(config, http_client, settings, parser=parser)
    if config.kind is EpgSourceKind.PROVIDER:
        return ProviderGuideSource(config.profile_id or "", credentials, remote_client)
    return None


class GuideState(str, Enum):
    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"
    FETCHING = "fetching"
    READY = "ready"
    DEGRADED = "degraded"


SourceFactory = Callable[[EpgSourceConfig], "GuideSource | None"]


class EpgSourceRouter:
    """Answer programme queries from whichever guide source is configured.

    Data resolves through ``memory -> store -> source -> stale`` keyed by the
    source identity. A missing guide is a normal state: queries answer
    ``None`` or an empty schedule rather than raising.
    """

    def __init__(
        self,
        profile_id: str,
        store: CatalogStore,
        source_factory: SourceFactory,
        settings: Settings,
    ):
        self._profile_id = profile_id
        self._store = store
        self._source_factory = source_factory
        self._settings = settings
        self._config = EpgSourceConfig.none()
        self._source: GuideSource | None = None
        self._state = GuideState.UNCONFIGURED
        self._memory: dict[str, GuideData] = {}
        self._fetched_at: datetime | None = None
        self._last_attempt: datetime | None = None
        self._fetch_lock = asyncio.Lock()
        self._background: asyncio.Task[None] | None = None
        self._generation = 0

    @property
    def state(self) -> GuideState:
        return self._state

    @property
    def config(self) -> EpgSourceConfig:
        return self._config

    @property
    def source_key(self) -> str:
        return guide_source_key(self._config)

    @property
    def keep_past(self) -> timedelta:
        return timedelta(hours=self._settings.guide_keep_past_hours)

    def configure(self, config: EpgSourceConfig) -> GuideState:
        """Activate ``config``; switching sources resets to ``configured``.

        The previous source's in-memory data is dropped while its stored
        entries stay available for a later switch back.
        """

        previous_key = self.source_key
        if config.is_configured and config.source_key == previous_key:
            self._config = config
            return self._state

        source = self._source_factory(config)
        if source is not None:
            source.validate()
        self._memory.pop(previous_key, None)
        self._config = config if source is not None else EpgSourceConfig.none()
        self._source = source
        self._fetched_at = None
        self._last_attempt = None
        self._state = GuideState.CONFIGURED if source is not None else GuideState.UNCONFIGURED
        logger.info(
            "Guide source for profile %s set to %s (%s)",
            self._profile_id,
            self.source_key,
            self._state.value,
        )
        return self._state

    async def current_program(
        self, channel_id: str, now: datetime | None = None
    ) -> ProgramGuideEntry | None:
        now = now or utc_now()
        guide = await self._guide(now)
        return current_entry(guide.get(channel_id, []), now)

    async def next_program(
        self, channel_id: str, now: datetime | None = None
    ) -> ProgramGuideEntry | None:
        now = now or utc_now()
        guide = await self._guide(now)
        return next_entry(guide.get(channel_id, []), now)

    async def schedule(
        self, channel_id: str, start: datetime, end: datetime
    ) -> list[ProgramGuideEntry]:
        if end <= start:
            return []
        guide = await self._guide(utc_now())
        return entries_in_range(guide.get(channel_id, []), start, end)

    async def daily_schedule(self, channel_id: str, day: date) -> list[ProgramGuideEntry]:
        start = datetime.combine(day, time.min)
        return await self.schedule(channel_id, start, start + timedelta(days=1))

    async def refresh(self) -> int:
        """Fetch the configured source now and return the stored programme count.

        Failures are re-raised after the state is updated; existing data is
        kept when the fetch fails.
        """

        if self._source is None:
            raise NotConfigured("No guide source configured")
        async with self._fetch_lock:
            guide = await self._fetch_and_store(utc_now())
        return count_programs(guide)

    async def wait_for_background(self) -> None:
        task = self._background
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def close(self) -> None:
        task = self._background
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._memory.clear()

    def content_changed(self, profile_id: str, content_type: ContentType) -> None:
        """Drop the in-memory provider guide after a sync stored a new one."""

        if profile_id != self._profile_id or content_type is not ContentType.GUIDE:
            return
        key = provider_source_key(profile_id)
        self._generation += 1
        if self._memory.pop(key, None) is not None:
            logger.debug(
                "Dropped in-memory guide %s for profile %s after a sync", key, profile_id
            )

    def status(self) -> dict[str, Any]:
        guide = self._memory.get(self.source_key, {})
        return {
            "state": self._state.value,
            "sourceKey": self.source_key,
            "kind": self._config.kind.value,
            "fetchedAt": self._fetched_at.isoformat() if self._fetched_at else None,
            "channels": len(guide),
            "programs": count_programs(guide),
        }

    async def _guide(self, now: datetime) -> GuideData:
        if self._source is None:
            return {}
        key = self.source_key

        async def memory() -> TierResult[GuideData]:
            cached = self._memory.get(key)
            if cached is None:
                return TierResult.miss()
            self._refresh_in_background_if_due(now)
            return TierResult.hit(cached)

        async def store() -> TierResult[GuideData]:
            generation = self._generation
            guide = await self._store.get_guide(
                self._profile_id, key, start=now - self.keep_past
            )
            if not guide:
                return TierResult.miss()
            meta = await self._store.guide_source_meta(self._profile_id, key)
            if generation == self._generation:
                self._remember(key, guide, meta.fetched_at if meta else None)
            self._refresh_in_background_if_due(now)
            return TierResult.hit(guide)

        async def source() -> TierResult[GuideData]:
            if self._state is GuideState.DEGRADED and not self._due(now):
                return TierResult.miss()
            async with self._fetch_lock:
                cached = self._memory.get(key)
                if cached is not None:
                    return TierResult.hit(cached)
                try:
                    guide = await self._fetch_and_store(now)
                except _FETCH_FAILURES as exc:
                    return TierResult.failed(exc)
            return TierResult.hit(guide)

        async def stale() -> TierResult[GuideData]:
            cached = self._memory.get(key)
            return TierResult.hit(cached) if cached is not None else TierResult.miss()

        outcome = await resolve(
            [
                Tier("memory", memory),
                Tier("store", store),
                Tier("source", source),
                Tier("stale", stale),
            ]
        )
        return outcome.value or {}

    async def _fetch_and_store(self, now: datetime) -> GuideData:
        source = self._source
        if source is None:
            raise NotConfigured("No guide source configured")
        key = source.key
        had_data = key in self._memory
        self._state = GuideState.FETCHING
        self._last_attempt = now
        completed = False
        try:
            fetched = await source.fetch()
            await self._store.replace_guide(
                self._profile_id,
                key,
                fetched,
                kind=source.kind.value,
                keep_past=self.keep_past,
                now=now,
            )
            guide = await self._store.get_guide(
                self._profile_id, key, start=now - self.keep_past
            )
            completed = True
        except _FETCH_FAILURES as exc:
            logger.warning(
                "Guide fetch from %s for profile %s failed: %s",
                key,
                self._profile_id,
                exc,
            )
            raise
        finally:
            if not completed and key == self.source_key:
                self._state = GuideState.READY if had_data else GuideState.DEGRADED

        if key != self.source_key:
            # The source was switched while this fetch ran.
            return guide
        self._remember(key, guide, now)
        logger.info(
            "Guide %s ready for profile %s: %s channels, %s programmes",
            key,
            self._profile_id,
            len(guide),
            count_programs(guide),
        )
        return guide

    def _remember(self, key: str, guide: GuideData, fetched_at: datetime | None) -> None:
        self._memory[key] = guide
        self._fetched_at = fetched_at
        self._state = GuideState.READY

    def _due(self, now: datetime) -> bool:
        stamps = [stamp for stamp in (self._fetched_at, self._last_attempt) if stamp]
        if not stamps:
            return True
        return now - max(stamps) >= self._config.refresh_interval

    def _refresh_in_background_if_due(self, now: datetime) -> None:
        if not self._config.auto_refresh or not self._due(now):
            return
        if self._background is not None and not self._background.done():
            return

        async def _runner() -> None:
            try:
                async with self._fetch_lock:
                    await self._fetch_and_store(now)
            except _FETCH_FAILURES:
                # Already logged; the cached guide stays in use.
                pass
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception(
                    "Background guide refresh for profile %s failed: %s",
                    self._profile_id,
                    exc,
                )
            finally:
                self._background = None

        self._background = asyncio.create_task(_runner())
