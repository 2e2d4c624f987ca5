"""Connecting, resolving and removing provider profiles."""

from __future__ import annotations

import logging

import httpx

from ..config import Settings
from ..models import EpgSourceConfig, EpgSourceKind, ProfileState, ProviderCredentials
from .repository import LocalFirstRepository
from .session import ProfileSession

logger = logging.getLogger(__name__)


class ProfileManager:
    """Create profiles on successful login and keep their sessions."""

    def __init__(
        self,
        settings: Settings,
        repository: LocalFirstRepository,
        http_client: httpx.AsyncClient,
    ):
        self._settings = settings
        self._repository = repository
        self._http_client = http_client
        self._store = repository.coordinator.store
        self._sessions: dict[str, ProfileSession] = {}

    async def connect(
        self, credentials: ProviderCredentials, display_name: str | None = None
    ) -> ProfileState:
        """Log in and persist the profile; connecting again is idempotent."""

        account = await self._repository.coordinator.client.login(credentials)
        profile = await self._store.upsert_profile(
            credentials, display_name=display_name, account=account
        )
        if profile.guide_source.kind is EpgSourceKind.NONE:
            config = self._default_guide_source(profile.id)
            await self._store.save_guide_source(profile.id, config)
            profile.guide_source = config

        session = self._sessions.pop(profile.id, None)
        if session is not None:
            await session.close()
        else:
            await self._repository.release_profile(profile.id)
        logger.info("Connected profile %s (%s)", profile.id, account.username)
        return profile

    async def get(self, profile_id: str) -> ProfileState:
        return await self._store.require_profile(profile_id)

    async def list_profiles(self) -> list[ProfileState]:
        profiles: list[ProfileState] = []
        for profile_id in await self._store.list_profile_ids():
            profile = await self._store.get_profile(profile_id)
            if profile is not None:
                profiles.append(profile)
        return profiles

    async def session(self, profile_id: str) -> ProfileSession:
        session = self._sessions.get(profile_id)
        if session is not None:
            return session
        profile = await self._store.require_profile(profile_id)
        session = ProfileSession.open(
            profile,
            settings=self._settings,
            repository=self._repository,
            http_client=self._http_client,
        )
        self._sessions[profile_id] = session
        return session

    async def remove(self, profile_id: str) -> None:
        """Forget the profile and every record cached for it."""

        await self._store.require_profile(profile_id)
        session = self._sessions.pop(profile_id, None)
        if session is not None:
            await session.close()
        await self._repository.clear_profile(profile_id)
        logger.info("Removed profile %s", profile_id)

    async def close(self) -> None:
        for session in list(self._sessions.values()):
            await session.close()
        self._sessions.clear()

    def _default_guide_source(self, profile_id: str) -> EpgSourceConfig:
        interval = self._settings.guide_refresh_interval_seconds
        if self._settings.default_guide_url is not None:
            return EpgSourceConfig.from_url(
                str(self._settings.default_guide_url),
                refresh_interval_seconds=interval,
            )
        return EpgSourceConfig.from_provider(
            profile_id, refresh_interval_seconds=interval
        )
