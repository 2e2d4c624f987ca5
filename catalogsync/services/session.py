"""Per-profile bundle of the catalog repository and the guide router."""

from __future__ import annotations

import logging
from functools import partial

import httpx

from ..config import Settings
from ..errors import NotConfigured
from ..models import ContentType, EpgSourceConfig, ProfileState
from .guide import EpgSourceRouter, GuideState, build_guide_source
from .repository import Listing, LocalFirstRepository

logger = logging.getLogger(__name__)


class ProfileSession:
    """Runtime state tied to one connected profile.

    The guide router and the profile's cached catalog projections live as
    long as the session; closing the session drops them without touching
    stored data.
    """

    def __init__(
        self,
        profile: ProfileState,
        repository: LocalFirstRepository,
        guide: EpgSourceRouter,
    ):
        self.profile = profile
        self.repository = repository
        self.guide = guide
        repository.coordinator.add_listener(guide.content_changed)

    @classmethod
    def open(
        cls,
        profile: ProfileState,
        *,
        settings: Settings,
        repository: LocalFirstRepository,
        http_client: httpx.AsyncClient,
    ) -> "ProfileSession":
        factory = partial(
            build_guide_source,
            settings=settings,
            http_client=http_client,
            remote_client=repository.coordinator.client,
            credentials=profile.credentials,
        )
        router = EpgSourceRouter(
            profile.id, repository.coordinator.store, factory, settings
        )
        try:
            router.configure(profile.guide_source)
        except NotConfigured as exc:
            logger.warning(
                "Stored guide source for profile %s is unusable: %s", profile.id, exc
            )
        return cls(profile, repository, router)

    @property
    def profile_id(self) -> str:
        return self.profile.id

    async def content(
        self,
        content_type: ContentType,
        *,
        category_id: str | None = None,
        force_refresh: bool = False,
    ) -> Listing:
        return await self.repository.get(
            self.profile.id,
            content_type,
            category_id=category_id,
            force_refresh=force_refresh,
        )

    async def configure_guide(self, config: EpgSourceConfig) -> GuideState:
        """Switch the guide source and remember the choice for the profile."""

        state = self.guide.configure(config)
        await self.repository.coordinator.store.save_guide_source(self.profile.id, config)
        self.profile.guide_source = config
        return state

    async def close(self) -> None:
        self.repository.coordinator.remove_listener(self.guide.content_changed)
        await self.guide.close()
        await self.repository.release_profile(self.profile.id)
