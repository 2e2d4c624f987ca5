"""Entry point for the catalogsync HTTP service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import date, datetime, timedelta
from typing import Any, Literal

import httpx
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import Settings, get_settings
from .database import Database
from .errors import (
    AuthenticationFailure,
    CatalogSyncError,
    NotConfigured,
    ParseFailure,
    ProfileNotFound,
    SyncInProgress,
    TransportFailure,
)
from .models import (
    ContentType,
    EpgSourceConfig,
    EpgSourceKind,
    ProfileState,
    ProgramGuideEntry,
    ProviderCredentials,
)
from .services.profiles import ProfileManager
from .services.provider import XtreamClient
from .services.repository import LocalFirstRepository
from .services.store import CatalogStore
from .services.sync import SyncCoordinator
from .utils import as_naive_utc, utc_now

logger = logging.getLogger(__name__)

_ERROR_STATUS: tuple[tuple[type[CatalogSyncError], int], ...] = (
    (ProfileNotFound, 404),
    (AuthenticationFailure, 401),
    (SyncInProgress, 409),
    (NotConfigured, 409),
    (TransportFailure, 502),
    (ParseFailure, 502),
)


class ConnectProfileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    base_url: str = Field(alias="baseUrl")
    username: str
    password: str
    display_name: str | None = Field(default=None, alias="displayName")


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    initial: bool | None = None
    scope: Literal["live", "vod"] | None = None
    force_channels: bool = Field(default=False, alias="forceChannels")
    force_movies: bool = Field(default=False, alias="forceMovies")
    force_series: bool = Field(default=False, alias="forceSeries")
    force_guide: bool = Field(default=False, alias="forceGuide")


class GuideSourceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: EpgSourceKind
    url: str | None = None
    refresh_interval_seconds: int | None = Field(
        default=None, alias="refreshIntervalSeconds", ge=60
    )
    auto_refresh: bool = Field(default=True, alias="autoRefresh")


def create_app(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the FastAPI app; ``transport`` replaces the network in tests."""

    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI):
        exit_stack = AsyncExitStack()
        http_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(
                timeout=httpx.Timeout(settings.provider_timeout_seconds, connect=10.0),
                follow_redirects=True,
                transport=transport,
            )
        )
        database = Database(settings.database_url)
        await database.create_all()

        store = CatalogStore(database.session_factory)
        coordinator = SyncCoordinator(settings, XtreamClient(settings, http_client), store)
        repository = LocalFirstRepository(settings, coordinator)
        profiles = ProfileManager(settings, repository, http_client)

        fastapi_app.state.database = database
        fastapi_app.state.coordinator = coordinator
        fastapi_app.state.repository = repository
        fastapi_app.state.profiles = profiles

        try:
            yield
        finally:  # pragma: no cover - teardown path exercised at runtime
            await repository.cancel_background()
            await profiles.close()
            repository.close()
            coordinator.progress.close()
            await database.dispose()
            await exit_stack.aclose()

    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Local-first catalog sync for IPTV providers",
        version="1.0.0",
        lifespan=lifespan,
    )
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    @fastapi_app.exception_handler(CatalogSyncError)
    async def _catalog_error_handler(_: Request, exc: CatalogSyncError) -> JSONResponse:
        status_code = 500
        for error_type, mapped in _ERROR_STATUS:
            if isinstance(exc, error_type):
                status_code = mapped
                break
        if status_code >= 500:
            logger.warning("Request failed: %s", exc)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    fastapi_app.state.settings = settings
    register_routes(fastapi_app)
    return fastapi_app


def get_profiles(app: FastAPI) -> ProfileManager:
    profiles = getattr(app.state, "profiles", None)
    if not isinstance(profiles, ProfileManager):
        raise RuntimeError("Profile manager not initialised")
    return profiles


def get_coordinator(app: FastAPI) -> SyncCoordinator:
    coordinator = getattr(app.state, "coordinator", None)
    if not isinstance(coordinator, SyncCoordinator):
        raise RuntimeError("Sync coordinator not initialised")
    return coordinator


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.post("/profiles", status_code=201)
    async def connect_profile(request: Request) -> dict[str, Any]:
        payload = await _json_body(request)
        try:
            body = ConnectProfileRequest.model_validate(payload)
            credentials = ProviderCredentials(
                base_url=body.base_url, username=body.username, password=body.password
            )
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=_validation_detail(exc)) from exc
        profile = await get_profiles(fastapi_app).connect(
            credentials, display_name=body.display_name
        )
        coordinator = get_coordinator(fastapi_app)
        payload = _profile_payload(profile)
        payload["needsInitialSync"] = await coordinator.needs_initial_sync(profile.id)
        return payload

    @fastapi_app.get("/profiles")
    async def list_profiles() -> dict[str, Any]:
        profiles = await get_profiles(fastapi_app).list_profiles()
        return {"profiles": [_profile_payload(profile) for profile in profiles]}

    @fastapi_app.delete("/profiles/{profile_id}", status_code=204)
    async def remove_profile(profile_id: str) -> Response:
        await get_profiles(fastapi_app).remove(profile_id)
        return Response(status_code=204)

    @fastapi_app.get("/profiles/{profile_id}/content/{content_type}")
    async def list_content(
        profile_id: str,
        content_type: str,
        category: str | None = None,
        refresh: bool = False,
    ) -> dict[str, Any]:
        kind = _parse_content_type(content_type)
        session = await get_profiles(fastapi_app).session(profile_id)
        try:
            items = await session.content(
                kind, category_id=category, force_refresh=refresh
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "profileId": profile_id,
            "type": kind.value,
            "category": category,
            "count": len(items),
            "items": [item.model_dump(mode="json") for item in items],
        }

    @fastapi_app.get("/profiles/{profile_id}/series/{series_id}")
    async def series_detail(profile_id: str, series_id: str) -> dict[str, Any]:
        session = await get_profiles(fastapi_app).session(profile_id)
        series = await session.repository.get_series_detail(profile_id, series_id)
        return series.model_dump(mode="json")

    @fastapi_app.get("/profiles/{profile_id}/movies/{movie_id}")
    async def movie_detail(profile_id: str, movie_id: str) -> dict[str, Any]:
        session = await get_profiles(fastapi_app).session(profile_id)
        movie = await session.repository.get_movie_detail(profile_id, movie_id)
        return movie.model_dump(mode="json")

    @fastapi_app.post("/profiles/{profile_id}/sync")
    async def sync_profile(profile_id: str, request: Request) -> dict[str, Any]:
        payload = await _json_body(request)
        try:
            body = SyncRequest.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=_validation_detail(exc)) from exc

        profiles = get_profiles(fastapi_app)
        coordinator = get_coordinator(fastapi_app)
        profile = await profiles.get(profile_id)
        initial = body.initial
        if initial is None and body.scope is None:
            initial = await coordinator.needs_initial_sync(profile_id)
        if body.scope == "live":
            stats = await coordinator.refresh_live(profile_id, profile.credentials)
            mode = "live"
        elif body.scope == "vod":
            stats = await coordinator.refresh_vod(profile_id, profile.credentials)
            mode = "vod"
        elif initial:
            stats = await coordinator.initial_sync(profile_id, profile.credentials)
            mode = "initial"
        else:
            stats = await coordinator.incremental_sync(
                profile_id,
                profile.credentials,
                force_channels=body.force_channels,
                force_movies=body.force_movies,
                force_series=body.force_series,
                force_guide=body.force_guide,
            )
            mode = "incremental"
        return {"profileId": profile_id, "mode": mode, "stats": stats.to_payload()}

    @fastapi_app.get("/profiles/{profile_id}/sync/status")
    async def sync_status(profile_id: str) -> dict[str, Any]:
        session = await get_profiles(fastapi_app).session(profile_id)
        summary = await get_coordinator(fastapi_app).status_summary(profile_id)
        summary["guide"] = session.guide.status()
        return summary

    @fastapi_app.put("/profiles/{profile_id}/guide/source")
    async def configure_guide(profile_id: str, request: Request) -> dict[str, Any]:
        payload = await _json_body(request)
        session = await get_profiles(fastapi_app).session(profile_id)
        try:
            body = GuideSourceRequest.model_validate(payload)
            config = _guide_config(body, profile_id, fastapi_app)
        except (ValidationError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=_validation_detail(exc)) from exc
        state = await session.configure_guide(config)
        return {"state": state.value, "source": config.model_dump(mode="json")}

    @fastapi_app.get("/profiles/{profile_id}/guide/{channel_id}/now")
    async def guide_now(profile_id: str, channel_id: str) -> dict[str, Any]:
        session = await get_profiles(fastapi_app).session(profile_id)
        now = utc_now()
        entry = await session.guide.current_program(channel_id, now)
        return {
            "channelId": channel_id,
            "state": session.guide.state.value,
            "program": _entry_payload(entry, now),
        }

    @fastapi_app.get("/profiles/{profile_id}/guide/{channel_id}/next")
    async def guide_next(profile_id: str, channel_id: str) -> dict[str, Any]:
        session = await get_profiles(fastapi_app).session(profile_id)
        now = utc_now()
        entry = await session.guide.next_program(channel_id, now)
        return {
            "channelId": channel_id,
            "state": session.guide.state.value,
            "program": _entry_payload(entry, now),
        }

    @fastapi_app.get("/profiles/{profile_id}/guide/{channel_id}/schedule")
    async def guide_schedule(
        profile_id: str,
        channel_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        day: date | None = None,
    ) -> dict[str, Any]:
        session = await get_profiles(fastapi_app).session(profile_id)
        if day is not None:
            entries = await session.guide.daily_schedule(channel_id, day)
        else:
            window_start = as_naive_utc(start) if start else utc_now()
            window_end = as_naive_utc(end) if end else window_start + timedelta(hours=24)
            entries = await session.guide.schedule(channel_id, window_start, window_end)
        now = utc_now()
        return {
            "channelId": channel_id,
            "state": session.guide.state.value,
            "programs": [_entry_payload(entry, now) for entry in entries],
        }


async def _json_body(request: Request) -> dict[str, Any]:
    if not await request.body():
        return {}
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    return payload


def _validation_detail(exc: Exception) -> Any:
    if isinstance(exc, ValidationError):
        return exc.errors(include_url=False, include_context=False)
    return str(exc)


def _parse_content_type(raw: str) -> ContentType:
    try:
        content_type = ContentType(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Unsupported content type") from exc
    if content_type is ContentType.GUIDE:
        raise HTTPException(status_code=400, detail="Use the guide endpoints")
    return content_type


def _guide_config(
    body: GuideSourceRequest, profile_id: str, fastapi_app: FastAPI
) -> EpgSourceConfig:
    settings: Settings = fastapi_app.state.settings
    interval = body.refresh_interval_seconds or settings.guide_refresh_interval_seconds
    if body.kind is EpgSourceKind.URL:
        if not body.url:
            raise ValueError("A guide URL is required")
        return EpgSourceConfig.from_url(
            body.url, refresh_interval_seconds=interval, auto_refresh=body.auto_refresh
        )
    if body.kind is EpgSourceKind.PROVIDER:
        return EpgSourceConfig.from_provider(
            profile_id, refresh_interval_seconds=interval, auto_refresh=body.auto_refresh
        )
    return EpgSourceConfig.none()


def _profile_payload(profile: ProfileState) -> dict[str, Any]:
    return {
        "id": profile.id,
        "displayName": profile.display_name,
        "baseUrl": profile.credentials.base_url,
        "username": profile.credentials.username,
        "account": profile.account.model_dump(mode="json") if profile.account else None,
        "guideSource": profile.guide_source.model_dump(mode="json"),
        "createdAt": profile.created_at.isoformat() if profile.created_at else None,
    }


def _entry_payload(entry: ProgramGuideEntry | None, now: datetime) -> dict[str, Any] | None:
    if entry is None:
        return None
    payload = entry.model_dump(mode="json")
    payload["progress"] = round(entry.progress(now), 4)
    return payload


logging.basicConfig(level=get_settings().log_level)

app = create_app()
