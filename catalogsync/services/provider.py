"""Client for Xtream Codes compatible provider APIs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Protocol

import httpx

from ..config import Settings
from ..errors import AuthenticationFailure, ParseFailure, TransportFailure
from ..models import (
    AccountInfo,
    Category,
    ContentItem,
    ContentType,
    Episode,
    GuideData,
    ProviderCredentials,
    Season,
)
from ..utils import clean_text, from_timestamp, parse_float, parse_int, utc_now
from .xmltv import GuideParser, XmltvParser

logger = logging.getLogger(__name__)

_CATEGORY_ACTIONS: dict[ContentType, str] = {
    ContentType.LIVE_CATEGORIES: "get_live_categories",
    ContentType.MOVIE_CATEGORIES: "get_vod_categories",
    ContentType.SERIES_CATEGORIES: "get_series_categories",
}


class RemoteContentClient(Protocol):
    """Operations the sync layer needs from a content provider.

    Implementations raise :class:`AuthenticationFailure`,
    :class:`TransportFailure` or :class:`ParseFailure` instead of returning
    partial results.
    """

    async def login(self, credentials: ProviderCredentials) -> AccountInfo:
        ...

    async def fetch_categories(
        self, credentials: ProviderCredentials, content_type: ContentType
    ) -> list[Category]:
        ...

    async def fetch_channels(
        self, credentials: ProviderCredentials, category_id: str | None = None
    ) -> list[ContentItem]:
        ...

    async def fetch_movies(
        self, credentials: ProviderCredentials, category_id: str | None = None
    ) -> list[ContentItem]:
        ...

    async def fetch_series(
        self, credentials: ProviderCredentials, category_id: str | None = None
    ) -> list[ContentItem]:
        ...

    async def fetch_movie_detail(
        self, credentials: ProviderCredentials, movie_id: str
    ) -> ContentItem:
        ...

    async def fetch_series_detail(
        self, credentials: ProviderCredentials, series_id: str
    ) -> ContentItem:
        ...

    async def fetch_program_guide(self, credentials: ProviderCredentials) -> GuideData:
        ...


async def fetch_listing(
    client: RemoteContentClient,
    credentials: ProviderCredentials,
    content_type: ContentType,
    *,
    category_id: str | None = None,
) -> list[Category] | list[ContentItem]:
    """Fetch the category or item listing named by ``content_type``."""

    if content_type.is_category:
        return await client.fetch_categories(credentials, content_type)
    if content_type is ContentType.CHANNELS:
        return await client.fetch_channels(credentials, category_id)
    if content_type is ContentType.MOVIES:
        return await client.fetch_movies(credentials, category_id)
    if content_type is ContentType.SERIES:
        return await client.fetch_series(credentials, category_id)
    raise ValueError(f"{content_type.value} is not a listing")


class XtreamClient:
    """Thin wrapper around ``player_api.php`` and ``xmltv.php``."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        parser: GuideParser | None = None,
    ):
        self._settings = settings
        self._client = http_client
        self._parser = parser or XmltvParser()
        self._max_retries = settings.provider_max_retries

    def _headers(self) -> dict[str, str]:
        return {"User-Agent": self._settings.user_agent, "Accept": "*/*"}

    async def login(self, credentials: ProviderCredentials) -> AccountInfo:
        payload = await self._player_api(credentials, None, resource="account")
        if not isinstance(payload, dict):
            raise ParseFailure("Unexpected login response structure")
        user_info = payload.get("user_info")
        if not isinstance(user_info, dict):
            raise AuthenticationFailure("Provider rejected the credentials")
        if parse_int(user_info.get("auth"), 0) != 1:
            message = clean_text(user_info.get("message")) or "Invalid username or password"
            raise AuthenticationFailure(message)

        status = clean_text(user_info.get("status")) or "Active"
        expires_at = from_timestamp(user_info.get("exp_date"))
        if status.lower() != "active":
            raise AuthenticationFailure(
                f"Account is {status.lower()}", details={"status": status}
            )
        if expires_at is not None and expires_at < utc_now():
            raise AuthenticationFailure(
                "Account has expired", details={"expires_at": expires_at.isoformat()}
            )

        server_info = payload.get("server_info")
        timezone_name = None
        if isinstance(server_info, dict):
            timezone_name = clean_text(server_info.get("timezone"))
        return AccountInfo(
            username=clean_text(user_info.get("username")) or credentials.username,
            status=status,
            expires_at=expires_at,
            max_connections=parse_int(user_info.get("max_connections")),
            active_connections=parse_int(user_info.get("active_cons")),
            server_timezone=timezone_name,
        )

    async def fetch_categories(
        self, credentials: ProviderCredentials, content_type: ContentType
    ) -> list[Category]:
        action = _CATEGORY_ACTIONS.get(content_type)
        if action is None:
            raise ValueError(f"{content_type.value} is not a category listing")
        rows = await self._list(credentials, action, resource=content_type.label)
        categories: list[Category] = []
        for row in rows:
            category_id = clean_text(row.get("category_id"))
            if not category_id:
                continue
            parent_id = clean_text(row.get("parent_id"))
            categories.append(
                Category(
                    id=category_id,
                    name=clean_text(row.get("category_name")) or category_id,
                    content_type=content_type,
                    parent_id=parent_id if parent_id not in (None, "0") else None,
                )
            )
        return categories

    async def fetch_channels(
        self, credentials: ProviderCredentials, category_id: str | None = None
    ) -> list[ContentItem]:
        rows = await self._list(
            credentials, "get_live_streams", resource="channels", category_id=category_id
        )
        return _map_rows(rows, _map_channel)

    async def fetch_movies(
        self, credentials: ProviderCredentials, category_id: str | None = None
    ) -> list[ContentItem]:
        rows = await self._list(
            credentials, "get_vod_streams", resource="movies", category_id=category_id
        )
        return _map_rows(rows, _map_movie)

    async def fetch_series(
        self, credentials: ProviderCredentials, category_id: str | None = None
    ) -> list[ContentItem]:
        rows = await self._list(
            credentials, "get_series", resource="series", category_id=category_id
        )
        return _map_rows(rows, _map_series)

    async def fetch_movie_detail(
        self, credentials: ProviderCredentials, movie_id: str
    ) -> ContentItem:
        payload = await self._player_api(
            credentials,
            {"action": "get_vod_info", "vod_id": movie_id},
            resource=f"movie {movie_id}",
        )
        if not isinstance(payload, dict):
            raise ParseFailure(f"Unexpected movie info structure for {movie_id}")
        info = payload.get("info") if isinstance(payload.get("info"), dict) else {}
        data = payload.get("movie_data")
        if not isinstance(data, dict):
            data = {}
        row = {**info, **data}
        row["stream_id"] = data.get("stream_id") or movie_id
        base = _map_movie(row, 0)
        if base is None:
            raise ParseFailure(f"Movie {movie_id} has no usable metadata")
        return base.model_copy(
            update={
                "artwork_url": clean_text(info.get("movie_image")) or base.artwork_url,
                "genre": clean_text(info.get("genre")),
                "release_date": clean_text(info.get("releasedate")),
                "duration_seconds": parse_int(info.get("duration_secs"), 0),
            }
        )

    async def fetch_series_detail(
        self, credentials: ProviderCredentials, series_id: str
    ) -> ContentItem:
        payload = await self._player_api(
            credentials,
            {"action": "get_series_info", "series_id": series_id},
            resource=f"series {series_id}",
        )
        if not isinstance(payload, dict):
            raise ParseFailure(f"Unexpected series info structure for {series_id}")
        info = payload.get("info") if isinstance(payload.get("info"), dict) else {}
        base = _map_series({**info, "series_id": series_id}, 0)
        if base is None:
            raise ParseFailure(f"Series {series_id} has no usable metadata")
        return base.model_copy(update={"seasons": _map_seasons(payload)})

    async def fetch_program_guide(self, credentials: ProviderCredentials) -> GuideData:
        url = f"{credentials.base_url}/xmltv.php"
        params = {"username": credentials.username, "password": credentials.password}
        response = await self._get(
            url,
            params=params,
            resource="program guide",
            timeout=self._settings.guide_download_timeout_seconds,
        )
        logger.info("Downloaded provider guide (%s bytes)", len(response.content))
        return self._parser.parse(response.content).programs

    async def _list(
        self,
        credentials: ProviderCredentials,
        action: str,
        *,
        resource: str,
        category_id: str | None = None,
    ) -> list[dict[str, Any]]:
        params = {"action": action}
        if category_id:
            params["category_id"] = category_id
        payload = await self._player_api(credentials, params, resource=resource)
        # Some panels answer an empty listing with {} or a keyed object.
        if isinstance(payload, dict):
            payload = list(payload.values())
        if payload in (None, ""):
            payload = []
        if not isinstance(payload, list):
            raise ParseFailure(f"Unexpected {resource} response structure")
        rows = [row for row in payload if isinstance(row, dict)]
        logger.info("Fetched %s %s", len(rows), resource)
        return rows

    async def _player_api(
        self,
        credentials: ProviderCredentials,
        params: dict[str, str] | None,
        *,
        resource: str,
    ) -> Any:
        query = {"username": credentials.username, "password": credentials.password}
        query.update(params or {})
        response = await self._get(
            f"{credentials.base_url}/player_api.php",
            params=query,
            resource=resource,
            timeout=self._settings.provider_timeout_seconds,
        )
        try:
            return response.json()
        except ValueError as exc:
            raise ParseFailure(f"Provider returned non-JSON {resource} response") from exc

    async def _get(
        self,
        url: str,
        *,
        params: dict[str, str],
        resource: str,
        timeout: float,
    ) -> httpx.Response:
        return await get_with_retries(
            self._client,
            url,
            params=params,
            headers=self._headers(),
            resource=resource,
            timeout=timeout,
            max_retries=self._max_retries,
        )


async def get_with_retries(
    http_client: httpx.AsyncClient,
    url: str,
    *,
    params: dict[str, str] | None = None,
    headers: dict[str, str] | None = None,
    resource: str,
    timeout: float,
    max_retries: int = 3,
) -> httpx.Response:
    """GET ``url`` retrying transport errors and 5xx answers with backoff.

    Exhausted retries raise :class:`TransportFailure`; 401 and 403 raise
    :class:`AuthenticationFailure`.
    """

    attempt = 0
    while True:
        try:
            response = await http_client.get(
                url, params=params, headers=headers, timeout=timeout
            )
        except httpx.HTTPError as exc:
            attempt += 1
            if attempt <= max_retries:
                backoff = _backoff(attempt)
                logger.info(
                    "Transient error fetching %s (%s). Retrying in %.1fs",
                    resource,
                    exc.__class__.__name__,
                    backoff,
                )
                await asyncio.sleep(backoff)
                continue
            logger.warning("Failed to fetch %s: %s", resource, exc)
            raise TransportFailure(
                f"Failed to fetch {resource}: {exc.__class__.__name__}"
            ) from exc

        if 500 <= response.status_code < 600:
            attempt += 1
            if attempt <= max_retries:
                backoff = _backoff(attempt)
                logger.info(
                    "Server returned %s while fetching %s. Retrying in %.1fs",
                    response.status_code,
                    resource,
                    backoff,
                )
                await asyncio.sleep(backoff)
                continue
            raise TransportFailure(
                f"Server error fetching {resource}",
                status_code=response.status_code,
            )
        if response.status_code in (401, 403):
            raise AuthenticationFailure(
                "Provider rejected the credentials",
                details={"status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise TransportFailure(
                f"Unexpected status fetching {resource}",
                status_code=response.status_code,
            )
        return response


def _backoff(attempt: int) -> float:
    return min(2 ** (attempt - 1), 5) + (0.1 * attempt)


def _map_rows(
    rows: list[dict[str, Any]],
    mapper: Callable[[dict[str, Any], int], ContentItem | None],
) -> list[ContentItem]:
    items: list[ContentItem] = []
    for row in rows:
        item = mapper(row, len(items))
        if item is not None:
            items.append(item)
    if len(items) != len(rows):
        logger.debug("Dropped %s rows without an id", len(rows) - len(items))
    return items


def _map_channel(row: dict[str, Any], position: int) -> ContentItem | None:
    stream_id = clean_text(row.get("stream_id"))
    if not stream_id:
        return None
    return ContentItem(
        id=stream_id,
        name=clean_text(row.get("name")) or stream_id,
        content_type=ContentType.CHANNELS,
        category_id=clean_text(row.get("category_id")),
        artwork_url=clean_text(row.get("stream_icon")),
        stream_id=stream_id,
        container_extension="ts",
        epg_channel_id=clean_text(row.get("epg_channel_id")),
        added_at=from_timestamp(row.get("added")),
        position=position,
    )


def _map_movie(row: dict[str, Any], position: int) -> ContentItem | None:
    stream_id = clean_text(row.get("stream_id"))
    if not stream_id:
        return None
    return ContentItem(
        id=stream_id,
        name=clean_text(row.get("name")) or stream_id,
        content_type=ContentType.MOVIES,
        category_id=clean_text(row.get("category_id")),
        artwork_url=clean_text(row.get("stream_icon")),
        stream_id=stream_id,
        container_extension=clean_text(row.get("container_extension")) or "mp4",
        rating=parse_float(row.get("rating")),
        plot=clean_text(row.get("plot")),
        added_at=from_timestamp(row.get("added")),
        position=position,
    )


def _map_series(row: dict[str, Any], position: int) -> ContentItem | None:
    series_id = clean_text(row.get("series_id"))
    if not series_id:
        return None
    return ContentItem(
        id=series_id,
        name=clean_text(row.get("name")) or series_id,
        content_type=ContentType.SERIES,
        category_id=clean_text(row.get("category_id")),
        artwork_url=clean_text(row.get("cover")),
        rating=parse_float(row.get("rating")),
        plot=clean_text(row.get("plot")),
        added_at=from_timestamp(row.get("last_modified")),
        position=position,
    )


def _map_seasons(payload: dict[str, Any]) -> list[Season]:
    names: dict[int, str] = {}
    for season in payload.get("seasons") or []:
        if isinstance(season, dict):
            number = parse_int(season.get("season_number"))
            if number is not None:
                names[number] = clean_text(season.get("name")) or f"Season {number}"

    episodes_by_season = payload.get("episodes") or {}
    if isinstance(episodes_by_season, list):
        # Single-season shows are sometimes returned as a bare list.
        episodes_by_season = {"1": episodes_by_season}
    if not isinstance(episodes_by_season, dict):
        raise ParseFailure("Unexpected episode listing structure")

    seasons: list[Season] = []
    for key, rows in episodes_by_season.items():
        number = parse_int(key)
        if number is None or not isinstance(rows, list):
            continue
        episodes = [
            episode
            for episode in (_map_episode(row) for row in rows if isinstance(row, dict))
            if episode is not None
        ]
        episodes.sort(key=lambda episode: episode.episode_number)
        seasons.append(
            Season(
                season_number=number,
                name=names.get(number, f"Season {number}"),
                episodes=episodes,
            )
        )
    seasons.sort(key=lambda season: season.season_number)
    return seasons


def _map_episode(row: dict[str, Any]) -> Episode | None:
    episode_id = clean_text(row.get("id"))
    if not episode_id:
        return None
    info = row.get("info") if isinstance(row.get("info"), dict) else {}
    return Episode(
        id=episode_id,
        episode_number=parse_int(row.get("episode_num"), 1) or 1,
        title=clean_text(row.get("title")) or "",
        container_extension=clean_text(row.get("container_extension")) or "mp4",
        plot=clean_text(info.get("plot")),
        artwork_url=clean_text(info.get("movie_image")),
        duration_seconds=parse_int(info.get("duration_secs")),
        air_date=clean_text(info.get("releasedate") or info.get("air_date")),
    )


def live_stream_url(
    credentials: ProviderCredentials, stream_id: str, *, extension: str = "ts"
) -> str:
    return (
        f"{credentials.base_url}/live/{credentials.username}/"
        f"{credentials.password}/{stream_id}.{extension}"
    )


def movie_stream_url(
    credentials: ProviderCredentials, stream_id: str, *, extension: str = "mp4"
) -> str:
    return (
        f"{credentials.base_url}/movie/{credentials.username}/"
        f"{credentials.password}/{stream_id}.{extension}"
    )


def episode_stream_url(
    credentials: ProviderCredentials, episode_id: str, *, extension: str = "mp4"
) -> str:
    return (
        f"{credentials.base_url}/series/{credentials.username}/"
        f"{credentials.password}/{episode_id}.{extension}"
    )


__all__ = [
    "RemoteContentClient",
    "XtreamClient",
    "episode_stream_url",
    "fetch_listing",
    "get_with_retries",
    "live_stream_url",
    "movie_stream_url",
]
