"""Local-first repository read-path tests."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from catalogsync.errors import TransportFailure
from catalogsync.models import ContentType
from catalogsync.services.repository import ContentCache, LocalFirstRepository
from catalogsync.services.sync import SyncCoordinator
from catalogsync.utils import content_cache_key, utc_now

from helpers import (
    CREDENTIALS,
    PROFILE_ID,
    FakeRemoteClient,
    build_settings,
    make_channel,
    make_movie,
    make_series,
    open_store,
)


async def _repository(tmp_path, remote: FakeRemoteClient):
    database, store = await open_store(tmp_path)
    await store.upsert_profile(CREDENTIALS, profile_id=PROFILE_ID)
    coordinator = SyncCoordinator(build_settings(), remote, store)
    return database, store, LocalFirstRepository(build_settings(), coordinator)


async def _seed_channels(store, count: int, *, age: timedelta) -> None:
    await store.replace_items(
        PROFILE_ID, ContentType.CHANNELS, [make_channel(i) for i in range(1, count + 1)]
    )
    await store.record_sync(
        PROFILE_ID, ContentType.CHANNELS, count, synced_at=utc_now() - age
    )


@pytest.mark.anyio("asyncio")
async def test_stale_cache_is_served_and_refreshed_once_in_background(tmp_path) -> None:
    """Cached channels come back immediately; one refresh runs behind them."""

    remote = FakeRemoteClient(channels=[make_channel(i) for i in range(1, 6)])
    remote.hang.add("channels")
    database, store, repository = await _repository(tmp_path, remote)
    try:
        await _seed_channels(store, 3, age=timedelta(hours=2))

        first = await repository.get(PROFILE_ID, ContentType.CHANNELS)
        second = await repository.get(PROFILE_ID, ContentType.CHANNELS)
        pending = repository.background_pending(PROFILE_ID)
        remote.release()
        await repository.wait_for_background()
        refreshed = await repository.get(PROFILE_ID, ContentType.CHANNELS)
    finally:
        await database.dispose()

    assert len(first) == 3
    assert len(second) == 3
    assert pending == 1
    assert remote.calls["channels"] == 1
    assert remote.calls["login"] == 0
    assert len(refreshed) == 5


@pytest.mark.anyio("asyncio")
async def test_fresh_cache_makes_no_remote_calls(tmp_path) -> None:
    remote = FakeRemoteClient(channels=[make_channel(1)])
    database, store, repository = await _repository(tmp_path, remote)
    try:
        await _seed_channels(store, 3, age=timedelta(minutes=5))
        items = await repository.get(PROFILE_ID, ContentType.CHANNELS)
        await repository.wait_for_background()
    finally:
        await database.dispose()

    assert len(items) == 3
    assert sum(remote.calls.values()) == 0
    assert content_cache_key(PROFILE_ID, ContentType.CHANNELS) in repository.cache


@pytest.mark.anyio("asyncio")
async def test_empty_store_fetches_and_stores(tmp_path) -> None:
    remote = FakeRemoteClient(channels=[make_channel(i) for i in range(1, 6)])
    database, store, repository = await _repository(tmp_path, remote)
    try:
        items = await repository.get(PROFILE_ID, ContentType.CHANNELS)
        stored = await store.count_items(PROFILE_ID, ContentType.CHANNELS)
        ledger = await store.get_ledger(PROFILE_ID)
    finally:
        await database.dispose()

    assert len(items) == 5
    assert stored == 5
    assert ledger.item_count(ContentType.CHANNELS) == 5


@pytest.mark.anyio("asyncio")
async def test_empty_remote_answer_is_not_an_error(tmp_path) -> None:
    database, store, repository = await _repository(tmp_path, FakeRemoteClient())
    try:
        items = await repository.get(PROFILE_ID, ContentType.MOVIES)
        ledger = await store.get_ledger(PROFILE_ID)
    finally:
        await database.dispose()

    assert items == []
    assert ledger.has_synced(ContentType.MOVIES)


@pytest.mark.anyio("asyncio")
async def test_forced_refresh_failure_falls_back_to_stored_items(tmp_path) -> None:
    remote = FakeRemoteClient()
    remote.failures["movies"] = TransportFailure("Failed to fetch movies: ConnectError")
    database, store, repository = await _repository(tmp_path, remote)
    try:
        await store.replace_items(
            PROFILE_ID, ContentType.MOVIES, [make_movie(1), make_movie(2)]
        )
        items = await repository.get(PROFILE_ID, ContentType.MOVIES, force_refresh=True)
    finally:
        await database.dispose()

    assert [item.name for item in items] == ["Movie 1", "Movie 2"]
    assert remote.calls["movies"] == 1


@pytest.mark.anyio("asyncio")
async def test_failure_surfaces_when_nothing_is_cached(tmp_path) -> None:
    remote = FakeRemoteClient()
    remote.failures["series"] = TransportFailure("Server error fetching series", status_code=500)
    database, _, repository = await _repository(tmp_path, remote)
    try:
        with pytest.raises(TransportFailure):
            await repository.get(PROFILE_ID, ContentType.SERIES)
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_hung_provider_does_not_block_cached_reads(tmp_path) -> None:
    remote = FakeRemoteClient()
    remote.hang.add("channels")
    database, store, repository = await _repository(tmp_path, remote)
    try:
        await _seed_channels(store, 3, age=timedelta(hours=2))

        items = await asyncio.wait_for(
            repository.get(PROFILE_ID, ContentType.CHANNELS), timeout=2
        )
        while remote.calls["channels"] == 0:
            await asyncio.sleep(0.01)
        assert repository.background_pending(PROFILE_ID) == 1

        await repository.cancel_background()
    finally:
        await database.dispose()

    assert len(items) == 3
    assert repository.background_pending() == 0
    assert not repository.coordinator.is_syncing(PROFILE_ID)


@pytest.mark.anyio("asyncio")
async def test_category_reads_are_not_written_back(tmp_path) -> None:
    remote = FakeRemoteClient(
        movies=[make_movie(1, category_id="a"), make_movie(2, category_id="b")]
    )
    database, store, repository = await _repository(tmp_path, remote)
    try:
        items = await repository.get(PROFILE_ID, ContentType.MOVIES, category_id="b")
        stored = await store.count_items(PROFILE_ID, ContentType.MOVIES)
        ledger = await store.get_ledger(PROFILE_ID)
    finally:
        await database.dispose()

    assert [item.name for item in items] == ["Movie 2"]
    assert stored == 0
    assert not ledger.has_synced(ContentType.MOVIES)


@pytest.mark.anyio("asyncio")
async def test_invalid_queries_are_rejected(tmp_path) -> None:
    database, _, repository = await _repository(tmp_path, FakeRemoteClient())
    try:
        with pytest.raises(ValueError):
            await repository.get(PROFILE_ID, ContentType.GUIDE)
        with pytest.raises(ValueError):
            await repository.get(PROFILE_ID, ContentType.LIVE_CATEGORIES, category_id="1")
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_series_detail_is_fetched_once_and_written_back(tmp_path) -> None:
    remote = FakeRemoteClient()
    detail = make_series(1, episodes=3).model_copy(update={"category_id": None})
    remote.series_details["501"] = detail
    database, store, repository = await _repository(tmp_path, remote)
    try:
        await store.replace_items(
            PROFILE_ID, ContentType.SERIES, [make_series(0), make_series(1)]
        )
        first = await repository.get_series_detail(PROFILE_ID, "501")
        second = await repository.get_series_detail(PROFILE_ID, "501")
        stored = await store.get_item(PROFILE_ID, ContentType.SERIES, "501")
        url = await repository.stream_url(PROFILE_ID, first, episode_id="1-2")
    finally:
        await database.dispose()

    assert first.episode_count == 3
    assert second.episode_count == 3
    assert remote.calls["series_detail"] == 1
    assert stored is not None
    assert stored.category_id == "cat-1"
    assert stored.position == 1
    assert url == "http://provider.test/series/alice/secret/1-2.mp4"


@pytest.mark.anyio("asyncio")
async def test_series_detail_failure_serves_stored_series(tmp_path) -> None:
    remote = FakeRemoteClient()
    remote.failures["series_detail"] = TransportFailure("Server error fetching series 501")
    database, store, repository = await _repository(tmp_path, remote)
    try:
        await store.replace_items(PROFILE_ID, ContentType.SERIES, [make_series(1)])
        detail = await repository.get_series_detail(PROFILE_ID, "501")
    finally:
        await database.dispose()

    assert detail.name == "Series 1"
    assert not detail.has_episodes


@pytest.mark.anyio("asyncio")
async def test_clear_profile_drops_cache_and_store(tmp_path) -> None:
    database, store, repository = await _repository(tmp_path, FakeRemoteClient())
    try:
        await _seed_channels(store, 2, age=timedelta(minutes=1))
        await repository.get(PROFILE_ID, ContentType.CHANNELS)
        await repository.clear_profile(PROFILE_ID)
        profile = await store.get_profile(PROFILE_ID)
    finally:
        await database.dispose()

    assert len(repository.cache) == 0
    assert profile is None


@pytest.mark.anyio("asyncio")
async def test_initial_sync_runs_once_through_the_repository(tmp_path) -> None:
    remote = FakeRemoteClient(channels=[make_channel(1), make_channel(2)])
    database, store, repository = await _repository(tmp_path, remote)
    try:
        first = await repository.ensure_initial_sync(PROFILE_ID)
        second = await repository.ensure_initial_sync(PROFILE_ID)
        item = await repository.get_item(PROFILE_ID, ContentType.CHANNELS, "2")
        forced = await repository.force_refresh_all(PROFILE_ID)
        url = await repository.stream_url(PROFILE_ID, item)
    finally:
        await database.dispose()

    assert first is not None and first.count(ContentType.CHANNELS) == 2
    assert second is None
    assert item is not None and item.name == "Channel 2"
    assert forced.skipped == []
    assert remote.calls["channels"] == 2
    assert url == "http://provider.test/live/alice/secret/2.ts"


@pytest.mark.anyio("asyncio")
async def test_read_racing_a_refresh_does_not_cache_the_old_listing(
    tmp_path, monkeypatch
) -> None:
    """A store read that finishes after a refresh committed is not cached."""

    remote = FakeRemoteClient(channels=[make_channel(i) for i in range(1, 6)])
    database, store, repository = await _repository(tmp_path, remote)
    read_store = store.get_items
    reached = asyncio.Event()
    gate = asyncio.Event()

    async def gated_get_items(*args, **kwargs):
        items = await read_store(*args, **kwargs)
        if not reached.is_set():
            reached.set()
            await gate.wait()
        return items

    monkeypatch.setattr(store, "get_items", gated_get_items)
    try:
        await _seed_channels(store, 3, age=timedelta(minutes=1))
        racing = asyncio.create_task(repository.get(PROFILE_ID, ContentType.CHANNELS))
        await reached.wait()
        await repository.coordinator.refresh(
            PROFILE_ID, CREDENTIALS, [ContentType.CHANNELS]
        )
        gate.set()
        raced = await racing
        cached_after_race = repository.cache.get(
            content_cache_key(PROFILE_ID, ContentType.CHANNELS)
        )
        later = await repository.get(PROFILE_ID, ContentType.CHANNELS)
        await repository.wait_for_background()
    finally:
        await database.dispose()

    assert len(raced) == 3
    assert cached_after_race is None
    assert len(later) == 5
    assert remote.calls["channels"] == 1


def test_cache_generation_changes_on_invalidation() -> None:
    cache = ContentCache()
    key = content_cache_key(PROFILE_ID, ContentType.MOVIES)
    before = cache.generation(PROFILE_ID, ContentType.MOVIES)
    cache.invalidate(PROFILE_ID, ContentType.MOVIES)

    movies = [make_movie(1)]
    assert not cache.put_if_current(key, movies, PROFILE_ID, ContentType.MOVIES, before)
    assert key not in cache

    current = cache.generation(PROFILE_ID, ContentType.MOVIES)
    cache.invalidate(PROFILE_ID, ContentType.CHANNELS)
    assert cache.put_if_current(key, movies, PROFILE_ID, ContentType.MOVIES, current)

    cache.invalidate(PROFILE_ID)
    assert not cache.put_if_current(key, [], PROFILE_ID, ContentType.MOVIES, current)


@pytest.mark.anyio("asyncio")
async def test_movie_detail_is_fetched_once_and_written_back(tmp_path) -> None:
    remote = FakeRemoteClient()
    remote.movie_details["101"] = make_movie(1).model_copy(
        update={"plot": "A heist.", "duration_seconds": 5_400, "category_id": None}
    )
    database, store, repository = await _repository(tmp_path, remote)
    try:
        await store.replace_items(
            PROFILE_ID, ContentType.MOVIES, [make_movie(0), make_movie(1)]
        )
        first = await repository.get_movie_detail(PROFILE_ID, "101")
        second = await repository.get_movie_detail(PROFILE_ID, "101")
        stored = await store.get_item(PROFILE_ID, ContentType.MOVIES, "101")
    finally:
        await database.dispose()

    assert first.plot == "A heist."
    assert second.duration_seconds == 5_400
    assert remote.calls["movie_detail"] == 1
    assert stored is not None
    assert stored.has_details
    assert stored.category_id == "cat-1"
    assert stored.position == 1
