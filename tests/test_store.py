"""Persistence tests for the catalog store."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

from catalogsync.errors import ProfileNotFound
from catalogsync.models import ContentType, EpgSourceConfig, EpgSourceKind

from helpers import CREDENTIALS, PROFILE_ID, make_channel, make_entry, make_movie, open_store


def test_replace_items_is_idempotent(tmp_path) -> None:
    """Writing the same listing twice leaves one copy of each item."""

    async def runner() -> None:
        database, store = await open_store(tmp_path)
        try:
            await store.upsert_profile(CREDENTIALS, profile_id=PROFILE_ID)
            channels = [make_channel(1), make_channel(2), make_channel(1)]

            first = await store.replace_items(PROFILE_ID, ContentType.CHANNELS, channels)
            second = await store.replace_items(PROFILE_ID, ContentType.CHANNELS, channels)
            stored = await store.get_items(PROFILE_ID, ContentType.CHANNELS)

            assert first == second == 2
            assert [item.id for item in stored] == ["2", "1"]
            assert [item.position for item in stored] == [0, 1]
            assert await store.count_items(PROFILE_ID, ContentType.CHANNELS) == 2
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_items_filter_by_category_and_replace_whole_records(tmp_path) -> None:
    async def runner() -> None:
        database, store = await open_store(tmp_path)
        try:
            await store.upsert_profile(CREDENTIALS, profile_id=PROFILE_ID)
            await store.replace_items(
                PROFILE_ID,
                ContentType.MOVIES,
                [make_movie(1, category_id="a"), make_movie(2, category_id="b")],
            )

            in_b = await store.get_items(PROFILE_ID, ContentType.MOVIES, category_id="b")
            assert [item.name for item in in_b] == ["Movie 2"]

            updated = make_movie(2, category_id="b").model_copy(
                update={"name": "Renamed", "plot": None, "position": 99}
            )
            await store.put_item(PROFILE_ID, updated)
            stored = await store.get_item(PROFILE_ID, ContentType.MOVIES, "102")

            assert stored is not None
            assert stored.name == "Renamed"
            assert stored.position == 1
            assert await store.delete_item(PROFILE_ID, ContentType.MOVIES, "102")
            assert await store.get_item(PROFILE_ID, ContentType.MOVIES, "102") is None
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_replace_guide_purges_old_and_replaces_channels(tmp_path) -> None:
    """Ended programmes are purged and refreshed channels are not appended to."""

    async def runner() -> None:
        database, store = await open_store(tmp_path)
        now = datetime(2024, 5, 1, 12, 0)
        keep_past = timedelta(hours=6)
        try:
            await store.upsert_profile(CREDENTIALS, profile_id=PROFILE_ID)
            await store.replace_guide(
                PROFILE_ID,
                "url_a",
                {
                    "news": [
                        make_entry("news", now - timedelta(hours=8), 60, "Ancient"),
                        make_entry("news", now, 60, "Noon"),
                    ],
                    "sport": [make_entry("sport", now, 90, "Match")],
                },
                kind="url",
                keep_past=keep_past,
                now=now,
            )
            count = await store.replace_guide(
                PROFILE_ID,
                "url_a",
                {
                    "news": [
                        make_entry("news", now, 30, "Noon (short)"),
                        make_entry("news", now + timedelta(minutes=15), 30, "Overlap"),
                        make_entry("news", now + timedelta(minutes=30), 30, "Afternoon"),
                    ]
                },
                kind="url",
                keep_past=keep_past,
                now=now,
            )

            guide = await store.get_guide(PROFILE_ID, "url_a")
            meta = await store.guide_source_meta(PROFILE_ID, "url_a")

            assert count == 2
            assert [entry.title for entry in guide["news"]] == ["Noon (short)", "Afternoon"]
            assert [entry.title for entry in guide["sport"]] == ["Match"]
            assert meta is not None and meta.program_count == 2 and meta.fetched_at == now
            assert await store.get_guide(PROFILE_ID, "url_other") == {}

            window = await store.get_channel_guide(
                PROFILE_ID, "url_a", "news", start=now + timedelta(minutes=40)
            )
            assert [entry.title for entry in window] == ["Afternoon"]
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_ledger_records_timestamp_and_count_together(tmp_path) -> None:
    async def runner() -> None:
        database, store = await open_store(tmp_path)
        synced_at = datetime(2024, 5, 1, 10, 0)
        try:
            await store.upsert_profile(CREDENTIALS, profile_id=PROFILE_ID)
            await store.record_sync(PROFILE_ID, ContentType.CHANNELS, 3, synced_at=synced_at)
            await store.record_sync(PROFILE_ID, ContentType.CHANNELS, 5, synced_at=synced_at)
            ledger = await store.get_ledger(PROFILE_ID)

            assert ledger.last_synced(ContentType.CHANNELS) == synced_at
            assert ledger.item_count(ContentType.CHANNELS) == 5
            assert not ledger.initial_sync_complete

            await store.mark_initial_sync_complete(PROFILE_ID)
            assert (await store.get_ledger(PROFILE_ID)).initial_sync_complete
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_clear_profile_removes_every_record(tmp_path) -> None:
    async def runner() -> None:
        database, store = await open_store(tmp_path)
        now = datetime(2024, 5, 1, 12, 0)
        try:
            await store.upsert_profile(CREDENTIALS, profile_id=PROFILE_ID)
            await store.upsert_profile(CREDENTIALS, profile_id="other")
            for profile_id in (PROFILE_ID, "other"):
                await store.replace_items(profile_id, ContentType.CHANNELS, [make_channel(1)])
                await store.record_sync(profile_id, ContentType.CHANNELS, 1)
                await store.replace_guide(
                    profile_id,
                    "url_a",
                    {"news": [make_entry("news", now)]},
                    kind="url",
                    keep_past=timedelta(hours=6),
                    now=now,
                )

            await store.clear_profile(PROFILE_ID)

            assert await store.get_profile(PROFILE_ID) is None
            assert await store.get_items(PROFILE_ID, ContentType.CHANNELS) == []
            assert (await store.get_ledger(PROFILE_ID)).entries == {}
            assert await store.get_guide(PROFILE_ID, "url_a") == {}
            assert await store.storage_stats("other") == {"channels": 1, "guide": 1}
            with pytest.raises(ProfileNotFound):
                await store.require_profile(PROFILE_ID)
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_profiles_keep_their_guide_source(tmp_path) -> None:
    async def runner() -> None:
        database, store = await open_store(tmp_path)
        try:
            profile = await store.upsert_profile(CREDENTIALS, display_name="Living room")
            assert profile.id == CREDENTIALS.profile_id()
            assert profile.guide_source.kind is EpgSourceKind.NONE

            config = EpgSourceConfig.from_url("https://guide.test/epg.xml")
            await store.save_guide_source(profile.id, config)
            again = await store.upsert_profile(CREDENTIALS)

            assert again.display_name == "Living room"
            assert again.guide_source == config
            assert await store.list_profile_ids() == [profile.id]
            with pytest.raises(ProfileNotFound):
                await store.save_guide_source("missing", config)
        finally:
            await database.dispose()

    asyncio.run(runner())
