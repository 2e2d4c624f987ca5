"""Profile-scoped persistence of catalog records, guide data and the sync ledger."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from pydantic import ValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import (
    CategoryRecord,
    ContentItemRecord,
    GuideEntryRecord,
    GuideSourceRecord,
    Profile,
    SyncLedgerRecord,
)
from ..errors import ProfileNotFound
from ..models import (
    AccountInfo,
    Category,
    ContentItem,
    ContentType,
    EpgSourceConfig,
    GuideData,
    LedgerEntry,
    ProfileState,
    ProgramGuideEntry,
    ProviderCredentials,
    SyncLedger,
)
from ..schedule import count_programs, normalize_schedule
from ..utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GuideSourceMeta:
    source_key: str
    kind: str
    fetched_at: datetime
    channel_count: int
    program_count: int


class CatalogStore:
    """Typed get/put/delete access to everything cached for a profile.

    The store is the single durable copy of the catalog; in-memory caches
    elsewhere are projections of what is read here.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # Profiles -----------------------------------------------------------

    async def get_profile(self, profile_id: str) -> ProfileState | None:
        async with self._session_factory() as session:
            profile = await session.get(Profile, profile_id)
            if profile is None:
                return None
            return self._profile_to_state(profile)

    async def require_profile(self, profile_id: str) -> ProfileState:
        state = await self.get_profile(profile_id)
        if state is None:
            raise ProfileNotFound(profile_id)
        return state

    async def list_profile_ids(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(select(Profile.id).order_by(Profile.created_at))
            return [row[0] for row in result.all()]

    async def upsert_profile(
        self,
        credentials: ProviderCredentials,
        *,
        profile_id: str | None = None,
        display_name: str | None = None,
        account: AccountInfo | None = None,
    ) -> ProfileState:
        """Create the profile for ``credentials`` or refresh its stored details."""

        profile_id = profile_id or credentials.profile_id()
        now = utc_now()
        async with self._session_factory() as session:
            profile = await session.get(Profile, profile_id)
            if profile is None:
                profile = Profile(
                    id=profile_id,
                    base_url=credentials.base_url,
                    username=credentials.username,
                    password=credentials.password,
                    display_name=display_name,
                    guide_source=EpgSourceConfig.none().model_dump(mode="json"),
                    initial_sync_complete=False,
                    created_at=now,
                    updated_at=now,
                )
                session.add(profile)
            else:
                profile.password = credentials.password
                if display_name:
                    profile.display_name = display_name
                profile.updated_at = now
            if account is not None:
                profile.account_info = account.model_dump(mode="json")
            await session.commit()
            return self._profile_to_state(profile)

    async def save_guide_source(self, profile_id: str, config: EpgSourceConfig) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Profile)
                .where(Profile.id == profile_id)
                .values(guide_source=config.model_dump(mode="json"), updated_at=utc_now())
            )
            if not result.rowcount:
                raise ProfileNotFound(profile_id)
            await session.commit()

    async def clear_profile(self, profile_id: str) -> None:
        """Remove the profile together with every record scoped to it."""

        async with self._session_factory() as session:
            for model in (
                GuideEntryRecord,
                GuideSourceRecord,
                ContentItemRecord,
                CategoryRecord,
                SyncLedgerRecord,
            ):
                await session.execute(delete(model).where(model.profile_id == profile_id))
            await session.execute(delete(Profile).where(Profile.id == profile_id))
            await session.commit()
        logger.info("Cleared stored data for profile %s", profile_id)

    # Categories ---------------------------------------------------------

    async def get_categories(
        self, profile_id: str, content_type: ContentType
    ) -> list[Category]:
        async with self._session_factory() as session:
            stmt = (
                select(CategoryRecord)
                .where(
                    CategoryRecord.profile_id == profile_id,
                    CategoryRecord.content_type == content_type.value,
                )
                .order_by(CategoryRecord.position)
            )
            result = await session.execute(stmt)
            records = result.scalars().all()
        categories: list[Category] = []
        for record in records:
            try:
                categories.append(Category.model_validate(record.payload))
            except ValidationError as exc:
                logger.warning(
                    "Stored category %s for profile %s is invalid: %s",
                    record.category_id,
                    profile_id,
                    exc,
                )
        return categories

    async def replace_categories(
        self,
        profile_id: str,
        content_type: ContentType,
        categories: Sequence[Category],
    ) -> int:
        unique = _dedupe(categories, key=lambda category: category.id)
        async with self._session_factory() as session:
            await session.execute(
                delete(CategoryRecord).where(
                    CategoryRecord.profile_id == profile_id,
                    CategoryRecord.content_type == content_type.value,
                )
            )
            session.add_all(
                CategoryRecord(
                    profile_id=profile_id,
                    content_type=content_type.value,
                    category_id=category.id,
                    name=category.name,
                    position=position,
                    payload=category.model_dump(mode="json"),
                )
                for position, category in enumerate(unique)
            )
            await session.commit()
        return len(unique)

    # Content items ------------------------------------------------------

    async def get_items(
        self,
        profile_id: str,
        content_type: ContentType,
        *,
        category_id: str | None = None,
    ) -> list[ContentItem]:
        async with self._session_factory() as session:
            stmt = select(ContentItemRecord).where(
                ContentItemRecord.profile_id == profile_id,
                ContentItemRecord.content_type == content_type.value,
            )
            if category_id is not None:
                stmt = stmt.where(ContentItemRecord.category_id == category_id)
            stmt = stmt.order_by(ContentItemRecord.position)
            result = await session.execute(stmt)
            records = result.scalars().all()
        items: list[ContentItem] = []
        for record in records:
            item = self._load_item(profile_id, record)
            if item is not None:
                items.append(item)
        return items

    async def get_item(
        self, profile_id: str, content_type: ContentType, item_id: str
    ) -> ContentItem | None:
        async with self._session_factory() as session:
            record = await session.get(
                ContentItemRecord, (profile_id, content_type.value, item_id)
            )
            if record is None:
                return None
            return self._load_item(profile_id, record)

    async def count_items(self, profile_id: str, content_type: ContentType) -> int:
        async with self._session_factory() as session:
            stmt = select(func.count()).select_from(ContentItemRecord).where(
                ContentItemRecord.profile_id == profile_id,
                ContentItemRecord.content_type == content_type.value,
            )
            return int((await session.execute(stmt)).scalar_one())

    async def replace_items(
        self,
        profile_id: str,
        content_type: ContentType,
        items: Sequence[ContentItem],
    ) -> int:
        """Replace the stored set of ``content_type`` items in one transaction.

        Duplicated provider ids collapse onto the last occurrence, so writing
        the same payload twice leaves the stored set unchanged.
        """

        unique = _dedupe(items, key=lambda item: item.id)
        async with self._session_factory() as session:
            await session.execute(
                delete(ContentItemRecord).where(
                    ContentItemRecord.profile_id == profile_id,
                    ContentItemRecord.content_type == content_type.value,
                )
            )
            session.add_all(
                self._item_record(profile_id, content_type, item, position)
                for position, item in enumerate(unique)
            )
            await session.commit()
        return len(unique)

    async def put_item(self, profile_id: str, item: ContentItem) -> None:
        """Upsert a single item, replacing every stored field."""

        async with self._session_factory() as session:
            existing = await session.get(
                ContentItemRecord, (profile_id, item.content_type.value, item.id)
            )
            position = existing.position if existing is not None else item.position
            await session.merge(
                self._item_record(profile_id, item.content_type, item, position)
            )
            await session.commit()

    async def delete_item(
        self, profile_id: str, content_type: ContentType, item_id: str
    ) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ContentItemRecord).where(
                    ContentItemRecord.profile_id == profile_id,
                    ContentItemRecord.content_type == content_type.value,
                    ContentItemRecord.item_id == item_id,
                )
            )
            await session.commit()
            return bool(result.rowcount)

    # Programme guide ----------------------------------------------------

    async def get_guide(
        self,
        profile_id: str,
        source_key: str,
        *,
        channel_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> GuideData:
        async with self._session_factory() as session:
            stmt = select(GuideEntryRecord).where(
                GuideEntryRecord.profile_id == profile_id,
                GuideEntryRecord.source_key == source_key,
            )
            if channel_id is not None:
                stmt = stmt.where(GuideEntryRecord.channel_id == channel_id)
            if end is not None:
                stmt = stmt.where(GuideEntryRecord.start < end)
            if start is not None:
                stmt = stmt.where(GuideEntryRecord.end > start)
            stmt = stmt.order_by(GuideEntryRecord.channel_id, GuideEntryRecord.start)
            result = await session.execute(stmt)
            records = result.scalars().all()

        guide: GuideData = {}
        for record in records:
            try:
                entry = ProgramGuideEntry.model_validate(record.payload)
            except ValidationError as exc:
                logger.warning(
                    "Stored programme %s for profile %s is invalid: %s",
                    record.id,
                    profile_id,
                    exc,
                )
                continue
            guide.setdefault(record.channel_id, []).append(entry)
        return guide

    async def get_channel_guide(
        self,
        profile_id: str,
        source_key: str,
        channel_id: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ProgramGuideEntry]:
        guide = await self.get_guide(
            profile_id, source_key, channel_id=channel_id, start=start, end=end
        )
        return guide.get(channel_id, [])

    async def replace_guide(
        self,
        profile_id: str,
        source_key: str,
        guide: GuideData,
        *,
        kind: str,
        keep_past: timedelta,
        now: datetime | None = None,
    ) -> int:
        """Store a refreshed guide for ``source_key``.

        Programmes that ended before ``now - keep_past`` are purged for the
        whole source, and every channel present in ``guide`` has its stored
        schedule replaced rather than appended to. Channels absent from the
        refresh keep their remaining programmes.
        """

        cutoff = (now or utc_now()) - keep_past
        normalized: GuideData = {}
        for channel_id, entries in guide.items():
            kept = [entry for entry in normalize_schedule(entries) if entry.end > cutoff]
            normalized[channel_id] = kept

        async with self._session_factory() as session:
            scope = (
                GuideEntryRecord.profile_id == profile_id,
                GuideEntryRecord.source_key == source_key,
            )
            purged = await session.execute(
                delete(GuideEntryRecord).where(*scope, GuideEntryRecord.end <= cutoff)
            )
            channel_ids = list(normalized)
            for chunk in _chunks(channel_ids, 500):
                await session.execute(
                    delete(GuideEntryRecord).where(
                        *scope, GuideEntryRecord.channel_id.in_(chunk)
                    )
                )
            session.add_all(
                GuideEntryRecord(
                    profile_id=profile_id,
                    source_key=source_key,
                    channel_id=channel_id,
                    start=entry.start,
                    end=entry.end,
                    title=entry.title[:512],
                    payload=entry.model_dump(mode="json"),
                )
                for channel_id, entries in normalized.items()
                for entry in entries
            )
            program_count = count_programs(normalized)
            await session.merge(
                GuideSourceRecord(
                    profile_id=profile_id,
                    source_key=source_key,
                    kind=kind,
                    fetched_at=now or utc_now(),
                    channel_count=len(normalized),
                    program_count=program_count,
                )
            )
            await session.commit()

        if purged.rowcount:
            logger.debug(
                "Purged %s ended programmes for source %s", purged.rowcount, source_key
            )
        return program_count

    async def guide_source_meta(
        self, profile_id: str, source_key: str
    ) -> GuideSourceMeta | None:
        async with self._session_factory() as session:
            record = await session.get(GuideSourceRecord, (profile_id, source_key))
            if record is None:
                return None
            return GuideSourceMeta(
                source_key=record.source_key,
                kind=record.kind,
                fetched_at=record.fetched_at,
                channel_count=record.channel_count,
                program_count=record.program_count,
            )

    # Sync ledger --------------------------------------------------------

    async def get_ledger(self, profile_id: str) -> SyncLedger:
        async with self._session_factory() as session:
            profile = await session.get(Profile, profile_id)
            result = await session.execute(
                select(SyncLedgerRecord).where(SyncLedgerRecord.profile_id == profile_id)
            )
            records = result.scalars().all()

        entries: dict[ContentType, LedgerEntry] = {}
        for record in records:
            try:
                content_type = ContentType(record.content_type)
            except ValueError:
                logger.warning(
                    "Ignoring ledger entry with unknown type %s", record.content_type
                )
                continue
            entries[content_type] = LedgerEntry(
                last_synced_at=record.last_synced_at, item_count=record.item_count
            )
        return SyncLedger(
            profile_id=profile_id,
            entries=entries,
            initial_sync_complete=bool(profile and profile.initial_sync_complete),
        )

    async def record_sync(
        self,
        profile_id: str,
        content_type: ContentType,
        item_count: int,
        *,
        synced_at: datetime | None = None,
    ) -> LedgerEntry:
        """Write the timestamp and count of a successful sync together."""

        entry = LedgerEntry(last_synced_at=synced_at or utc_now(), item_count=item_count)
        async with self._session_factory() as session:
            await session.merge(
                SyncLedgerRecord(
                    profile_id=profile_id,
                    content_type=content_type.value,
                    last_synced_at=entry.last_synced_at,
                    item_count=entry.item_count,
                )
            )
            await session.commit()
        return entry

    async def mark_initial_sync_complete(self, profile_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Profile)
                .where(Profile.id == profile_id)
                .values(initial_sync_complete=True, updated_at=utc_now())
            )
            await session.commit()

    async def storage_stats(self, profile_id: str) -> dict[str, int]:
        async with self._session_factory() as session:
            item_rows = await session.execute(
                select(ContentItemRecord.content_type, func.count())
                .where(ContentItemRecord.profile_id == profile_id)
                .group_by(ContentItemRecord.content_type)
            )
            category_rows = await session.execute(
                select(CategoryRecord.content_type, func.count())
                .where(CategoryRecord.profile_id == profile_id)
                .group_by(CategoryRecord.content_type)
            )
            guide_count = await session.execute(
                select(func.count())
                .select_from(GuideEntryRecord)
                .where(GuideEntryRecord.profile_id == profile_id)
            )
            stats = {str(kind): int(count) for kind, count in item_rows.all()}
            stats.update({str(kind): int(count) for kind, count in category_rows.all()})
            stats[ContentType.GUIDE.value] = int(guide_count.scalar_one())
        return stats

    # Helpers ------------------------------------------------------------

    @staticmethod
    def _item_record(
        profile_id: str, content_type: ContentType, item: ContentItem, position: int
    ) -> ContentItemRecord:
        stored = item.model_copy(update={"position": position, "content_type": content_type})
        return ContentItemRecord(
            profile_id=profile_id,
            content_type=content_type.value,
            item_id=item.id,
            name=item.name[:512],
            category_id=item.category_id,
            position=position,
            payload=stored.model_dump(mode="json"),
        )

    @staticmethod
    def _load_item(profile_id: str, record: ContentItemRecord) -> ContentItem | None:
        try:
            return ContentItem.model_validate(record.payload)
        except ValidationError as exc:
            logger.warning(
                "Stored item %s for profile %s is invalid: %s",
                record.item_id,
                profile_id,
                exc,
            )
            return None

    @staticmethod
    def _profile_to_state(profile: Profile) -> ProfileState:
        account = None
        if profile.account_info:
            try:
                account = AccountInfo.model_validate(profile.account_info)
            except ValidationError:
                logger.warning("Stored account info for %s is invalid", profile.id)
        guide_source = EpgSourceConfig.none()
        if profile.guide_source:
            try:
                guide_source = EpgSourceConfig.model_validate(profile.guide_source)
            except ValidationError:
                logger.warning("Stored guide source for %s is invalid", profile.id)
        return ProfileState(
            id=profile.id,
            credentials=ProviderCredentials(
                base_url=profile.base_url,
                username=profile.username,
                password=profile.password,
            ),
            display_name=profile.display_name,
            account=account,
            guide_source=guide_source,
            created_at=profile.created_at,
        )


def _dedupe(values: Iterable, *, key) -> list:
    indexed: dict[str, object] = {}
    for value in values:
        indexed.pop(key(value), None)
        indexed[key(value)] = value
    return list(indexed.values())


def _chunks(values: list[str], size: int) -> Iterable[list[str]]:
    for index in range(0, len(values), size):
        yield values[index : index + size]
