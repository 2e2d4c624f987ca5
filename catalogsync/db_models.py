"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .utils import utc_now


class Profile(Base):
    """A provider account; every other table is scoped to one profile."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    base_url: Mapped[str] = mapped_column(String(512))
    username: Mapped[str] = mapped_column(String(200))
    password: Mapped[str] = mapped_column(Text)
    account_info: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    guide_source: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    initial_sync_complete: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now
    )

    ledger: Mapped[list["SyncLedgerRecord"]] = relationship(
        back_populates="profile", cascade="all, delete-orphan"
    )


class CategoryRecord(Base):
    __tablename__ = "categories"

    profile_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True
    )
    content_type: Mapped[str] = mapped_column(String(32), primary_key=True)
    category_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    position: Mapped[int] = mapped_column(Integer, default=0)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON)


class ContentItemRecord(Base):
    """Full payload of a channel, movie or series keyed by provider id."""

    __tablename__ = "content_items"
    __table_args__ = (
        Index("ix_items_profile_type_category", "profile_id", "content_type", "category_id"),
    )

    profile_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True
    )
    content_type: Mapped[str] = mapped_column(String(32), primary_key=True)
    item_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(512))
    category_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON)


class GuideEntryRecord(Base):
    """One programme of a channel, stored per guide source."""

    __tablename__ = "guide_entries"
    __table_args__ = (
        UniqueConstraint(
            "profile_id", "source_key", "channel_id", "start", name="uq_guide_slot"
        ),
        Index("ix_guide_channel_window", "profile_id", "source_key", "channel_id", "start"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    profile_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("profiles.id", ondelete="CASCADE")
    )
    source_key: Mapped[str] = mapped_column(String(96))
    channel_id: Mapped[str] = mapped_column(String(255))
    start: Mapped[datetime] = mapped_column(DateTime)
    end: Mapped[datetime] = mapped_column(DateTime)
    title: Mapped[str] = mapped_column(String(512))
    payload: Mapped[dict[str, Any]] = mapped_column(JSON)


class GuideSourceRecord(Base):
    """When a guide source was last fetched for a profile."""

    __tablename__ = "guide_sources"

    profile_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True
    )
    source_key: Mapped[str] = mapped_column(String(96), primary_key=True)
    kind: Mapped[str] = mapped_column(String(16))
    fetched_at: Mapped[datetime] = mapped_column(DateTime)
    channel_count: Mapped[int] = mapped_column(Integer, default=0)
    program_count: Mapped[int] = mapped_column(Integer, default=0)


class SyncLedgerRecord(Base):
    """Last successful sync of one content type; timestamp and count move together."""

    __tablename__ = "sync_ledger"

    profile_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True
    )
    content_type: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_synced_at: Mapped[datetime] = mapped_column(DateTime)
    item_count: Mapped[int] = mapped_column(Integer, default=0)

    profile: Mapped[Profile] = relationship(back_populates="ledger")
