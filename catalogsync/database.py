"""Database utilities for the catalogsync service."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import MetaData, event, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base with consistent naming conventions."""

    metadata = MetaData()


class Database:
    """Thin wrapper managing the SQLAlchemy async engine and sessions."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        if database_url.startswith("sqlite"):
            event.listen(self._engine.sync_engine, "connect", _enable_sqlite_pragmas)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create database tables if they do not yet exist."""

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
            await connection.run_sync(self._apply_schema_migrations)

    @staticmethod
    def _apply_schema_migrations(sync_connection) -> None:
        """Ensure newly introduced columns are available on existing tables."""

        inspector = inspect(sync_connection)
        table_names = inspector.get_table_names()
        if "profiles" not in table_names:
            return

        existing_columns = {
            column["name"] for column in inspector.get_columns("profiles")
        }

        def _ensure_column(name: str, ddl: str, init_sql: str | None = None) -> None:
            if name in existing_columns:
                return
            sync_connection.execute(text(ddl))
            if init_sql:
                sync_connection.execute(text(init_sql))
            existing_columns.add(name)

        _ensure_column(
            "account_info",
            "ALTER TABLE profiles ADD COLUMN account_info JSON",
        )
        _ensure_column(
            "guide_source",
            "ALTER TABLE profiles ADD COLUMN guide_source JSON",
            "UPDATE profiles SET guide_source = '{\"kind\": \"none\"}' WHERE guide_source IS NULL",
        )
        _ensure_column(
            "initial_sync_complete",
            "ALTER TABLE profiles ADD COLUMN initial_sync_complete BOOLEAN DEFAULT 0",
            (
                "UPDATE profiles SET initial_sync_complete = 0 "
                "WHERE initial_sync_complete IS NULL"
            ),
        )

    async def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide a transactional scope around a series of operations."""

        async with self.session_factory() as session:
            yield session


def _enable_sqlite_pragmas(dbapi_connection, _record) -> None:
    # WAL lets background writers run while readers hold the catalog open.
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()
