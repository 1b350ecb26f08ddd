"""Database utilities backing the persistent feed cache."""

from __future__ import annotations

from sqlalchemy import MetaData, inspect, text
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
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create database tables if they do not yet exist."""

        # Importing the models registers their tables on the shared metadata.
        from . import db_models  # noqa: F401

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
            await connection.run_sync(self._apply_schema_migrations)

    @staticmethod
    def _apply_schema_migrations(sync_connection) -> None:
        """Add columns introduced after a cache table was first created."""

        inspector = inspect(sync_connection)
        if "feed_cache" not in inspector.get_table_names():
            return

        existing_columns = {
            column["name"] for column in inspector.get_columns("feed_cache")
        }

        def _ensure_column(name: str, ddl: str, init_sql: str | None = None) -> None:
            if name in existing_columns:
                return
            sync_connection.execute(text(ddl))
            if init_sql:
                sync_connection.execute(text(init_sql))
            existing_columns.add(name)

        _ensure_column(
            "hubs",
            "ALTER TABLE feed_cache ADD COLUMN hubs JSON",
            "UPDATE feed_cache SET hubs = '[]' WHERE hubs IS NULL",
        )
        _ensure_column(
            "total_items",
            "ALTER TABLE feed_cache ADD COLUMN total_items INTEGER",
        )

    async def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        await self._engine.dispose()

