"""Context scoped cache of the last known feed contents."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from pydantic import ValidationError
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import FeedCacheRecord
from ..models import ContentItem, Hub

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CachedFeed:
    """Items and raw hubs remembered for a context."""

    items: list[ContentItem] = field(default_factory=list)
    hubs: list[Hub] = field(default_factory=list)
    total_items: int | None = None
    updated_at: datetime | None = None

    @property
    def has_data(self) -> bool:
        return bool(self.items or self.hubs)


class FeedCache:
    """Two level cache: a bounded in-memory layer over SQLite persistence.

    Heroes are held in memory only so a selection stays stable for the
    lifetime of the process and is re-rolled after a restart. Persistence
    errors are logged and never propagate to the feed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        memory_limit: int = 64,
    ):
        self._session_factory = session_factory
        self._memory_limit = max(1, memory_limit)
        self._memory: OrderedDict[str, CachedFeed] = OrderedDict()
        self._heroes: dict[str, ContentItem] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def peek(self, context: str) -> CachedFeed | None:
        """Return the in-memory entry without touching the database."""

        return self._memory.get(context)

    async def get(self, context: str) -> CachedFeed | None:
        """Return cached contents for a context, reading through to storage."""

        cached = self._memory.get(context)
        if cached is not None:
            self._memory.move_to_end(context)
            return cached
        if self._session_factory is None:
            return None

        try:
            async with self._session_factory() as session:
                record = await session.get(FeedCacheRecord, context)
        except SQLAlchemyError as exc:
            logger.warning("Failed to read cached feed for %s: %s", context, exc)
            return None
        if record is None:
            return None

        cached = self._decode(record)
        if cached is None:
            return None
        self._remember(context, cached)
        return cached

    async def put(
        self,
        context: str,
        *,
        items: Iterable[ContentItem] | None = None,
        hubs: Iterable[Hub] | None = None,
        total_items: int | None = None,
    ) -> CachedFeed:
        """Store items and/or hubs for a context, keeping the other half."""

        lock = self._locks.setdefault(context, asyncio.Lock())
        async with lock:
            existing = await self.get(context) or CachedFeed()
            updated = CachedFeed(
                items=list(items) if items is not None else list(existing.items),
                hubs=list(hubs) if hubs is not None else list(existing.hubs),
                total_items=(
                    total_items if total_items is not None else existing.total_items
                ),
                updated_at=datetime.utcnow(),
            )
            self._remember(context, updated)
            await self._persist(context, updated)
            return updated

    def hero(self, context: str) -> ContentItem | None:
        return self._heroes.get(context)

    def store_hero(self, context: str, hero: ContentItem) -> None:
        self._heroes[context] = hero

    def clear_hero(self, context: str) -> None:
        self._heroes.pop(context, None)

    def clear_heroes(self) -> None:
        self._heroes.clear()

    async def clear(self, context: str | None = None) -> None:
        """Forget one context, or everything when no context is given."""

        if context is None:
            self._memory.clear()
            self._heroes.clear()
        else:
            self._memory.pop(context, None)
            self._heroes.pop(context, None)
        if self._session_factory is None:
            return

        stmt = delete(FeedCacheRecord)
        if context is not None:
            stmt = stmt.where(FeedCacheRecord.context == context)
        try:
            async with self._session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("Failed to clear cached feeds: %s", exc)

    def _remember(self, context: str, cached: CachedFeed) -> None:
        self._memory[context] = cached
        self._memory.move_to_end(context)
        while len(self._memory) > self._memory_limit:
            self._memory.popitem(last=False)

    async def _persist(self, context: str, cached: CachedFeed) -> None:
        if self._session_factory is None:
            return
        try:
            async with self._session_factory() as session:
                record = await session.get(FeedCacheRecord, context)
                if record is None:
                    record = FeedCacheRecord(context=context)
                    session.add(record)
                record.items = [item.model_dump(mode="json") for item in cached.items]
                record.hubs = [hub.model_dump(mode="json") for hub in cached.hubs]
                record.total_items = cached.total_items
                record.updated_at = cached.updated_at or datetime.utcnow()
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("Failed to persist cached feed for %s: %s", context, exc)

    @staticmethod
    def _decode(record: FeedCacheRecord) -> CachedFeed | None:
        try:
            items = [ContentItem.model_validate(entry) for entry in record.items or []]
            hubs = [Hub.model_validate(entry) for entry in record.hubs or []]
        except ValidationError as exc:
            logger.warning(
                "Discarding unreadable cached feed for %s: %s", record.context, exc
            )
            return None
        return CachedFeed(
            items=items,
            hubs=hubs,
            total_items=record.total_items,
            updated_at=record.updated_at,
        )
