"""Cache-first feed loading with background revalidation."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import AsyncIterator, Sequence

from ..config import Settings
from ..errors import (
    MediaServerError,
    RequestSuperseded,
    TransientFetchFailure,
)
from ..models import (
    ContentItem,
    FeedPhase,
    FeedState,
    Hub,
    Library,
    library_key_for,
)
from ..utils import dedupe_by_id, ordered_ids
from .events import FeedEvents, FeedListener
from .feed_cache import CachedFeed, FeedCache
from .hero import HeroSelector
from .libraries import LibrarySettings
from .media_server import MediaServerClient
from .merge import MergeOptions, merge_hubs
from .paginator import RowPaginator

logger = logging.getLogger(__name__)


def row_keys_for(hubs: Sequence[Hub]) -> list[str]:
    """Return one distinct row key per hub, in hub order.

    The first hub with a given key keeps it; later hubs sharing the key get a
    positional suffix such as ``recentlyAdded#2``.
    """

    used: set[str] = set()
    keys: list[str] = []
    for hub in hubs:
        base = hub.key or "hub"
        key, position = base, 1
        while key in used:
            position += 1
            key = f"{base}#{position}"
        used.add(key)
        keys.append(key)
    return keys


@dataclass(slots=True)
class _FeedSlot:
    """Mutable state the loader keeps for one context."""

    context: str
    grid: RowPaginator
    phase: FeedPhase = FeedPhase.IDLE
    raw_hubs: list[Hub] = field(default_factory=list)
    hubs: list[Hub] = field(default_factory=list)
    rows: dict[str, RowPaginator] = field(default_factory=dict)
    row_page_keys: dict[str, str | None] = field(default_factory=dict)
    row_keys: list[str] = field(default_factory=list)
    hero: ContentItem | None = None
    is_loading: bool = False
    error: str | None = None
    updated_at: datetime | None = None

    @property
    def has_data(self) -> bool:
        return bool(self.grid.items or self.hubs)


class FeedLoader:
    """Owns the feed state of every context and keeps it fresh.

    Activating a context shows cached contents straight away and revalidates
    them in the background. Each activation or refresh takes a new
    generation number; results fetched for an older generation are dropped
    without being applied or reported.
    """

    def __init__(
        self,
        settings: Settings,
        server: MediaServerClient,
        cache: FeedCache,
        *,
        hero_selector: HeroSelector | None = None,
        library_settings: LibrarySettings | None = None,
        events: FeedEvents | None = None,
    ):
        self._settings = settings
        self._server = server
        self._cache = cache
        self._hero = hero_selector or HeroSelector(
            cache, recent_pool=settings.hero_recent_pool
        )
        self._library_settings = library_settings or LibrarySettings.from_settings(
            settings
        )
        self._events = events or FeedEvents()
        self._generations: dict[str, int] = {}
        self._slots: dict[str, _FeedSlot] = {}
        self._jobs: set[asyncio.Task[None]] = set()
        self.libraries: list[Library] = []

    # Subscription -------------------------------------------------------

    def subscribe(self, context: str, callback: FeedListener) -> None:
        self._events.subscribe(context, callback)

    def unsubscribe(self, context: str, callback: FeedListener) -> None:
        self._events.unsubscribe(context, callback)

    def generation(self, context: str) -> int:
        return self._generations.get(context, 0)

    def state(self, context: str) -> FeedState:
        """Return the current snapshot for a context."""

        slot = self._slots.get(context)
        if slot is None:
            return FeedState(context=context, generation=self.generation(context))
        return self._snapshot(slot)

    def merge_options(self) -> MergeOptions:
        return MergeOptions(
            show_recommendations=self._settings.show_recommendations,
            show_music=self._library_settings.has_music_library_visible(self.libraries),
        )

    # Loading ------------------------------------------------------------

    async def activate(self, context: str) -> FeedState:
        """Show a context, revalidating cached contents in the background.

        Returns as soon as cached contents are published. With nothing cached
        the call waits for the live fetch to finish.
        """

        generation = self._advance(context)
        await self._activate(context, generation, wait=False)
        return self.state(context)

    async def load(self, context: str) -> AsyncIterator[FeedState]:
        """Activate a context and yield every state published for it.

        The stream ends once the activation settles or fails, or as soon as a
        newer activation of the same context takes over.
        """

        queue: asyncio.Queue[FeedState | None] = asyncio.Queue()
        listener = queue.put_nowait
        generation = self._advance(context)
        self.subscribe(context, listener)
        task = asyncio.create_task(self._activate(context, generation, wait=True))
        self._track(task)
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while True:
                state = await queue.get()
                if state is None:
                    task.result()
                    return
                if state.generation != generation:
                    return
                yield state
        finally:
            self.unsubscribe(context, listener)

    async def refresh(self, context: str) -> FeedState:
        """Force a live fetch of a context regardless of cached contents."""

        generation = self._advance(context)
        slot = self._slot(context)
        slot.is_loading = True
        slot.phase = FeedPhase.REFRESHING if slot.has_data else FeedPhase.LOADING
        self._publish(slot)
        await self._refresh(context, generation)
        return self.state(context)

    async def _activate(self, context: str, generation: int, *, wait: bool) -> None:
        cached = await self._cache.get(context)
        if not self._is_current(context, generation):
            logger.debug("Activation %s of %s superseded during cache read", generation, context)
            return

        slot = self._slot(context)
        if cached is not None and cached.has_data and not slot.has_data:
            self._apply_cached(slot, cached)
        self._select_hero(slot)

        if slot.has_data:
            slot.is_loading = False
            slot.phase = FeedPhase.CACHE_HIT
            self._publish(slot)
            slot.phase = FeedPhase.REFRESHING
            self._publish(slot)
            if wait:
                await self._refresh(context, generation)
            else:
                self._schedule_refresh(context, generation)
            return

        slot.is_loading = True
        slot.error = None
        slot.phase = FeedPhase.LOADING
        self._publish(slot)
        await self._refresh(context, generation)

    def _schedule_refresh(self, context: str, generation: int) -> None:
        async def _runner() -> None:
            try:
                await self._refresh(context, generation)
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Background refresh of %s failed: %s", context, exc)

        self._track(asyncio.create_task(_runner()))

    def _track(self, task: asyncio.Task[None]) -> None:
        self._jobs.add(task)
        task.add_done_callback(self._jobs.discard)

    async def _refresh(self, context: str, generation: int) -> None:
        outcomes = await asyncio.gather(
            self._fetch_items(context, generation),
            self._fetch_hubs(context, generation),
            return_exceptions=True,
        )

        failures: list[TransientFetchFailure] = []
        for outcome in outcomes:
            if isinstance(outcome, RequestSuperseded):
                logger.debug("%s", outcome)
            elif isinstance(outcome, TransientFetchFailure):
                failures.append(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome

        if not self._is_current(context, generation):
            logger.debug("Discarding refresh %s of %s", generation, context)
            return

        slot = self._slot(context)
        self._select_hero(slot)
        slot.is_loading = False
        if failures and not slot.has_data:
            slot.error = str(failures[0])
            slot.phase = FeedPhase.FAILED
        else:
            if len(failures) < len(outcomes):
                slot.error = None
            elif failures:
                logger.warning(
                    "Keeping cached contents for %s after refresh failed: %s",
                    context,
                    failures[0],
                )
            slot.phase = FeedPhase.SETTLED
        self._publish(slot)

    async def _fetch_items(self, context: str, generation: int) -> None:
        try:
            page = await self._server.fetch_flat_items(
                context, 0, self._settings.library_page_size
            )
        except MediaServerError as exc:
            self._ensure_current(context, generation)
            raise TransientFetchFailure(context, exc) from exc
        self._ensure_current(context, generation)

        slot = self._slot(context)
        items = dedupe_by_id(page.items)
        if ordered_ids(items) != ordered_ids(slot.grid.items):
            slot.grid.reset(items, page.total_size)
            self._publish(slot)
        elif page.total_size is not None:
            slot.grid.total_size = max(slot.grid.total_size or 0, page.total_size)
        if library_key_for(context) is not None:
            await self._cache.put(
                context, items=slot.grid.items, total_items=slot.grid.total_size
            )

    async def _fetch_hubs(self, context: str, generation: int) -> None:
        try:
            raw_hubs = await self._server.fetch_hubs(context)
        except MediaServerError as exc:
            self._ensure_current(context, generation)
            raise TransientFetchFailure(context, exc) from exc
        self._ensure_current(context, generation)

        slot = self._slot(context)
        slot.raw_hubs = list(raw_hubs)
        self._merge(slot)
        self._select_hero(slot)
        self._publish(slot)
        await self._cache.put(context, hubs=raw_hubs)

    # Pagination ---------------------------------------------------------

    async def on_proximity(self, context: str, row_key: str, visible_index: int) -> bool:
        """Forward a row's visible index to its paginator.

        Raises ``KeyError`` when the context has no row with that key.
        """

        slot = self._slots.get(context)
        row = slot.rows.get(row_key) if slot is not None else None
        if slot is None or row is None:
            raise KeyError(f"Unknown row {row_key} for {context}")
        before = row.status()
        appended = await row.on_proximity(visible_index)
        if row.status() != before:
            self._publish(slot)
        return appended

    async def load_more_items(self, context: str) -> bool:
        """Append the next page of a library's flat listing."""

        slot = self._slot(context)
        appended = await slot.grid.load_next_page()
        if appended:
            await self._cache.put(
                context, items=slot.grid.items, total_items=slot.grid.total_size
            )
        self._publish(slot)
        return appended

    # Mutations ----------------------------------------------------------

    async def update_item_watch_status(self, item_id: str, watched: bool) -> int:
        """Optimistically mark an item watched or unwatched in every context.

        Returns the number of contexts that held the item.
        """

        def _update(item: ContentItem) -> ContentItem:
            return item.with_watch_status(watched) if item.id == item_id else item

        def _update_hubs(hubs: list[Hub]) -> list[Hub]:
            return [hub.with_items(_update(item) for item in hub.items) for hub in hubs]

        touched = 0
        for slot in list(self._slots.values()):
            changed = slot.grid.replace_items(_update)
            for row in slot.rows.values():
                changed = row.replace_items(_update) or changed
            if slot.hero is not None and slot.hero.id == item_id:
                slot.hero = _update(slot.hero)
                self._cache.store_hero(slot.context, slot.hero)
                changed = True
            if not changed:
                continue
            touched += 1
            slot.raw_hubs = _update_hubs(slot.raw_hubs)
            slot.hubs = _update_hubs(slot.hubs)
            self._publish(slot)
            await self._cache.put(
                slot.context,
                items=slot.grid.items if library_key_for(slot.context) else None,
                hubs=slot.raw_hubs,
            )
        return touched

    async def refresh_libraries(self) -> list[Library]:
        """Fetch library sections and return the visible ones in order."""

        libraries = await self._server.fetch_libraries()
        previous = self.merge_options()
        self.libraries = list(libraries)
        self._library_settings.sync_order(self.libraries)
        if self.merge_options() != previous:
            for slot in self._slots.values():
                self._merge(slot)
                self._publish(slot)
        return self._library_settings.filter_and_sort(self.libraries)

    async def reset(self, *, clear_cache: bool = False) -> None:
        """Forget all feed state, for example after signing out.

        Generation numbers keep counting so in-flight fetches started before
        the reset are discarded.
        """

        for context in list(self._generations):
            self._generations[context] += 1
        for task in list(self._jobs):
            task.cancel()
        self._slots.clear()
        self.libraries = []
        self._cache.clear_heroes()
        if clear_cache:
            await self._cache.clear()

    async def stop(self) -> None:
        """Cancel outstanding background refreshes."""

        jobs = list(self._jobs)
        for task in jobs:
            task.cancel()
        for task in jobs:
            with suppress(asyncio.CancelledError):
                await task
        self._jobs.clear()

    # Internals ----------------------------------------------------------

    def _advance(self, context: str) -> int:
        generation = self._generations.get(context, 0) + 1
        self._generations[context] = generation
        return generation

    def _is_current(self, context: str, generation: int) -> bool:
        return self._generations.get(context, 0) == generation

    def _ensure_current(self, context: str, generation: int) -> None:
        current = self._generations.get(context, 0)
        if current != generation:
            raise RequestSuperseded(context, generation, current)

    def _slot(self, context: str) -> _FeedSlot:
        slot = self._slots.get(context)
        if slot is None:
            fetch_page = None
            if library_key_for(context) is not None:
                fetch_page = partial(self._server.fetch_flat_items, context)
            slot = _FeedSlot(
                context=context,
                grid=RowPaginator(
                    context,
                    (),
                    fetch_page,
                    page_size=self._settings.library_page_size,
                    lookahead=self._settings.row_lookahead,
                    fingerprint_window=self._settings.reset_fingerprint_window,
                ),
            )
            self._slots[context] = slot
        return slot

    def _apply_cached(self, slot: _FeedSlot, cached: CachedFeed) -> None:
        slot.grid.reset(cached.items, cached.total_items)
        slot.raw_hubs = list(cached.hubs)
        self._merge(slot)
        slot.updated_at = cached.updated_at

    def _merge(self, slot: _FeedSlot) -> None:
        slot.hubs = merge_hubs(slot.raw_hubs, self.merge_options())
        rows: dict[str, RowPaginator] = {}
        page_keys: dict[str, str | None] = {}
        row_keys = row_keys_for(slot.hubs)
        for hub, key in zip(slot.hubs, row_keys):
            existing = slot.rows.get(key)
            if existing is not None and slot.row_page_keys.get(key) == hub.page_key:
                if existing.sync(hub.items, hub.total_size):
                    logger.debug("Row %s of %s changed, restarting pagination", key, slot.context)
                rows[key] = existing
            else:
                rows[key] = self._build_row(key, hub)
            page_keys[key] = hub.page_key
        slot.rows = rows
        slot.row_page_keys = page_keys
        slot.row_keys = row_keys

    def _build_row(self, key: str, hub: Hub) -> RowPaginator:
        fetch_page = None
        if hub.page_key:
            fetch_page = partial(self._server.fetch_hub_page, hub.page_key)
        row = RowPaginator(
            key,
            hub.items,
            fetch_page,
            total_size=hub.total_size,
            page_size=self._settings.row_page_size,
            lookahead=self._settings.row_lookahead,
            fingerprint_window=self._settings.reset_fingerprint_window,
        )
        if hub.total_size is not None and len(row.items) >= hub.total_size:
            row.has_reached_end = True
        return row

    def _select_hero(self, slot: _FeedSlot) -> None:
        if slot.hero is None:
            slot.hero = self._hero.select(slot.context, slot.hubs, slot.grid.items)

    def _snapshot(self, slot: _FeedSlot) -> FeedState:
        hubs: list[Hub] = []
        for hub, key in zip(slot.hubs, slot.row_keys):
            row = slot.rows[key]
            hubs.append(
                hub.model_copy(
                    update={"items": tuple(row.items), "total_size": row.total_size}
                )
            )
        return FeedState(
            context=slot.context,
            generation=self.generation(slot.context),
            phase=slot.phase,
            items=tuple(slot.grid.items),
            hubs=tuple(hubs),
            hero=slot.hero,
            is_loading=slot.is_loading,
            error=slot.error,
            grid=slot.grid.status() if slot.grid.can_paginate else None,
            rows=tuple(row.status() for row in slot.rows.values()),
            updated_at=slot.updated_at,
        )

    def _publish(self, slot: _FeedSlot) -> None:
        slot.updated_at = datetime.utcnow()
        self._events.emit(self._snapshot(slot))
