"""Incremental loading for hub rows and library grids."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable

from ..errors import MediaServerError, PaginationFailure
from ..models import ContentItem, RowStatus
from ..utils import dedupe_by_id, items_fingerprint
from .media_server import PageResult

logger = logging.getLogger(__name__)

FetchPage = Callable[[int, int], Awaitable[PageResult]]


class RowPaginator:
    """Grows one row's item list a page at a time as the user scrolls.

    A page is requested when the visible index comes within ``lookahead``
    items of the end of the loaded list. Once the end is reached it stays
    reached until the row is reset with a new initial item set.
    """

    def __init__(
        self,
        key: str,
        items: Iterable[ContentItem],
        fetch_page: FetchPage | None,
        *,
        total_size: int | None = None,
        page_size: int = 24,
        lookahead: int = 5,
        fingerprint_window: int = 20,
    ):
        self.key = key
        self._fetch_page = fetch_page
        self._page_size = page_size
        self._lookahead = lookahead
        self._fingerprint_window = fingerprint_window
        self.items: list[ContentItem] = dedupe_by_id(items)
        self.total_size = total_size
        self.is_loading_more = False
        self.has_reached_end = False
        self.last_failure: PaginationFailure | None = None
        self._fingerprint = items_fingerprint(self.items, fingerprint_window)
        self._epoch = 0

    @property
    def can_paginate(self) -> bool:
        return self._fetch_page is not None

    def should_load(self, visible_index: int) -> bool:
        if not self.can_paginate or self.is_loading_more or self.has_reached_end:
            return False
        return visible_index >= len(self.items) - self._lookahead

    async def on_proximity(self, visible_index: int) -> bool:
        """Load the next page if the visible index is close to the end.

        Returns ``True`` when new items were appended.
        """

        if not self.should_load(visible_index):
            return False
        return await self.load_next_page()

    async def load_next_page(self) -> bool:
        if self._fetch_page is None or self.is_loading_more or self.has_reached_end:
            return False
        if self.total_size is not None and len(self.items) >= self.total_size:
            self.has_reached_end = True
            return False

        epoch = self._epoch
        offset = len(self.items)
        self.is_loading_more = True
        try:
            result = await self._fetch_page(offset, self._page_size)
        except MediaServerError as exc:
            if epoch == self._epoch:
                self.last_failure = PaginationFailure(self.key, offset, exc)
                logger.warning("Failed to load more items for %s: %s", self.key, exc)
            return False
        finally:
            if epoch == self._epoch:
                self.is_loading_more = False

        if epoch != self._epoch:
            logger.debug("Discarding page for %s fetched before a reset", self.key)
            return False
        self.last_failure = None
        return self._append(result)

    def _append(self, result: PageResult) -> bool:
        if result.total_size is not None:
            self.total_size = max(self.total_size or 0, result.total_size)

        if not result.items:
            self.has_reached_end = True
            return False

        novel = dedupe_by_id(result.items, seen={item.id for item in self.items if item.id})
        if not novel:
            logger.info(
                "Page for %s at offset %s held only loaded items, treating as end",
                self.key,
                len(self.items),
            )
            self.has_reached_end = True
            return False

        if self.total_size is not None:
            novel = novel[: max(0, self.total_size - len(self.items))]
        self.items.extend(novel)
        if self.total_size is not None and len(self.items) >= self.total_size:
            self.has_reached_end = True
        return bool(novel)

    def sync(self, items: Iterable[ContentItem], total_size: int | None = None) -> bool:
        """Adopt a refreshed initial item set if its content changed.

        Returns ``True`` when the row was reset. Changes limited to playback
        offsets keep the accumulated pages.
        """

        candidate = dedupe_by_id(items)
        fingerprint = items_fingerprint(candidate, self._fingerprint_window)
        if fingerprint == self._fingerprint:
            return False
        self.reset(candidate, total_size)
        return True

    def reset(self, items: Iterable[ContentItem], total_size: int | None = None) -> None:
        self._epoch += 1
        self.items = dedupe_by_id(items)
        self._fingerprint = items_fingerprint(self.items, self._fingerprint_window)
        if total_size is not None:
            self.total_size = total_size
        self.is_loading_more = False
        self.has_reached_end = False
        self.last_failure = None

    def replace_items(self, update: Callable[[ContentItem], ContentItem]) -> bool:
        """Apply a per-item update in place, returning whether anything changed."""

        changed = False
        for index, item in enumerate(self.items):
            replacement = update(item)
            if replacement != item:
                self.items[index] = replacement
                changed = True
        return changed

    def status(self) -> RowStatus:
        return RowStatus(
            key=self.key,
            count=len(self.items),
            total_size=self.total_size,
            is_loading_more=self.is_loading_more,
            has_reached_end=self.has_reached_end,
        )
