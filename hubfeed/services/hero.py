"""Hero highlight selection for feed contexts."""

from __future__ import annotations

import logging
import random
from typing import Sequence

from ..categories import is_recently_added
from ..models import ContentItem, Hub
from .feed_cache import FeedCache

logger = logging.getLogger(__name__)


class HeroSelector:
    """Pick one featured item per context and keep it stable.

    Once chosen, a context's hero is cached and returned unchanged until the
    cache drops it. Pass a seeded ``random.Random`` for repeatable picks.
    """

    def __init__(
        self,
        cache: FeedCache,
        rng: random.Random | None = None,
        *,
        recent_pool: int = 10,
    ):
        self._cache = cache
        self._rng = rng or random.Random()
        self._recent_pool = max(1, recent_pool)

    def select(
        self,
        context: str,
        hubs: Sequence[Hub],
        items: Sequence[ContentItem] = (),
    ) -> ContentItem | None:
        cached = self._cache.hero(context)
        if cached is not None:
            return cached

        hero = self._pick_from_hubs(hubs)
        if hero is None:
            hero = self._pick_from_items(items)
        if hero is None:
            return None

        logger.debug("Selected hero %s for %s", hero.id, context)
        self._cache.store_hero(context, hero)
        return hero

    def _pick_from_hubs(self, hubs: Sequence[Hub]) -> ContentItem | None:
        for hub in hubs:
            if is_recently_added(hub) and hub.items:
                return self._rng.choice(hub.items)
        return None

    def _pick_from_items(self, items: Sequence[ContentItem]) -> ContentItem | None:
        if not items:
            return None
        recent = sorted(items, key=lambda item: item.added_at or 0, reverse=True)
        return self._rng.choice(recent[: self._recent_pool])
