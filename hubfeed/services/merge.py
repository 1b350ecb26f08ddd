"""Merge raw server hubs into the ordered rows shown on a feed."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from ..categories import (
    CONTINUE_WATCHING_IDENTIFIER,
    CONTINUE_WATCHING_TITLE,
    hub_categories,
    is_continue_watching,
    is_essential,
)
from ..models import ContentItem, Hub
from ..utils import dedupe_by_id


@dataclass(frozen=True)
class MergeOptions:
    """Visibility toggles applied while merging hubs."""

    show_recommendations: bool = True
    show_music: bool = False


def merge_continue_watching(hubs: Iterable[Hub]) -> list[ContentItem]:
    """Flatten continue-watching and on-deck hubs into one ordered list.

    The first occurrence of an id wins. The result is sorted most recently
    viewed first, with items never viewed sorting last in encounter order.
    """

    flattened: list[ContentItem] = []
    for hub in hubs:
        flattened.extend(hub.items)
    unique = dedupe_by_id(flattened)
    unique.sort(key=lambda item: item.last_viewed_at or 0, reverse=True)
    return unique


def merge_hubs(
    raw_hubs: Sequence[Hub], options: MergeOptions | None = None
) -> list[Hub]:
    """Return display-ready hubs built from the server's hub list.

    Merging is pure and idempotent: merging an already merged list yields the
    same list.
    """

    resolved = options or MergeOptions()
    continue_hubs = [hub for hub in raw_hubs if is_continue_watching(hub)]
    merged: list[Hub] = []

    continue_items = merge_continue_watching(continue_hubs)
    if continue_items:
        merged.append(
            Hub(
                identifier=CONTINUE_WATCHING_IDENTIFIER,
                title=CONTINUE_WATCHING_TITLE,
                type="mixed",
                items=tuple(continue_items),
            )
        )

    for hub in raw_hubs:
        if is_continue_watching(hub):
            continue
        categories = hub_categories(hub)
        if "playlists" in categories:
            continue
        if "music" in categories and not resolved.show_music:
            continue
        if not resolved.show_recommendations and not is_essential(hub):
            continue
        items = dedupe_by_id(hub.items)
        if len(items) != len(hub.items):
            hub = hub.with_items(items)
        merged.append(hub)

    return merged


def essential_hubs(hubs: Iterable[Hub]) -> list[Hub]:
    """Return the hubs that anchor a feed, continue watching included."""

    return [hub for hub in hubs if is_essential(hub)]


def discovery_hubs(hubs: Iterable[Hub]) -> list[Hub]:
    """Return the recommendation style hubs shown below the essential rows."""

    return [hub for hub in hubs if not is_essential(hub)]
