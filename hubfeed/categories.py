"""Hub category definitions used to classify server hubs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from .models import Hub


HubCategory = Literal[
    "continue-watching",
    "recently-added",
    "recently-released",
    "playlists",
    "music",
]

MUSIC_ITEM_TYPES = frozenset({"artist", "album", "track"})


@dataclass(frozen=True)
class HubCategoryDefinition:
    """Describes how a hub category is recognised.

    ``identifier_markers`` are matched against the hub identifier and
    ``title_markers`` against its display title, both as case-insensitive
    substrings.
    """

    key: HubCategory
    identifier_markers: tuple[str, ...]
    title_markers: tuple[str, ...]
    essential: bool = False

    def matches(self, hub: Hub) -> bool:
        identifier = (hub.identifier or "").lower()
        title = (hub.title or "").lower()
        if any(marker in identifier for marker in self.identifier_markers):
            return True
        return any(marker in title for marker in self.title_markers)


HUB_CATEGORIES: tuple[HubCategoryDefinition, ...] = (
    HubCategoryDefinition(
        key="continue-watching",
        identifier_markers=("continuewatching", "ondeck", "inprogress"),
        title_markers=("continue watching", "on deck"),
        essential=True,
    ),
    HubCategoryDefinition(
        key="recently-added",
        identifier_markers=("recentlyadded",),
        title_markers=("recently added",),
        essential=True,
    ),
    HubCategoryDefinition(
        key="recently-released",
        identifier_markers=("recentlyreleased", "newestreleases"),
        title_markers=("recently released", "newest releases"),
        essential=True,
    ),
    HubCategoryDefinition(
        key="playlists",
        identifier_markers=("playlist",),
        title_markers=("playlist",),
    ),
    HubCategoryDefinition(
        key="music",
        identifier_markers=("music",),
        title_markers=("music",),
    ),
)

_CATEGORY_MAP = {definition.key: definition for definition in HUB_CATEGORIES}

CONTINUE_WATCHING_IDENTIFIER = "continueWatching"
CONTINUE_WATCHING_TITLE = "Continue Watching"


def hub_categories(hub: Hub) -> frozenset[HubCategory]:
    """Return every category the hub falls into."""

    matched = {definition.key for definition in HUB_CATEGORIES if definition.matches(hub)}
    if (hub.type or "").lower() in MUSIC_ITEM_TYPES:
        matched.add("music")
    return frozenset(matched)


def is_category(hub: Hub, key: HubCategory) -> bool:
    if key == "music":
        return "music" in hub_categories(hub)
    return _CATEGORY_MAP[key].matches(hub)


def is_continue_watching(hub: Hub) -> bool:
    return is_category(hub, "continue-watching")


def is_recently_added(hub: Hub) -> bool:
    return is_category(hub, "recently-added")


def is_essential(hub: Hub) -> bool:
    """Essential hubs are never hidden by the recommendations toggle."""

    return any(_CATEGORY_MAP[key].essential for key in hub_categories(hub))
