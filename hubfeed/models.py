"""Pydantic models describing media server content and feed state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

HOME_CONTEXT = "home"
LIBRARY_PREFIX = "library:"


def library_context(library_key: str) -> str:
    """Return the feed context key for a library section."""

    return f"{LIBRARY_PREFIX}{library_key}"


def library_key_for(context: str) -> str | None:
    """Return the library section key for a context, or ``None`` for home."""

    if context == HOME_CONTEXT:
        return None
    if context.startswith(LIBRARY_PREFIX):
        return context[len(LIBRARY_PREFIX):] or None
    return context or None


def _coerce_key(value: object) -> object:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(int(value))
    return value


class ContentItem(BaseModel):
    """A single playable or browsable entity exposed by the media server."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str | None = Field(
        default=None, validation_alias=AliasChoices("id", "ratingKey")
    )
    type: str | None = None
    title: str | None = None
    summary: str | None = None
    year: int | None = None
    thumb: str | None = None
    art: str | None = None
    parent_title: str | None = Field(default=None, alias="parentTitle")
    grandparent_title: str | None = Field(default=None, alias="grandparentTitle")
    grandparent_thumb: str | None = Field(default=None, alias="grandparentThumb")
    added_at: int | None = Field(default=None, alias="addedAt")
    last_viewed_at: int | None = Field(default=None, alias="lastViewedAt")
    view_count: int = Field(default=0, alias="viewCount")
    view_offset_ms: int | None = Field(default=None, alias="viewOffset")
    duration_ms: int | None = Field(default=None, alias="duration")
    leaf_count: int | None = Field(default=None, alias="leafCount")
    viewed_leaf_count: int | None = Field(default=None, alias="viewedLeafCount")

    @field_validator("id", mode="before")
    @classmethod
    def _normalise_id(cls, value: object) -> object:
        return _coerce_key(value)

    @field_validator("view_count", mode="before")
    @classmethod
    def _default_view_count(cls, value: object) -> object:
        return 0 if value is None else value

    def display_title(self) -> str:
        """Return a human-friendly title for cards and hero banners."""

        if self.type == "episode" and self.grandparent_title:
            return self.grandparent_title
        title = (self.title or "").strip()
        if title:
            return title
        return f"Item {self.id}" if self.id else "Untitled"

    @property
    def watch_progress(self) -> float:
        if not self.view_offset_ms or not self.duration_ms:
            return 0.0
        return min(1.0, self.view_offset_ms / self.duration_ms)

    @property
    def is_in_progress(self) -> bool:
        return bool(self.view_offset_ms) and self.view_offset_ms > 0

    @property
    def is_watched(self) -> bool:
        if self.leaf_count:
            return (self.viewed_leaf_count or 0) >= self.leaf_count
        return self.view_count > 0

    @property
    def unwatched_count(self) -> int | None:
        if self.leaf_count is None:
            return None
        return max(0, self.leaf_count - (self.viewed_leaf_count or 0))

    def with_watch_status(self, watched: bool) -> "ContentItem":
        """Return a copy reflecting a locally applied watched toggle."""

        update: dict[str, Any] = {
            "view_count": max(self.view_count, 1) if watched else 0,
            "view_offset_ms": None,
        }
        if self.leaf_count is not None:
            update["viewed_leaf_count"] = self.leaf_count if watched else 0
        return self.model_copy(update=update)

    @classmethod
    def from_api_payload(cls, data: dict[str, Any]) -> "ContentItem":
        return cls.model_validate(data)


class Hub(BaseModel):
    """An ordered, independently paginated collection of items."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    identifier: str | None = Field(
        default=None, validation_alias=AliasChoices("identifier", "hubIdentifier")
    )
    title: str | None = None
    type: str | None = None
    page_key: str | None = Field(
        default=None, validation_alias=AliasChoices("page_key", "key")
    )
    total_size: int | None = Field(
        default=None, validation_alias=AliasChoices("total_size", "totalSize")
    )
    more: bool | None = None
    items: tuple[ContentItem, ...] = Field(
        default=(), validation_alias=AliasChoices("items", "Metadata")
    )

    @field_validator("items", mode="before")
    @classmethod
    def _default_items(cls, value: object) -> object:
        return () if value is None else value

    @property
    def key(self) -> str:
        """Return the identifier used to address the hub's row."""

        return self.identifier or self.title or ""

    def with_items(self, items: Iterable[ContentItem]) -> "Hub":
        return self.model_copy(update={"items": tuple(items)})

    @classmethod
    def from_api_payload(cls, data: dict[str, Any]) -> "Hub":
        return cls.model_validate(data)


class Library(BaseModel):
    """A library section advertised by the media server."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    key: str
    type: str
    title: str

    @field_validator("key", mode="before")
    @classmethod
    def _normalise_key(cls, value: object) -> object:
        return _coerce_key(value)

    @property
    def is_video_library(self) -> bool:
        return self.type in {"movie", "show"}

    @property
    def is_music_library(self) -> bool:
        return self.type == "artist"

    @property
    def context(self) -> str:
        return library_context(self.key)


class FeedPhase(str, Enum):
    """Lifecycle phases reported for a feed context."""

    IDLE = "idle"
    CACHE_HIT = "cache_hit"
    LOADING = "loading"
    REFRESHING = "refreshing"
    SETTLED = "settled"
    FAILED = "failed"


class RowStatus(BaseModel):
    """Pagination status for a single hub row or the flat grid."""

    model_config = ConfigDict(frozen=True)

    key: str
    count: int
    total_size: int | None = None
    is_loading_more: bool = False
    has_reached_end: bool = False


class FeedState(BaseModel):
    """Snapshot of a feed context published to subscribers."""

    model_config = ConfigDict(frozen=True)

    context: str
    generation: int = 0
    phase: FeedPhase = FeedPhase.IDLE
    items: tuple[ContentItem, ...] = ()
    hubs: tuple[Hub, ...] = ()
    hero: ContentItem | None = None
    is_loading: bool = False
    error: str | None = None
    grid: RowStatus | None = None
    rows: tuple[RowStatus, ...] = ()
    updated_at: datetime | None = None

    @property
    def has_data(self) -> bool:
        return bool(self.items or self.hubs)
