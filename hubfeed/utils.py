"""Utility helpers shared by the feed services."""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING, Iterable, Sequence

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .models import ContentItem


def parse_key_list(value: object, *, setting: str) -> tuple[str, ...]:
    """Split comma separated keys from the environment into a clean tuple."""

    if value is None:
        return ()
    if isinstance(value, str):
        raw_values = [part.strip() for part in value.split(",")]
    elif isinstance(value, Iterable):
        raw_values = [str(part).strip() for part in value]
    else:
        raise ValueError(f"{setting} must be a string or iterable of strings")

    cleaned: list[str] = []
    for entry in raw_values:
        if entry and entry not in cleaned:
            cleaned.append(entry)
    return tuple(cleaned)


def dedupe_by_id(
    items: Iterable["ContentItem"], *, seen: set[str] | None = None
) -> list["ContentItem"]:
    """Return items with unique ids, keeping the first occurrence.

    Items without an id are dropped since they cannot be tracked.
    """

    tracked = seen if seen is not None else set()
    unique: list["ContentItem"] = []
    for item in items:
        if item.id is None or item.id in tracked:
            continue
        tracked.add(item.id)
        unique.append(item)
    return unique


def ordered_ids(items: Iterable["ContentItem"]) -> list[str | None]:
    return [item.id for item in items]


def items_fingerprint(items: Sequence["ContentItem"], window: int) -> str:
    """Hash the identity and watched state of the leading items.

    Playback offsets are deliberately left out so progress ticks do not
    register as a content change.
    """

    digest = hashlib.sha1()
    for item in items[:window]:
        digest.update(f"{item.id or ''}:{item.view_count}|".encode("utf-8"))
    return digest.hexdigest()
