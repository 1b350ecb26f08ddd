"""Library visibility and ordering preferences."""

from __future__ import annotations

from typing import Iterable, Sequence

from ..config import Settings
from ..models import Library


class LibrarySettings:
    """Tracks which library sections are shown and in what order.

    Libraries missing from the configured order keep their server order and
    follow the ordered ones.
    """

    def __init__(
        self,
        hidden_keys: Iterable[str] = (),
        order: Iterable[str] = (),
    ):
        self.hidden_keys: set[str] = set(hidden_keys)
        self.order: list[str] = list(dict.fromkeys(order))

    @classmethod
    def from_settings(cls, settings: Settings) -> "LibrarySettings":
        return cls(settings.hidden_library_keys, settings.library_order)

    def is_visible(self, library_key: str) -> bool:
        return library_key not in self.hidden_keys

    def hide(self, library_key: str) -> None:
        self.hidden_keys.add(library_key)

    def show(self, library_key: str) -> None:
        self.hidden_keys.discard(library_key)

    def toggle(self, library_key: str) -> bool:
        """Flip visibility and return whether the library is now visible."""

        if library_key in self.hidden_keys:
            self.show(library_key)
            return True
        self.hide(library_key)
        return False

    def move(self, from_index: int, to_index: int) -> None:
        """Move an entry of the order list, ignoring out of range indexes."""

        if from_index == to_index:
            return
        if not 0 <= from_index < len(self.order):
            return
        if not 0 <= to_index <= len(self.order):
            return
        key = self.order.pop(from_index)
        adjusted = to_index - 1 if to_index > from_index else to_index
        self.order.insert(min(adjusted, len(self.order)), key)

    def sort(self, libraries: Sequence[Library]) -> list[Library]:
        by_key: dict[str, Library] = {}
        for library in libraries:
            by_key.setdefault(library.key, library)
        result = [by_key[key] for key in self.order if key in by_key]
        ordered = set(self.order)
        seen: set[str] = set()
        for library in libraries:
            if library.key in ordered or library.key in seen:
                continue
            seen.add(library.key)
            result.append(library)
        return result

    def filter_and_sort(self, libraries: Sequence[Library]) -> list[Library]:
        return self.sort([library for library in libraries if self.is_visible(library.key)])

    def sync_order(self, libraries: Sequence[Library]) -> None:
        """Append new libraries to the order and forget removed ones."""

        current = [library.key for library in libraries]
        for key in current:
            if key not in self.order:
                self.order.append(key)
        present = set(current)
        self.order = [key for key in self.order if key in present]
        self.hidden_keys &= present

    def has_music_library_visible(self, libraries: Iterable[Library]) -> bool:
        return any(
            library.is_music_library and self.is_visible(library.key)
            for library in libraries
        )
