"""Focus position tracking for navigational scopes.

Only the active scope may record focus. When a scope becomes active again,
restore listeners receive the record last stored for it so the view layer
can put focus back where the user left it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

logger = logging.getLogger(__name__)

CONTENT_SCOPE = "content"
SIDEBAR_SCOPE = "sidebar"
PLAYER_SCOPE = "player"
PLAYER_INFO_BAR_SCOPE = "player.infoBar"
MODAL_SCOPE = "modal"
SETTINGS_SCOPE = "settings"
DETAIL_SCOPE = "detail"
CHANNEL_PICKER_SCOPE = "channelPicker"
GUIDE_SCOPE = "guide"

MAX_HISTORY = 10


@dataclass(frozen=True)
class FocusRecord:
    """The focused leaf within a scope.

    ``context`` disambiguates items sharing an id across rows.
    """

    item_id: str
    context: str | None = None
    scope: str = CONTENT_SCOPE

    @property
    def unique_id(self) -> str:
        if self.context is not None:
            return f"{self.scope}:{self.context}:{self.item_id}"
        return f"{self.scope}:{self.item_id}"


RestoreListener = Callable[[str, "FocusRecord | None"], None]


def locate_focus_target(
    record: FocusRecord | None,
    candidates: Sequence[FocusRecord],
    default: FocusRecord | None = None,
) -> FocusRecord | None:
    """Find the element matching a restored record.

    Candidates are narrowed to the record's context first, then matched by
    item id. Without a match the default, or the first candidate, is used.
    """

    fallback = default if default is not None else (candidates[0] if candidates else None)
    if record is None:
        return fallback
    for candidate in candidates:
        if candidate.context != record.context:
            continue
        if candidate.item_id == record.item_id:
            return candidate
    return fallback


class FocusScopeManager:
    """Tracks the active scope stack and the focus record of each scope."""

    def __init__(self, root_scope: str = CONTENT_SCOPE):
        self.active_scope = root_scope
        self.focused_item: FocusRecord | None = None
        self.restore_trigger = 0
        self._scope_stack: list[str] = [root_scope]
        self._saved: dict[str, FocusRecord] = {}
        self._history: dict[str, list[FocusRecord]] = {}
        self._listeners: list[RestoreListener] = []

    # Listeners ----------------------------------------------------------

    def add_restore_listener(self, callback: RestoreListener) -> None:
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_restore_listener(self, callback: RestoreListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _emit_restore(self, scope: str, record: FocusRecord | None) -> None:
        self.restore_trigger += 1
        for callback in list(self._listeners):
            try:
                callback(scope, record)
            except Exception:
                logger.exception("Focus restore listener for %s failed", scope)

    # Scope activation ---------------------------------------------------

    def activate(
        self, scope: str, *, saving_current: bool = True, push_to_stack: bool = True
    ) -> FocusRecord | None:
        """Make ``scope`` active and return the record to restore, if any."""

        previous = self.active_scope
        if saving_current and self.focused_item is not None:
            self._saved[previous] = self.focused_item
        if push_to_stack and scope != previous:
            self._scope_stack.append(scope)
        elif not push_to_stack and scope != previous:
            self._scope_stack[-1] = scope

        self.active_scope = scope
        saved = self._saved.get(scope)
        self.focused_item = saved
        if scope != previous:
            logger.debug("Focus scope %s -> %s", previous, scope)
            self._emit_restore(scope, saved)
        return saved

    def switch_to(self, scope: str, *, saving_current: bool = True) -> FocusRecord | None:
        """Replace the active scope without growing the stack."""

        return self.activate(scope, saving_current=saving_current, push_to_stack=False)

    def deactivate(self) -> FocusRecord | None:
        """Leave the active scope and return to its parent.

        The root scope cannot be deactivated; ``None`` is returned then.
        """

        if len(self._scope_stack) <= 1:
            return None
        if self.focused_item is not None:
            self._saved[self.active_scope] = self.focused_item
        self._scope_stack.pop()
        parent = self._scope_stack[-1]
        self.active_scope = parent
        saved = self._saved.get(parent)
        self.focused_item = saved
        self._emit_restore(parent, saved)
        return saved

    def on_scope_activated(self, scope: str) -> FocusRecord | None:
        return self.activate(scope)

    # Focus --------------------------------------------------------------

    def set_focus(
        self, item_id: str, context: str | None = None, scope: str | None = None
    ) -> bool:
        """Record focus on an item; ignored unless its scope is active."""

        record = FocusRecord(item_id=item_id, context=context, scope=scope or self.active_scope)
        if record.scope != self.active_scope:
            logger.debug(
                "Ignoring focus on %s while %s is active", record.unique_id, self.active_scope
            )
            return False
        if self.focused_item is not None and self.focused_item != record:
            self._add_to_history(self.focused_item)
        self.focused_item = record
        self._saved[record.scope] = record
        return True

    def on_focus_changed(
        self, item_id: str, context: str | None = None, scope: str | None = None
    ) -> bool:
        return self.set_focus(item_id, context, scope)

    def clear_focus(self) -> None:
        if self.focused_item is not None:
            self._add_to_history(self.focused_item)
        self.focused_item = None

    def focus_back(self) -> bool:
        """Return to the previous focus position within the active scope."""

        history = self._history.get(self.active_scope)
        if not history:
            return False
        previous = history.pop()
        self.focused_item = previous
        self._saved[previous.scope] = previous
        self._emit_restore(self.active_scope, previous)
        return True

    def _add_to_history(self, record: FocusRecord) -> None:
        history = [entry for entry in self._history.get(record.scope, []) if entry != record]
        history.append(record)
        self._history[record.scope] = history[-MAX_HISTORY:]

    # Queries ------------------------------------------------------------

    def restore_target(self, scope: str) -> FocusRecord | None:
        return self._saved.get(scope)

    def is_scope_active(self, scope: str) -> bool:
        return self.active_scope == scope

    def is_scope_in_stack(self, scope: str) -> bool:
        return scope in self._scope_stack

    @property
    def scope_depth(self) -> int:
        return len(self._scope_stack)

    @property
    def parent_scope(self) -> str | None:
        if len(self._scope_stack) < 2:
            return None
        return self._scope_stack[-2]

    def is_focused(
        self, item_id: str, context: str | None = None, scope: str | None = None
    ) -> bool:
        current = self.focused_item
        if current is None:
            return False
        return (
            current.scope == (scope or self.active_scope)
            and current.context == context
            and current.item_id == item_id
        )


class FocusMemory:
    """Remembers the last focused item of each page section.

    When focus enters a section from outside, :meth:`redirect` sends it to
    the remembered item instead of whichever item the platform picked.
    """

    def __init__(self) -> None:
        self._memory: dict[str, str] = {}

    def remember(self, section: str, item_id: str) -> None:
        self._memory[section] = item_id

    def recall(self, section: str) -> str | None:
        return self._memory.get(section)

    def forget(self, section: str) -> None:
        self._memory.pop(section, None)

    def clear(self) -> None:
        self._memory.clear()

    def has_memory(self, section: str) -> bool:
        return section in self._memory

    def redirect(self, section: str, previous: str | None, current: str) -> str:
        """Return the item that should hold focus after a focus move."""

        if previous is None:
            remembered = self._memory.get(section)
            if remembered is not None and remembered != current:
                return remembered
        self._memory[section] = current
        return current
