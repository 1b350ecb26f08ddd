"""Per-context publish/subscribe for feed state snapshots."""

from __future__ import annotations

import logging
from typing import Callable

from ..models import FeedState

logger = logging.getLogger(__name__)

FeedListener = Callable[[FeedState], None]


class FeedEvents:
    """Delivers feed snapshots to the listeners of one context.

    Listeners run synchronously on the publishing coroutine. A failing
    listener is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[FeedListener]] = {}

    def subscribe(self, context: str, callback: FeedListener) -> None:
        callbacks = self._subscribers.setdefault(context, [])
        if callback not in callbacks:
            callbacks.append(callback)

    def unsubscribe(self, context: str, callback: FeedListener) -> None:
        callbacks = self._subscribers.get(context)
        if not callbacks or callback not in callbacks:
            return
        callbacks.remove(callback)
        if not callbacks:
            self._subscribers.pop(context, None)

    def emit(self, state: FeedState) -> None:
        for callback in list(self._subscribers.get(state.context, ())):
            try:
                callback(state)
            except Exception:
                logger.exception("Feed listener for %s failed", state.context)

    def subscriber_count(self, context: str) -> int:
        return len(self._subscribers.get(context, ()))

    def clear(self) -> None:
        self._subscribers.clear()
