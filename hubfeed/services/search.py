"""Debounced search against the media server."""

from __future__ import annotations

import asyncio
import logging

from ..config import Settings
from ..errors import MediaServerError
from ..models import ContentItem
from .media_server import MediaServerClient

logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 2


class DebouncedSearch:
    """Runs a search only after typing pauses for the debounce window.

    Every call takes a new token; a call whose token has been overtaken by a
    later one returns ``None`` instead of stale results.
    """

    def __init__(self, settings: Settings, server: MediaServerClient):
        self._server = server
        self._delay = settings.search_debounce_seconds
        self._token = 0
        self.results: list[ContentItem] = []
        self.last_query = ""
        self.error: str | None = None

    @property
    def token(self) -> int:
        return self._token

    def cancel(self) -> None:
        """Invalidate any pending search and clear the results."""

        self._token += 1
        self.results = []
        self.last_query = ""
        self.error = None

    async def query(
        self, text: str, *, section_id: str | None = None
    ) -> list[ContentItem] | None:
        trimmed = text.strip()
        if len(trimmed) < MIN_QUERY_LENGTH:
            self.cancel()
            return []

        self._token += 1
        token = self._token
        if self._delay:
            await asyncio.sleep(self._delay)
        if token != self._token:
            return None
        return await self._perform(trimmed, token, section_id)

    async def submit(
        self, text: str, *, section_id: str | None = None
    ) -> list[ContentItem] | None:
        """Search immediately, skipping the debounce window."""

        trimmed = text.strip()
        if len(trimmed) < MIN_QUERY_LENGTH:
            return []
        if trimmed == self.last_query and self.results:
            return self.results
        self._token += 1
        return await self._perform(trimmed, self._token, section_id)

    async def _perform(
        self, query: str, token: int, section_id: str | None
    ) -> list[ContentItem] | None:
        try:
            items = await self._server.search(query, section_id=section_id)
        except MediaServerError as exc:
            if token != self._token:
                return None
            logger.warning("Search for %r failed: %s", query, exc)
            self.results = []
            self.error = str(exc)
            return []
        if token != self._token:
            logger.debug("Discarding results for superseded search %r", query)
            return None
        self.results = items
        self.last_query = query
        self.error = None
        return items
