"""Utilities for communicating with the media server HTTP API."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..errors import MediaServerError
from ..models import ContentItem, Hub, Library, library_key_for

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PageResult:
    """Container for a page of items and the reported total size."""

    items: list[ContentItem] = field(default_factory=list)
    total_size: int | None = None


class MediaServerClient:
    """Thin wrapper around the media server's JSON endpoints.

    Every method raises :class:`MediaServerError` on transport failures,
    non-success responses and malformed payloads. No retries are attempted;
    callers decide when to try again.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "X-Plex-Client-Identifier": self._settings.client_identifier,
            "X-Plex-Product": self._settings.app_name,
            "X-Plex-Platform": "Python",
        }
        if self._settings.media_server_token:
            headers["X-Plex-Token"] = self._settings.media_server_token
        return headers

    @staticmethod
    def _paging_params(offset: int, limit: int) -> dict[str, int]:
        return {
            "X-Plex-Container-Start": max(0, offset),
            "X-Plex-Container-Size": max(0, limit),
        }

    async def _get_container(
        self, path: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        try:
            response = await self._client.get(
                path, headers=self._headers(), params=params
            )
        except httpx.HTTPError as exc:
            logger.debug("Media server request to %s failed: %s", path, exc)
            raise MediaServerError(
                f"Request to {path} failed: {exc.__class__.__name__}"
            ) from exc

        if response.status_code >= 400:
            raise MediaServerError(
                f"Media server returned {response.status_code} for {path}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise MediaServerError(f"Unexpected non-JSON response for {path}") from exc

        container = data.get("MediaContainer") if isinstance(data, dict) else None
        if not isinstance(container, dict):
            raise MediaServerError(f"Unexpected response structure for {path}")
        return container

    @staticmethod
    def _entries(container: dict[str, Any], field_name: str) -> list[dict[str, Any]]:
        raw = container.get(field_name) or []
        if not isinstance(raw, list):
            return []
        return [entry for entry in raw if isinstance(entry, dict)]

    @staticmethod
    def _total_size(container: dict[str, Any]) -> int | None:
        value = container.get("totalSize")
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    def _parse_items(self, container: dict[str, Any], path: str) -> list[ContentItem]:
        try:
            return [
                ContentItem.from_api_payload(entry)
                for entry in self._entries(container, "Metadata")
            ]
        except ValidationError as exc:
            raise MediaServerError(f"Malformed items returned for {path}") from exc

    async def fetch_libraries(self) -> list[Library]:
        """Return the library sections available on the server."""

        path = "/library/sections"
        container = await self._get_container(path)
        try:
            return [
                Library.model_validate(entry)
                for entry in self._entries(container, "Directory")
            ]
        except ValidationError as exc:
            raise MediaServerError(f"Malformed libraries returned for {path}") from exc

    async def fetch_flat_items(self, context: str, offset: int, limit: int) -> PageResult:
        """Fetch a page of the flat listing behind a library context.

        The home context has no flat listing and yields an empty page without
        contacting the server.
        """

        library_key = library_key_for(context)
        if library_key is None:
            return PageResult(items=[], total_size=0)
        path = f"/library/sections/{library_key}/all"
        container = await self._get_container(path, self._paging_params(offset, limit))
        return PageResult(
            items=self._parse_items(container, path),
            total_size=self._total_size(container),
        )

    async def fetch_hubs(self, context: str) -> list[Hub]:
        """Fetch the hub list for the home screen or a library section."""

        library_key = library_key_for(context)
        path = "/hubs" if library_key is None else f"/hubs/sections/{library_key}"
        container = await self._get_container(
            path, {"count": self._settings.row_page_size}
        )
        try:
            return [Hub.from_api_payload(entry) for entry in self._entries(container, "Hub")]
        except ValidationError as exc:
            raise MediaServerError(f"Malformed hubs returned for {path}") from exc

    async def fetch_hub_page(self, page_key: str, offset: int, limit: int) -> PageResult:
        """Fetch a further page of a hub using its opaque page key."""

        container = await self._get_container(
            page_key, self._paging_params(offset, limit)
        )
        return PageResult(
            items=self._parse_items(container, page_key),
            total_size=self._total_size(container),
        )

    async def search(
        self, query: str, *, section_id: str | None = None, limit: int = 80
    ) -> list[ContentItem]:
        """Search all libraries, or one section when ``section_id`` is given."""

        path = "/search"
        if section_id is not None:
            path = f"/library/sections/{section_id}/search"
        container = await self._get_container(
            path, {"query": query, **self._paging_params(0, limit)}
        )
        return self._parse_items(container, path)
