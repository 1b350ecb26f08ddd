"""Entry point for the FastAPI feed service."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import asdict
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from .config import settings
from .database import Database
from .errors import MediaServerError
from .services.feed_cache import FeedCache
from .services.feed_loader import FeedLoader
from .services.focus import FocusRecord, FocusScopeManager
from .services.libraries import LibrarySettings
from .services.media_server import MediaServerClient
from .services.merge import discovery_hubs, essential_hubs
from .services.search import DebouncedSearch

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


class ProximityPayload(BaseModel):
    index: int = Field(ge=0, validation_alias=AliasChoices("index", "visibleIndex"))


class WatchStatusPayload(BaseModel):
    watched: bool = True


class FocusPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_id: str = Field(alias="itemId", min_length=1)
    context: str | None = None
    scope: str | None = None


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    client_kwargs: dict[str, Any] = {
        "timeout": httpx.Timeout(settings.request_timeout_seconds, connect=10.0)
    }
    if settings.media_server_url:
        client_kwargs["base_url"] = str(settings.media_server_url)
    http_client = await exit_stack.enter_async_context(httpx.AsyncClient(**client_kwargs))

    database = Database(settings.database_url)
    await database.create_all()

    server = MediaServerClient(settings, http_client)
    cache = FeedCache(database.session_factory, memory_limit=settings.memory_cache_limit)
    feed_loader = FeedLoader(
        settings,
        server,
        cache,
        library_settings=LibrarySettings.from_settings(settings),
    )

    app.state.database = database
    app.state.feed_loader = feed_loader
    app.state.focus_manager = FocusScopeManager()
    app.state.search = DebouncedSearch(settings, server)

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await feed_loader.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Cached, incrementally loaded media feeds for 10-foot clients",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_feed_loader(app: FastAPI) -> FeedLoader:
    loader = getattr(app.state, "feed_loader", None)
    if not isinstance(loader, FeedLoader):
        raise RuntimeError("Feed loader not initialised")
    return loader


def get_focus_manager(app: FastAPI) -> FocusScopeManager:
    manager = getattr(app.state, "focus_manager", None)
    if not isinstance(manager, FocusScopeManager):
        raise RuntimeError("Focus manager not initialised")
    return manager


def get_search(app: FastAPI) -> DebouncedSearch:
    search = getattr(app.state, "search", None)
    if not isinstance(search, DebouncedSearch):
        raise RuntimeError("Search not initialised")
    return search


async def _read_payload(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        payload = {}
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    return payload


def _focus_payload(record: FocusRecord | None) -> dict[str, Any] | None:
    if record is None:
        return None
    return {**asdict(record), "uniqueId": record.unique_id}


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/feeds/{context}")
    async def feed_state(context: str) -> dict[str, Any]:
        loader = get_feed_loader(fastapi_app)
        return loader.state(context).model_dump(mode="json")

    @fastapi_app.post("/feeds/{context}/activate")
    async def activate_feed(context: str) -> dict[str, Any]:
        loader = get_feed_loader(fastapi_app)
        state = await loader.activate(context)
        return state.model_dump(mode="json")

    @fastapi_app.post("/feeds/{context}/refresh")
    async def refresh_feed(context: str) -> dict[str, Any]:
        loader = get_feed_loader(fastapi_app)
        state = await loader.refresh(context)
        return state.model_dump(mode="json")

    @fastapi_app.get("/feeds/{context}/hubs")
    async def feed_hubs(context: str, group: str = "all") -> dict[str, Any]:
        loader = get_feed_loader(fastapi_app)
        hubs = list(loader.state(context).hubs)
        if group == "essential":
            hubs = essential_hubs(hubs)
        elif group == "discovery":
            hubs = discovery_hubs(hubs)
        elif group != "all":
            raise HTTPException(status_code=400, detail="Unsupported hub group")
        return {"hubs": [hub.model_dump(mode="json") for hub in hubs]}

    @fastapi_app.post("/feeds/{context}/rows/{row_key}/proximity")
    async def row_proximity(context: str, row_key: str, request: Request) -> dict[str, Any]:
        loader = get_feed_loader(fastapi_app)
        try:
            payload = ProximityPayload.model_validate(await _read_payload(request))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        try:
            appended = await loader.on_proximity(context, row_key, payload.index)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        row = next(
            (row for row in loader.state(context).rows if row.key == row_key), None
        )
        return {
            "appended": appended,
            "row": row.model_dump(mode="json") if row is not None else None,
        }

    @fastapi_app.post("/feeds/{context}/items/more")
    async def load_more_items(context: str) -> dict[str, Any]:
        loader = get_feed_loader(fastapi_app)
        appended = await loader.load_more_items(context)
        grid = loader.state(context).grid
        return {
            "appended": appended,
            "grid": grid.model_dump(mode="json") if grid is not None else None,
        }

    @fastapi_app.post("/items/{item_id}/watched")
    async def update_watch_status(item_id: str, request: Request) -> dict[str, Any]:
        loader = get_feed_loader(fastapi_app)
        try:
            payload = WatchStatusPayload.model_validate(await _read_payload(request))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        touched = await loader.update_item_watch_status(item_id, payload.watched)
        return {"itemId": item_id, "watched": payload.watched, "contexts": touched}

    @fastapi_app.get("/libraries")
    async def libraries() -> dict[str, Any]:
        loader = get_feed_loader(fastapi_app)
        try:
            visible = await loader.refresh_libraries()
        except MediaServerError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {
            "libraries": [
                {**library.model_dump(mode="json"), "context": library.context}
                for library in visible
            ]
        }

    @fastapi_app.get("/search")
    async def search(q: str = "", section: str | None = None) -> dict[str, Any]:
        results = await get_search(fastapi_app).query(q, section_id=section)
        return {
            "query": q.strip(),
            "superseded": results is None,
            "results": [item.model_dump(mode="json") for item in results or []],
        }

    @fastapi_app.post("/focus")
    async def set_focus(request: Request) -> dict[str, Any]:
        manager = get_focus_manager(fastapi_app)
        try:
            payload = FocusPayload.model_validate(await _read_payload(request))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        accepted = manager.on_focus_changed(payload.item_id, payload.context, payload.scope)
        return {"accepted": accepted, "activeScope": manager.active_scope}

    @fastapi_app.get("/focus/{scope}")
    async def focus_target(scope: str) -> dict[str, Any]:
        manager = get_focus_manager(fastapi_app)
        return {
            "scope": scope,
            "active": manager.is_scope_active(scope),
            "restore": _focus_payload(manager.restore_target(scope)),
        }

    @fastapi_app.post("/focus/scopes/deactivate")
    async def deactivate_scope() -> dict[str, Any]:
        manager = get_focus_manager(fastapi_app)
        restored = manager.deactivate()
        return {"activeScope": manager.active_scope, "restore": _focus_payload(restored)}

    @fastapi_app.post("/focus/scopes/{scope}/activate")
    async def activate_scope(scope: str) -> dict[str, Any]:
        manager = get_focus_manager(fastapi_app)
        restored = manager.on_scope_activated(scope)
        return {"activeScope": manager.active_scope, "restore": _focus_payload(restored)}


app = create_app()
