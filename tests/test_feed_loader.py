"""Feed loader behaviour tests."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, cast

import pytest

from hubfeed.config import Settings
from hubfeed.errors import MediaServerError
from hubfeed.models import ContentItem, FeedPhase, FeedState, Hub, Library
from hubfeed.services.feed_cache import FeedCache
from hubfeed.services.feed_loader import FeedLoader, row_keys_for
from hubfeed.services.hero import HeroSelector
from hubfeed.services.libraries import LibrarySettings
from hubfeed.services.media_server import MediaServerClient, PageResult


def make_items(*ids: str, **extra: Any) -> list[ContentItem]:
    return [ContentItem(id=item_id, **extra) for item_id in ids]


def ids(items) -> list[str | None]:
    return [item.id for item in items]


@dataclass
class Step:
    """A scripted server response, optionally held back until released."""

    result: Any
    gate: asyncio.Event | None = None

    async def resolve(self) -> Any:
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class ScriptedServer:
    """Stands in for the media server, replaying queued responses in order."""

    def __init__(self) -> None:
        self.item_steps: list[Step] = []
        self.hub_steps: list[Step] = []
        self.default_items = PageResult(items=[], total_size=0)
        self.default_hubs: list[Hub] = []
        self.hub_pages: dict[str, list[ContentItem]] = {}
        self.more_items: list[ContentItem] = []
        self.libraries: list[Library] = []
        self.calls: list[tuple[Any, ...]] = []

    async def fetch_flat_items(self, context: str, offset: int, limit: int) -> PageResult:
        self.calls.append(("items", context, offset, limit))
        if offset > 0:
            page = self.more_items[:limit]
            self.more_items = self.more_items[limit:]
            return PageResult(items=page, total_size=None)
        step = self.item_steps.pop(0) if self.item_steps else Step(self.default_items)
        return await step.resolve()

    async def fetch_hubs(self, context: str) -> list[Hub]:
        self.calls.append(("hubs", context))
        step = self.hub_steps.pop(0) if self.hub_steps else Step(self.default_hubs)
        return await step.resolve()

    async def fetch_hub_page(self, page_key: str, offset: int, limit: int) -> PageResult:
        self.calls.append(("page", page_key, offset, limit))
        catalogue = self.hub_pages.get(page_key, [])
        return PageResult(items=catalogue[offset : offset + limit], total_size=len(catalogue))

    async def fetch_libraries(self) -> list[Library]:
        return list(self.libraries)


def build_loader(
    server: ScriptedServer,
    cache: FeedCache | None = None,
    *,
    seed: int = 1,
    **overrides: Any,
) -> tuple[FeedLoader, FeedCache]:
    settings = Settings(_env_file=None, **overrides)  # type: ignore[arg-type]
    resolved_cache = cache or FeedCache()
    loader = FeedLoader(
        settings,
        cast(MediaServerClient, server),
        resolved_cache,
        hero_selector=HeroSelector(resolved_cache, random.Random(seed)),
        library_settings=LibrarySettings(),
    )
    return loader, resolved_cache


async def drain() -> None:
    for _ in range(20):
        await asyncio.sleep(0)


def record_states(loader: FeedLoader, context: str) -> list[FeedState]:
    states: list[FeedState] = []
    loader.subscribe(context, states.append)
    return states


def test_empty_cache_blocks_on_live_fetch_and_settles():
    async def runner():
        server = ScriptedServer()
        server.item_steps.append(Step(PageResult(items=make_items("A", "B"), total_size=2)))
        server.hub_steps.append(
            Step([Hub(identifier="recentlyAdded", items=tuple(make_items("R")))])
        )
        loader, cache = build_loader(server)
        states = record_states(loader, "library:1")

        final = await loader.activate("library:1")

        assert states[0].phase == FeedPhase.LOADING
        assert states[0].is_loading
        assert final.phase == FeedPhase.SETTLED
        assert not final.is_loading
        assert ids(final.items) == ["A", "B"]
        assert [hub.identifier for hub in final.hubs] == ["recentlyAdded"]
        assert final.hero == ContentItem(id="R")
        assert final.error is None

        cached = await cache.get("library:1")
        assert cached is not None
        assert ids(cached.items) == ["A", "B"]
        assert [hub.identifier for hub in cached.hubs] == ["recentlyAdded"]

    asyncio.run(runner())


def test_items_and_hubs_are_fetched_concurrently_and_applied_as_they_arrive():
    async def runner():
        server = ScriptedServer()
        items_gate = asyncio.Event()
        server.item_steps.append(Step(PageResult(items=make_items("A"), total_size=1), items_gate))
        server.hub_steps.append(Step([Hub(identifier="trending", items=tuple(make_items("T")))]))
        loader, _ = build_loader(server)
        states = record_states(loader, "library:1")

        pending = asyncio.create_task(loader.activate("library:1"))
        await drain()

        # Hubs landed while the item listing is still outstanding.
        assert [hub.identifier for hub in states[-1].hubs] == ["trending"]
        assert states[-1].items == ()
        assert states[-1].is_loading

        items_gate.set()
        final = await pending
        assert ids(final.items) == ["A"]
        assert [call[0] for call in server.calls] == ["items", "hubs"]

    asyncio.run(runner())


def test_cached_contents_show_immediately_then_revalidate():
    async def runner():
        cache = FeedCache()
        await cache.put("library:42", items=make_items("X", "Y"))
        server = ScriptedServer()
        gate = asyncio.Event()
        server.item_steps.append(Step(PageResult(items=make_items("X", "Y", "Z"), total_size=3), gate))
        loader, _ = build_loader(server, cache)
        states = record_states(loader, "library:42")

        shown = await loader.activate("library:42")

        assert ids(shown.items) == ["X", "Y"]
        assert not shown.is_loading
        assert states[0].phase == FeedPhase.CACHE_HIT
        assert ids(states[0].items) == ["X", "Y"]

        gate.set()
        await drain()

        final = loader.state("library:42")
        assert final.phase == FeedPhase.SETTLED
        assert ids(final.items) == ["X", "Y", "Z"]
        assert all(not state.is_loading for state in states)

    asyncio.run(runner())


def test_late_result_from_an_older_generation_is_discarded():
    async def runner():
        cache = FeedCache()
        await cache.put("library:42", items=make_items("X", "Y"))
        server = ScriptedServer()
        old_gate = asyncio.Event()
        server.item_steps.append(Step(PageResult(items=make_items("Y", "X"), total_size=2), old_gate))
        server.item_steps.append(Step(PageResult(items=make_items("Y", "X", "Z"), total_size=3)))
        loader, _ = build_loader(server, cache)
        states = record_states(loader, "library:42")

        await loader.activate("library:42")
        older = loader.generation("library:42")
        await loader.activate("library:42")
        newer = loader.generation("library:42")
        await drain()

        assert newer == older + 1
        assert ids(loader.state("library:42").items) == ["Y", "X", "Z"]
        published = len(states)

        old_gate.set()
        await drain()

        assert ids(loader.state("library:42").items) == ["Y", "X", "Z"]
        assert len(states) == published
        assert all(state.generation in {older, newer} for state in states)
        cached = await cache.get("library:42")
        assert ids(cached.items) == ["Y", "X", "Z"]

    asyncio.run(runner())


def test_unchanged_item_order_is_not_reapplied():
    async def runner():
        cache = FeedCache()
        await cache.put("library:3", items=make_items("A", "B"))
        server = ScriptedServer()
        server.item_steps.append(
            Step(PageResult(items=make_items("A", "B", title="renamed"), total_size=2))
        )
        loader, _ = build_loader(server, cache)

        await loader.activate("library:3")
        await drain()

        assert [item.title for item in loader.state("library:3").items] == [None, None]

    asyncio.run(runner())


def test_background_failure_keeps_cached_contents_and_error():
    async def runner():
        cache = FeedCache()
        await cache.put("library:5", items=make_items("A"))
        server = ScriptedServer()
        server.item_steps.append(Step(MediaServerError("offline")))
        server.hub_steps.append(Step(MediaServerError("offline")))
        loader, _ = build_loader(server, cache)

        await loader.activate("library:5")
        await drain()

        state = loader.state("library:5")
        assert state.phase == FeedPhase.SETTLED
        assert ids(state.items) == ["A"]
        assert state.error is None

    asyncio.run(runner())


def test_failure_with_nothing_to_show_is_surfaced_and_retryable():
    async def runner():
        server = ScriptedServer()
        server.item_steps.append(Step(MediaServerError("offline")))
        server.hub_steps.append(Step(MediaServerError("offline")))
        loader, _ = build_loader(server)

        failed = await loader.activate("library:8")

        assert failed.phase == FeedPhase.FAILED
        assert failed.error is not None and "offline" in failed.error
        assert not failed.is_loading

        server.item_steps.append(Step(PageResult(items=make_items("A"), total_size=1)))
        recovered = await loader.refresh("library:8")

        assert recovered.phase == FeedPhase.SETTLED
        assert recovered.error is None
        assert ids(recovered.items) == ["A"]

    asyncio.run(runner())


def test_partial_success_clears_error():
    async def runner():
        server = ScriptedServer()
        server.item_steps.append(Step(MediaServerError("items down")))
        server.hub_steps.append(Step([Hub(identifier="trending", items=tuple(make_items("T")))]))
        loader, _ = build_loader(server)

        state = await loader.activate("library:9")

        assert state.phase == FeedPhase.SETTLED
        assert state.error is None
        assert [hub.identifier for hub in state.hubs] == ["trending"]

    asyncio.run(runner())


def test_load_stream_reports_cache_hit_then_settles():
    async def runner():
        cache = FeedCache()
        await cache.put("home", hubs=[Hub(identifier="recentlyAdded", items=tuple(make_items("C")))])
        server = ScriptedServer()
        server.hub_steps.append(
            Step(
                [
                    Hub(identifier="ondeck", items=tuple(make_items("A", lastViewedAt=1))),
                    Hub(identifier="recentlyAdded", items=tuple(make_items("C"))),
                ]
            )
        )
        loader, _ = build_loader(server, cache)

        phases = []
        async for state in loader.load("home"):
            phases.append(state.phase)
            last = state

        assert phases[0] == FeedPhase.CACHE_HIT
        assert phases[-1] == FeedPhase.SETTLED
        assert [hub.identifier for hub in last.hubs] == ["continueWatching", "recentlyAdded"]
        assert loader._events.subscriber_count("home") == 0

    asyncio.run(runner())


def test_load_stream_ends_when_superseded():
    async def runner():
        server = ScriptedServer()
        gate = asyncio.Event()
        server.hub_steps.append(Step([Hub(identifier="trending", items=tuple(make_items("T")))], gate))
        loader, _ = build_loader(server)

        seen: list[FeedState] = []

        async def consume() -> None:
            async for state in loader.load("home"):
                seen.append(state)

        consumer = asyncio.create_task(consume())
        await drain()
        server.hub_steps.append(Step([Hub(identifier="fresh", items=tuple(make_items("F")))]))
        await loader.activate("home")
        await asyncio.wait_for(consumer, timeout=1)
        gate.set()
        await drain()

        assert seen and seen[0].phase == FeedPhase.LOADING
        assert {state.generation for state in seen} == {1}
        assert [hub.identifier for hub in loader.state("home").hubs] == ["fresh"]

    asyncio.run(runner())


def test_hub_rows_paginate_and_publish():
    async def runner():
        server = ScriptedServer()
        server.hub_pages["/hubs/recent"] = make_items(*[str(n) for n in range(50)])
        server.hub_steps.append(
            Step(
                [
                    Hub(
                        identifier="recentlyAdded",
                        page_key="/hubs/recent",
                        total_size=50,
                        items=tuple(server.hub_pages["/hubs/recent"][:24]),
                    )
                ]
            )
        )
        loader, _ = build_loader(server)
        await loader.activate("home")
        states = record_states(loader, "home")

        assert not await loader.on_proximity("home", "recentlyAdded", 10)
        assert await loader.on_proximity("home", "recentlyAdded", 20)
        assert await loader.on_proximity("home", "recentlyAdded", 45)

        row = loader.state("home").rows[0]
        assert row.count == 50
        assert row.has_reached_end
        assert len(loader.state("home").hubs[0].items) == 50
        assert states[-1].rows[0].count == 50

    asyncio.run(runner())


def test_unknown_row_raises_key_error():
    async def runner():
        loader, _ = build_loader(ScriptedServer())
        await loader.activate("home")
        with pytest.raises(KeyError):
            await loader.on_proximity("home", "missing", 0)

    asyncio.run(runner())


def test_refreshed_hub_keeps_pages_unless_watched_state_changes():
    async def runner():
        server = ScriptedServer()
        server.hub_pages["/hubs/recent"] = make_items(*[str(n) for n in range(60)])
        first_page = tuple(server.hub_pages["/hubs/recent"][:24])
        server.hub_steps.append(
            Step([Hub(identifier="recentlyAdded", page_key="/hubs/recent", items=first_page)])
        )
        loader, _ = build_loader(server)
        await loader.activate("home")
        await loader.on_proximity("home", "recentlyAdded", 23)
        assert loader.state("home").rows[0].count == 48

        offsets_only = tuple(item.model_copy(update={"view_offset_ms": 99}) for item in first_page)
        server.hub_steps.append(
            Step([Hub(identifier="recentlyAdded", page_key="/hubs/recent", items=offsets_only)])
        )
        await loader.refresh("home")
        assert loader.state("home").rows[0].count == 48

        watched = list(first_page)
        watched[0] = watched[0].model_copy(update={"view_count": 1})
        server.hub_steps.append(
            Step([Hub(identifier="recentlyAdded", page_key="/hubs/recent", items=tuple(watched))])
        )
        await loader.refresh("home")
        assert loader.state("home").rows[0].count == 24
        assert not loader.state("home").rows[0].has_reached_end

    asyncio.run(runner())


def test_load_more_items_grows_the_library_grid_and_caches_it():
    async def runner():
        server = ScriptedServer()
        server.item_steps.append(Step(PageResult(items=make_items("1", "2"), total_size=4)))
        server.more_items = make_items("2", "3", "4")
        loader, cache = build_loader(server)
        await loader.activate("library:1")

        assert await loader.load_more_items("library:1")

        state = loader.state("library:1")
        assert ids(state.items) == ["1", "2", "3", "4"]
        assert state.grid is not None and state.grid.has_reached_end
        cached = await cache.get("library:1")
        assert ids(cached.items) == ["1", "2", "3", "4"]

        assert not await loader.load_more_items("library:1")

    asyncio.run(runner())


def test_watch_status_updates_every_context_optimistically():
    async def runner():
        server = ScriptedServer()
        shared = ContentItem(id="S", viewOffset=500)
        server.item_steps.append(Step(PageResult(items=[shared], total_size=1)))
        server.hub_steps.append(Step([Hub(identifier="recentlyAdded", items=(shared,))]))
        server.hub_steps.append(Step([Hub(identifier="ondeck", items=(shared,))]))
        loader, _ = build_loader(server)
        await loader.activate("library:1")
        await loader.activate("home")

        touched = await loader.update_item_watch_status("S", True)

        assert touched == 2
        library = loader.state("library:1")
        assert library.items[0].view_count == 1
        assert library.items[0].view_offset_ms is None
        assert library.hero is not None and library.hero.view_count == 1
        assert loader.state("home").hubs[0].items[0].view_count == 1
        assert await loader.update_item_watch_status("missing", True) == 0

    asyncio.run(runner())


def test_music_hubs_follow_visible_music_libraries():
    async def runner():
        server = ScriptedServer()
        server.hub_steps.append(
            Step(
                [
                    Hub(identifier="music.recent.played", items=tuple(make_items("M"))),
                    Hub(identifier="recentlyAdded", items=tuple(make_items("R"))),
                ]
            )
        )
        server.libraries = [
            Library(key="1", type="movie", title="Movies"),
            Library(key="2", type="artist", title="Music"),
        ]
        loader, _ = build_loader(server)
        await loader.activate("home")
        assert [hub.identifier for hub in loader.state("home").hubs] == ["recentlyAdded"]

        visible = await loader.refresh_libraries()

        assert [library.key for library in visible] == ["1", "2"]
        assert [hub.identifier for hub in loader.state("home").hubs] == [
            "music.recent.played",
            "recentlyAdded",
        ]

    asyncio.run(runner())


def test_reset_discards_in_flight_results_and_heroes():
    async def runner():
        server = ScriptedServer()
        gate = asyncio.Event()
        server.hub_steps.append(Step([Hub(identifier="recentlyAdded", items=tuple(make_items("R")))]))
        loader, cache = build_loader(server)
        await loader.activate("home")
        assert cache.hero("home") is not None

        server.hub_steps.append(Step([Hub(identifier="stale", items=tuple(make_items("S")))], gate))
        pending = asyncio.create_task(loader.refresh("home"))
        await drain()
        before = loader.generation("home")

        await loader.reset()
        gate.set()
        await pending

        assert loader.generation("home") == before + 1
        assert cache.hero("home") is None
        assert loader.state("home").hubs == ()

    asyncio.run(runner())


def test_hubs_sharing_an_identifier_keep_their_own_rows():
    async def runner():
        server = ScriptedServer()
        server.hub_pages["/hubs/movies"] = make_items("A", "A2", "A3")
        server.hub_pages["/hubs/shows"] = make_items("B", "B2", "B3")
        server.hub_steps.append(
            Step(
                [
                    Hub(
                        identifier="home.movies.recent",
                        page_key="/hubs/movies",
                        total_size=3,
                        items=tuple(make_items("A")),
                    ),
                    Hub(
                        identifier="home.movies.recent",
                        page_key="/hubs/shows",
                        total_size=3,
                        items=tuple(make_items("B")),
                    ),
                ]
            )
        )
        loader, _ = build_loader(server)

        state = await loader.activate("home")

        assert [ids(hub.items) for hub in state.hubs] == [["A"], ["B"]]
        assert [row.key for row in state.rows] == [
            "home.movies.recent",
            "home.movies.recent#2",
        ]

        assert await loader.on_proximity("home", "home.movies.recent#2", 0)

        state = loader.state("home")
        assert [ids(hub.items) for hub in state.hubs] == [["A"], ["B", "B2", "B3"]]
        assert ("page", "/hubs/shows", 1, 24) in server.calls
        assert not any(call[:2] == ("page", "/hubs/movies") for call in server.calls)

    asyncio.run(runner())


def test_row_keys_stay_distinct_for_repeated_and_untitled_hubs():
    hubs = [
        Hub(identifier="trending"),
        Hub(identifier="trending#2"),
        Hub(identifier="trending"),
        Hub(),
        Hub(),
    ]

    assert row_keys_for(hubs) == ["trending", "trending#2", "trending#3", "hub", "hub#2"]


def test_failure_in_one_context_leaves_other_contexts_untouched():
    async def runner():
        server = ScriptedServer()
        server.item_steps.append(Step(PageResult(items=make_items("A", "B"), total_size=2)))
        server.hub_steps.append(
            Step([Hub(identifier="recentlyAdded", items=tuple(make_items("R")))])
        )
        loader, _ = build_loader(server)
        settled = await loader.activate("library:1")
        assert settled.phase == FeedPhase.SETTLED
        first_states = record_states(loader, "library:1")

        server.item_steps.append(Step(MediaServerError("offline")))
        server.hub_steps.append(Step(MediaServerError("offline")))
        failed = await loader.activate("library:2")

        assert failed.phase == FeedPhase.FAILED
        assert failed.error is not None
        untouched = loader.state("library:1")
        assert untouched.phase == FeedPhase.SETTLED
        assert untouched.error is None
        assert ids(untouched.items) == ["A", "B"]
        assert untouched.hero == settled.hero
        assert first_states == []

    asyncio.run(runner())


def test_revalidated_item_total_never_shrinks():
    async def runner():
        cache = FeedCache()
        await cache.put("library:4", items=make_items("A", "B"), total_items=500)
        server = ScriptedServer()
        server.item_steps.append(Step(PageResult(items=make_items("A", "B"), total_size=120)))
        loader, _ = build_loader(server, cache)

        await loader.activate("library:4")
        await drain()

        state = loader.state("library:4")
        assert state.phase == FeedPhase.SETTLED
        assert state.grid is not None and state.grid.total_size == 500
        cached = await cache.get("library:4")
        assert cached.total_items == 500

    asyncio.run(runner())
