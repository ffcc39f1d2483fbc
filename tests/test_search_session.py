"""Tests for the search session controller."""

from __future__ import annotations

import asyncio
import io
from collections import Counter
from typing import Optional

import httpx
from PIL import Image

from metviewer.config import SearchConfig
from metviewer.models import CatalogItem, LoadMode, SearchState, SearchStatus
from metviewer.services.catalog_base import CatalogService, ObjectFetchError, TransportError
from metviewer.services.catalog_met import MetCatalog, MetCatalogConfig
from metviewer.services.image_preload import ImagePreloader
from metviewer.services.object_cache import ObjectCache
from metviewer.services.search_session import (
    ALL_FAILED_MESSAGE,
    SEARCH_FAILED_MESSAGE,
    SearchController,
)

FAST = SearchConfig(page_size=100, max_concurrent=4, min_delay_ms=0, preload_images=False)


def _item(object_id: int, *, image: bool = True) -> CatalogItem:
    url = f"https://images.example.com/{object_id}.jpg" if image else ""
    return CatalogItem(object_id=object_id, title=f"Object {object_id}", primary_image_small=url)


class FakeCatalog(CatalogService):
    """In-memory catalog with per-call delays and failures."""

    def __init__(
        self,
        searches: dict[str, list[int] | Exception],
        objects: dict[int, CatalogItem | Exception],
        *,
        delays: Optional[dict[int, float]] = None,
        search_delay: float = 0.0,
    ) -> None:
        self.searches = searches
        self.objects = objects
        self.delays = delays or {}
        self.search_delay = search_delay
        self.search_calls: list[str] = []
        self.fetch_calls: Counter[int] = Counter()

    async def search_object_ids(self, query: str) -> list[int]:
        self.search_calls.append(query)
        await asyncio.sleep(self.search_delay)
        result = self.searches.get(query, [])
        if isinstance(result, Exception):
            raise result
        return list(result)

    async def fetch_object(self, object_id: int) -> CatalogItem:
        self.fetch_calls[object_id] += 1
        await asyncio.sleep(self.delays.get(object_id, 0.0))
        value = self.objects.get(object_id)
        if value is None:
            raise ObjectFetchError(object_id, f"Failed to load object {object_id}", status_code=404)
        if isinstance(value, Exception):
            raise value
        return value


def _controller(catalog: CatalogService, config: SearchConfig = FAST, **kwargs) -> SearchController:
    return SearchController(catalog, config=config, **kwargs)


def test_partial_failures_keep_successful_results() -> None:
    catalog = FakeCatalog({"cats": [1, 2, 3]}, {1: _item(1), 2: _item(2)})

    async def _run() -> SearchState:
        return await _controller(catalog).search("cats")

    state = asyncio.run(_run())
    assert state.status is SearchStatus.RESULTS_READY
    assert [item.object_id for item in state.results] == [1, 2]
    assert state.error == ""
    assert state.failures == 1
    assert state.is_searching is False
    assert state.loaded_count == 2


def test_empty_search_is_not_an_error() -> None:
    catalog = FakeCatalog({"xyz123": []}, {})

    async def _run() -> SearchState:
        return await _controller(catalog).search("xyz123")

    state = asyncio.run(_run())
    assert state.status is SearchStatus.EMPTY
    assert state.error == ""
    assert state.loaded_count == 0
    assert catalog.fetch_calls == Counter()


def test_all_fetches_failing_reports_error() -> None:
    catalog = FakeCatalog({"cats": [1, 2, 3]}, {})

    async def _run() -> SearchState:
        return await _controller(catalog).search("cats")

    state = asyncio.run(_run())
    assert state.status is SearchStatus.ALL_FAILED
    assert state.error == ALL_FAILED_MESSAGE
    assert state.results == ()
    assert state.failures == 3
    assert state.is_searching is False


def test_items_without_images_are_dropped_silently() -> None:
    catalog = FakeCatalog(
        {"pottery": [1, 2]},
        {1: _item(1, image=False), 2: _item(2, image=False)},
    )

    async def _run() -> SearchState:
        return await _controller(catalog).search("pottery")

    state = asyncio.run(_run())
    assert state.status is SearchStatus.EMPTY
    assert state.error == ""
    assert state.failures == 0


def test_search_endpoint_failure_surfaces_generic_message() -> None:
    catalog = FakeCatalog({"cats": TransportError("boom", status_code=500)}, {})

    async def _run() -> SearchState:
        return await _controller(catalog).search("cats")

    state = asyncio.run(_run())
    assert state.status is SearchStatus.ERROR
    assert state.error == SEARCH_FAILED_MESSAGE
    assert state.is_searching is False


def test_candidates_are_capped_to_page_size() -> None:
    catalog = FakeCatalog({"cats": list(range(1, 11))}, {i: _item(i) for i in range(1, 11)})
    config = SearchConfig(page_size=3, max_concurrent=2, min_delay_ms=0, preload_images=False)

    async def _run() -> SearchState:
        return await _controller(catalog, config).search("cats")

    state = asyncio.run(_run())
    assert [item.object_id for item in state.results] == [1, 2, 3]
    assert set(catalog.fetch_calls) == {1, 2, 3}


def test_blank_query_resets_without_network() -> None:
    catalog = FakeCatalog({"cats": [1]}, {1: _item(1)})

    async def _run() -> None:
        controller = _controller(catalog)
        await controller.search("cats")
        state = await controller.search("   ")
        assert state == SearchState()

    asyncio.run(_run())
    assert catalog.search_calls == ["cats"]


def test_states_published_in_order() -> None:
    catalog = FakeCatalog({"cats": [1]}, {1: _item(1)})
    seen: list[SearchState] = []

    async def _run() -> None:
        controller = _controller(catalog)
        controller.subscribe(seen.append)
        await controller.search("  cats  ")

    asyncio.run(_run())
    assert seen[0].status is SearchStatus.SEARCHING
    assert seen[0].is_searching is True
    assert seen[0].query == "cats"
    assert seen[-1].status is SearchStatus.RESULTS_READY
    assert seen[-1].is_searching is False


def test_last_submitted_search_wins() -> None:
    catalog = FakeCatalog(
        {"slow": [1, 2], "fast": [3]},
        {1: _item(1), 2: _item(2), 3: _item(3)},
        delays={1: 0.2, 2: 0.2},
    )
    seen: list[SearchState] = []

    async def _run() -> None:
        controller = _controller(catalog)
        controller.subscribe(seen.append)
        first = asyncio.create_task(controller.search("slow"))
        await asyncio.sleep(0.02)
        await controller.search("fast")
        await first
        await asyncio.sleep(0.3)
        assert controller.state.query == "fast"
        assert [item.object_id for item in controller.state.results] == [3]

    asyncio.run(_run())
    fast_index = next(i for i, state in enumerate(seen) if state.query == "fast")
    assert all(state.query == "fast" for state in seen[fast_index:])
    assert all(
        item.object_id == 3 for state in seen[fast_index:] for item in state.results
    )


def test_reset_during_search_discards_late_results() -> None:
    catalog = FakeCatalog({"cats": [1, 2]}, {1: _item(1), 2: _item(2)}, delays={1: 0.1, 2: 0.1})

    async def _run() -> None:
        controller = _controller(catalog)
        task = asyncio.create_task(controller.search("cats"))
        await asyncio.sleep(0.02)
        controller.reset()
        await task
        await asyncio.sleep(0.15)
        assert controller.state == SearchState()
        assert controller.state.is_searching is False

    asyncio.run(_run())


def test_cancel_search_aborts_without_counting_failures() -> None:
    catalog = FakeCatalog(
        {"cats": [1, 2, 3]},
        {1: _item(1), 2: _item(2), 3: _item(3)},
        delays={2: 5.0, 3: 5.0},
    )

    async def _run() -> SearchState:
        controller = _controller(catalog)
        task = asyncio.create_task(controller.search("cats"))
        await asyncio.sleep(0.05)
        assert controller.cancel_search() is True
        assert controller.cancel_search() is False
        return await asyncio.wait_for(task, timeout=1)

    state = asyncio.run(_run())
    assert state.status is SearchStatus.ABORTED
    assert state.error == ""
    assert state.failures == 0
    assert [item.object_id for item in state.results] == [1]
    assert state.is_searching is False


def test_repeated_search_uses_cache() -> None:
    catalog = FakeCatalog({"cats": [1, 2]}, {1: _item(1), 2: _item(2)})

    async def _run() -> None:
        controller = _controller(catalog)
        first = await controller.search("cats")
        second = await controller.search("cats")
        assert first.results == second.results

    asyncio.run(_run())
    assert catalog.fetch_calls == Counter({1: 1, 2: 1})
    assert catalog.search_calls == ["cats", "cats"]


def test_shared_cache_between_controllers() -> None:
    catalog = FakeCatalog({"cats": [1]}, {1: _item(1)})
    cache = ObjectCache()

    async def _run() -> None:
        await _controller(catalog, cache=cache).search("cats")
        await _controller(catalog, cache=cache).search("cats")

    asyncio.run(_run())
    assert catalog.fetch_calls[1] == 1


def test_progressive_mode_publishes_in_completion_order() -> None:
    catalog = FakeCatalog(
        {"cats": [1, 2, 3]},
        {1: _item(1), 2: _item(2), 3: _item(3)},
        delays={1: 0.06, 2: 0.01, 3: 0.03},
    )
    config = SearchConfig(min_delay_ms=0, max_concurrent=3, load_mode=LoadMode.PROGRESSIVE)
    counts: list[int] = []

    async def _run() -> SearchState:
        controller = _controller(catalog, config)
        controller.subscribe(lambda state: counts.append(state.loaded_count))
        return await controller.search("cats")

    state = asyncio.run(_run())
    assert [item.object_id for item in state.results] == [2, 3, 1]
    assert state.status is SearchStatus.RESULTS_READY
    assert [1, 2, 3] == sorted(set(counts) - {0})


def test_progressive_mode_all_failed() -> None:
    catalog = FakeCatalog({"cats": [1, 2]}, {})
    config = SearchConfig(min_delay_ms=0, load_mode=LoadMode.PROGRESSIVE)

    async def _run() -> SearchState:
        return await _controller(catalog, config).search("cats")

    state = asyncio.run(_run())
    assert state.status is SearchStatus.ALL_FAILED
    assert state.error == ALL_FAILED_MESSAGE


def test_lazy_mode_fetches_on_visibility() -> None:
    catalog = FakeCatalog({"cats": [1, 2, 3, 4]}, {1: _item(1), 2: _item(2), 4: _item(4)})
    config = SearchConfig(min_delay_ms=0, load_mode=LoadMode.LAZY)
    cache = ObjectCache()
    cache.put(1, _item(1))

    async def _run() -> None:
        controller = _controller(catalog, config, cache=cache)
        state = await controller.search("cats")
        assert state.status is SearchStatus.RESULTS_READY
        assert state.candidate_ids == (1, 2, 3, 4)
        assert [item.object_id for item in state.results] == [1]
        assert catalog.fetch_calls == Counter()

        assert controller.on_visible(1) is False
        assert controller.on_visible(2) is True
        assert controller.on_visible(2) is False
        assert controller.on_visible(99) is False
        assert controller.on_visible(3) is True
        await controller.drain()

        state = controller.state
        assert sorted(item.object_id for item in state.results) == [1, 2]
        assert state.failures == 1
        assert state.error == ""
        assert controller.on_visible(2) is False

    asyncio.run(_run())
    assert catalog.fetch_calls == Counter({2: 1, 3: 1})


def test_lazy_mode_all_failed_once_every_candidate_settles() -> None:
    catalog = FakeCatalog({"cats": [5, 6]}, {})
    config = SearchConfig(min_delay_ms=0, load_mode=LoadMode.LAZY)

    async def _run() -> None:
        controller = _controller(catalog, config)
        await controller.search("cats")
        controller.on_visible(5)
        await controller.drain()
        assert controller.state.error == ""
        controller.on_visible(6)
        await controller.drain()
        assert controller.state.status is SearchStatus.ALL_FAILED
        assert controller.state.error == ALL_FAILED_MESSAGE

    asyncio.run(_run())


def test_lazy_mode_cancel_search_aborts() -> None:
    catalog = FakeCatalog({"cats": [1, 2]}, {1: _item(1), 2: _item(2)}, delays={1: 5.0})
    config = SearchConfig(min_delay_ms=0, load_mode=LoadMode.LAZY)

    async def _run() -> None:
        controller = _controller(catalog, config)
        await controller.search("cats")
        controller.on_visible(1)
        await asyncio.sleep(0.01)
        assert controller.cancel_search() is True
        await asyncio.wait_for(controller.drain(), timeout=1)
        assert controller.state.status is SearchStatus.ABORTED
        assert controller.on_visible(2) is False
        await controller.aclose()

    asyncio.run(_run())


def test_new_search_closes_details() -> None:
    catalog = FakeCatalog({"cats": [1], "dogs": [2]}, {1: _item(1), 2: _item(2)})

    async def _run() -> None:
        controller = _controller(catalog)
        state = await controller.search("cats")
        assert controller.select_item(state.results[0]) is None
        assert controller.state.details == _item(1)
        await controller.search("dogs")
        assert controller.state.selected is None
        assert controller.state.details is None

    asyncio.run(_run())


def _png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (4, 3), color=(200, 10, 10)).save(buffer, format="PNG")
    return buffer.getvalue()


def test_http_pipeline_preloads_images_before_results() -> None:
    png = _png_bytes()
    fetched_images: list[str] = []
    preloader_box: list[ImagePreloader] = []
    cached_at_ready: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/v1/search":
            return httpx.Response(200, json={"total": 3, "objectIDs": [1, 2, 3]})
        if path.startswith("/v1/objects/"):
            object_id = int(path.rsplit("/", 1)[1])
            if object_id == 3:
                return httpx.Response(500)
            return httpx.Response(
                200,
                json={
                    "objectID": object_id,
                    "title": f"Object {object_id}",
                    "primaryImage": f"https://images.example.com/full/{object_id}.png",
                    "primaryImageSmall": f"https://images.example.com/small/{object_id}.png",
                },
            )
        fetched_images.append(str(request.url))
        if path.endswith("/2.png"):
            return httpx.Response(404)
        return httpx.Response(200, content=png)

    def on_change(state: SearchState) -> None:
        if state.status is SearchStatus.RESULTS_READY:
            cached_at_ready.append(len(preloader_box[0].cache))

    async def _run() -> SearchState:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            catalog = MetCatalog(MetCatalogConfig(base_url="https://api.example.com/v1"), client=client)
            preloader = ImagePreloader(client=client)
            preloader_box.append(preloader)
            controller = SearchController(
                catalog,
                preloader=preloader,
                config=SearchConfig(min_delay_ms=0, max_concurrent=2),
            )
            controller.subscribe(on_change)
            return await controller.search("cats")

    state = asyncio.run(_run())
    assert [item.object_id for item in state.results] == [1, 2]
    assert state.error == ""
    assert state.failures == 1
    assert sorted(fetched_images) == [
        "https://images.example.com/full/1.png",
        "https://images.example.com/full/2.png",
    ]
    # The broken image is skipped; the decodable one is cached first.
    assert cached_at_ready and cached_at_ready[0] == 1


def test_lazy_mode_without_viewable_items_ends_empty() -> None:
    catalog = FakeCatalog(
        {"pottery": [1, 2]},
        {1: _item(1, image=False), 2: _item(2, image=False)},
    )
    config = SearchConfig(min_delay_ms=0, load_mode=LoadMode.LAZY)

    async def _run() -> SearchState:
        controller = _controller(catalog, config)
        state = await controller.search("pottery")
        assert state.status is SearchStatus.RESULTS_READY
        controller.on_visible(1)
        controller.on_visible(2)
        await controller.drain()
        return controller.state

    state = asyncio.run(_run())
    assert state.status is SearchStatus.EMPTY
    assert state.results == ()
    assert state.error == ""


def test_lazy_mode_with_only_cached_imageless_items_is_empty() -> None:
    catalog = FakeCatalog({"pottery": [1]}, {})
    config = SearchConfig(min_delay_ms=0, load_mode=LoadMode.LAZY)
    cache = ObjectCache()
    cache.put(1, _item(1, image=False))

    async def _run() -> SearchState:
        return await _controller(catalog, config, cache=cache).search("pottery")

    state = asyncio.run(_run())
    assert state.status is SearchStatus.EMPTY
    assert state.error == ""
    assert catalog.fetch_calls == Counter()


def test_cancel_search_keeps_lazy_all_failed_state() -> None:
    catalog = FakeCatalog({"cats": [1]}, {})
    config = SearchConfig(min_delay_ms=0, load_mode=LoadMode.LAZY)

    async def _run() -> SearchState:
        controller = _controller(catalog, config)
        await controller.search("cats")
        controller.on_visible(1)
        await controller.drain()
        assert controller.state.status is SearchStatus.ALL_FAILED
        assert controller.cancel_search() is False
        return controller.state

    state = asyncio.run(_run())
    assert state.status is SearchStatus.ALL_FAILED
    assert state.error == ALL_FAILED_MESSAGE


def test_cancel_search_after_completion_is_a_no_op() -> None:
    catalog = FakeCatalog({"cats": [1]}, {1: _item(1)})

    async def _run() -> SearchState:
        controller = _controller(catalog)
        await controller.search("cats")
        assert controller.cancel_search() is False
        return controller.state

    state = asyncio.run(_run())
    assert state.status is SearchStatus.RESULTS_READY
    assert [item.object_id for item in state.results] == [1]
