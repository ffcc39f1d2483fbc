"""Search session lifecycle: query, candidate ids, per-object fetch, preload."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from metviewer.config import SearchConfig
from metviewer.infrastructure.concurrency import (
    CancelToken,
    OperationCancelled,
    RateLimitedQueue,
    TaskResult,
    run_rate_limited,
)
from metviewer.models import CatalogItem, LoadMode, SearchState, SearchStatus
from metviewer.services.catalog_base import CatalogService
from metviewer.services.image_preload import ImagePreloader, PreloadResult
from metviewer.services.object_cache import ObjectCache
from metviewer.services.selection import DetailSelector
from logger import bind_context, get_logger, info_domain, reset_context

LOGGER = get_logger("metviewer.search")

ALL_FAILED_MESSAGE = "All artwork requests failed. Please try again."
SEARCH_FAILED_MESSAGE = "Search failed. Please try again."

StateListener = Callable[[SearchState], None]


class AllFetchesFailedError(Exception):
    """Raised when every object fetch of a session failed."""

    def __init__(self, failures: int) -> None:
        super().__init__(ALL_FAILED_MESSAGE)
        self.failures = failures


@dataclass(slots=True)
class SearchSession:
    """One user-initiated search, identified by its token."""

    token: int
    query: str
    cancel: CancelToken
    candidate_ids: tuple[int, ...] = ()
    results: list[CatalogItem] = field(default_factory=list)
    failures: int = 0
    settled: set[int] = field(default_factory=set)
    queue: Optional[RateLimitedQueue[int, CatalogItem]] = None


class SearchController:
    """Owns the current search session and the state shown to the user.

    Every continuation captures its session token and compares it with the
    live token before mutating state, so a superseded search never
    overwrites the results of a newer one.
    """

    def __init__(
        self,
        catalog: CatalogService,
        *,
        cache: ObjectCache | None = None,
        preloader: ImagePreloader | None = None,
        config: SearchConfig | None = None,
    ) -> None:
        self._catalog = catalog
        self._cache = cache if cache is not None else ObjectCache()
        self._preloader = preloader
        self._config = config or SearchConfig()
        self._token = 0
        self._session: Optional[SearchSession] = None
        self._state = SearchState()
        self._listeners: list[StateListener] = []
        self._selector = DetailSelector(catalog, self._cache, on_change=self._sync_selection)

    @property
    def state(self) -> SearchState:
        return self._state

    @property
    def token(self) -> int:
        return self._token

    @property
    def cache(self) -> ObjectCache:
        return self._cache

    @property
    def config(self) -> SearchConfig:
        return self._config

    @property
    def session(self) -> Optional[SearchSession]:
        return self._session

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register ``listener`` for state snapshots; return an unsubscribe hook."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def search(self, query: str) -> SearchState:
        trimmed = query.strip()
        if not trimmed:
            self.reset()
            return self._state

        previous = self._session
        self._token += 1
        session = SearchSession(token=self._token, query=trimmed, cancel=CancelToken())
        self._session = session
        if previous is not None:
            previous.cancel.cancel()

        self._selector.close()
        self._publish(
            query=trimmed,
            status=SearchStatus.SEARCHING,
            results=(),
            candidate_ids=(),
            is_searching=True,
            error="",
            failures=0,
        )

        context = bind_context(search_token=session.token, query=trimmed)
        try:
            await self._run(session)
        finally:
            reset_context(context)
            if self._is_current(session) and self._state.is_searching:
                self._publish(is_searching=False)
        return self._state

    def reset(self) -> None:
        """Invalidate the current session and return to the idle state."""

        self._token += 1
        session, self._session = self._session, None
        if session is not None:
            session.cancel.cancel()
        self._selector.close()
        self._state = SearchState()
        self._notify()

    def cancel_search(self) -> bool:
        """Abort network work of the current session, keeping what resolved."""

        session = self._session
        if session is None or session.cancel.cancelled:
            return False
        if session.queue is not None:
            if self._all_settled(session):
                return False
        elif not self._state.is_searching:
            return False
        session.cancel.cancel()
        if session.queue is not None:
            self._finish_aborted(session)
        return True

    def select_item(self, item: CatalogItem):
        return self._selector.select(item)

    def close_details(self) -> None:
        self._selector.close()

    def on_visible(self, object_id: int) -> bool:
        """Lazy mode: fetch ``object_id`` once its placeholder became visible."""

        session = self._session
        if session is None or session.queue is None:
            return False
        if object_id not in session.candidate_ids or object_id in session.settled:
            return False
        return session.queue.enqueue(object_id)

    async def drain(self) -> None:
        """Wait until the current session's lazy queue is idle."""

        session = self._session
        if session is not None and session.queue is not None:
            await session.queue.join()

    async def aclose(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            session.cancel.cancel()
            if session.queue is not None:
                await session.queue.aclose()

    async def _run(self, session: SearchSession) -> None:
        info_domain("metviewer.search", "Search started", stage="SEARCH_STARTED")
        try:
            ids = await session.cancel.guard(self._catalog.search_object_ids(session.query))
        except OperationCancelled:
            self._finish_aborted(session)
            return
        except Exception as exc:  # noqa: BLE001 - surfaced as a generic message
            if not self._is_current(session):
                return
            LOGGER.warning("Search request failed: %s", exc, stage="SEARCH_FAILED")
            self._publish(
                status=SearchStatus.ERROR,
                error=SEARCH_FAILED_MESSAGE,
                is_searching=False,
            )
            return

        if not self._is_current(session):
            return
        session.candidate_ids = tuple(ids[: self._config.page_size])
        info_domain(
            "metviewer.search",
            f"Search returned {len(session.candidate_ids)} candidates",
            stage="SEARCH_IDS",
            total=len(ids),
        )
        if not session.candidate_ids:
            self._publish(status=SearchStatus.EMPTY, is_searching=False)
            info_domain("metviewer.search", "No results", stage="SEARCH_EMPTY")
            return

        if self._config.load_mode is LoadMode.LAZY:
            self._start_lazy(session)
            return

        try:
            if self._config.load_mode is LoadMode.PROGRESSIVE:
                results = await self._resolve_progressive(session)
            else:
                results = await self._resolve_batch(session)
        except AllFetchesFailedError as exc:
            if not self._is_current(session):
                return
            LOGGER.warning(
                "All %s object requests failed", exc.failures, stage="SEARCH_ALL_FAILED"
            )
            self._publish(
                status=SearchStatus.ALL_FAILED,
                error=ALL_FAILED_MESSAGE,
                results=(),
                failures=exc.failures,
                is_searching=False,
            )
            return

        if results is None or not self._is_current(session):
            return
        status = SearchStatus.RESULTS_READY if results else SearchStatus.EMPTY
        self._publish(
            status=status,
            results=tuple(results),
            failures=session.failures,
            is_searching=False,
        )
        info_domain(
            "metviewer.search",
            f"Results ready: {len(results)} items",
            stage="SEARCH_READY",
            failures=session.failures,
        )

    async def _resolve_batch(self, session: SearchSession) -> Optional[list[CatalogItem]]:
        outcome = await run_rate_limited(
            session.candidate_ids,
            self._load_object,
            limit=self._config.max_concurrent,
            delay_ms=self._config.min_delay_ms,
            cancel=session.cancel,
        )
        if not self._is_current(session):
            return None
        viewable = [item for item in outcome.successes() if item.is_viewable]
        session.failures = outcome.failure_count
        if outcome.cancelled:
            session.results = viewable
            self._finish_aborted(session)
            return None
        self._raise_if_all_failed(session, viewable)

        if self._preloader is not None and self._config.preload_images and viewable:
            preloaded = await run_rate_limited(
                viewable,
                self._preload,
                limit=self._config.max_concurrent,
                delay_ms=self._config.min_delay_ms,
                cancel=session.cancel,
            )
            if not self._is_current(session):
                return None
            if preloaded.cancelled:
                session.results = viewable
                self._finish_aborted(session)
                return None
        session.results = viewable
        return viewable

    async def _resolve_progressive(self, session: SearchSession) -> Optional[list[CatalogItem]]:
        def _deliver(result: TaskResult[int, CatalogItem]) -> None:
            if not self._is_current(session) or not result.ok:
                return
            item = result.value
            if item is None or not item.is_viewable:
                return
            session.results.append(item)
            self._publish(results=tuple(session.results))

        outcome = await run_rate_limited(
            session.candidate_ids,
            self._load_object,
            limit=self._config.max_concurrent,
            delay_ms=self._config.min_delay_ms,
            on_result=_deliver,
            cancel=session.cancel,
        )
        if not self._is_current(session):
            return None
        session.failures = outcome.failure_count
        if outcome.cancelled:
            self._finish_aborted(session)
            return None
        self._raise_if_all_failed(session, session.results)
        return list(session.results)

    def _start_lazy(self, session: SearchSession) -> None:
        for object_id in session.candidate_ids:
            cached = self._cache.get(object_id)
            if cached is None:
                continue
            session.settled.add(object_id)
            if cached.is_viewable:
                session.results.append(cached)

        def _deliver(result: TaskResult[int, CatalogItem]) -> None:
            self._deliver_lazy(session, result)

        session.queue = RateLimitedQueue(
            self._load_object,
            limit=self._config.max_concurrent,
            delay_ms=self._config.min_delay_ms,
            on_result=_deliver,
            cancel=session.cancel,
        )
        # Every candidate may already be cached without a viewable image.
        settled_empty = self._all_settled(session) and not session.results
        self._publish(
            status=SearchStatus.EMPTY if settled_empty else SearchStatus.RESULTS_READY,
            candidate_ids=session.candidate_ids,
            results=tuple(session.results),
            is_searching=False,
        )
        info_domain(
            "metviewer.search",
            f"Placeholders ready: {len(session.candidate_ids)} items, {len(session.results)} cached",
            stage="SEARCH_LAZY",
        )

    def _deliver_lazy(self, session: SearchSession, result: TaskResult[int, CatalogItem]) -> None:
        if not self._is_current(session):
            return
        session.settled.add(result.item)
        if not result.ok:
            session.failures += 1
            LOGGER.debug("Object %s failed: %s", result.item, result.error)
        elif result.value is not None and result.value.is_viewable:
            session.results.append(result.value)

        if self._all_settled(session) and not session.results:
            if session.failures > 0:
                LOGGER.warning(
                    "All %s object requests failed", session.failures, stage="SEARCH_ALL_FAILED"
                )
                self._publish(
                    status=SearchStatus.ALL_FAILED,
                    error=ALL_FAILED_MESSAGE,
                    failures=session.failures,
                )
            else:
                self._publish(status=SearchStatus.EMPTY, failures=0)
                info_domain("metviewer.search", "No results", stage="SEARCH_EMPTY")
            return
        self._publish(results=tuple(session.results), failures=session.failures)

    async def _load_object(self, object_id: int) -> CatalogItem:
        return await self._cache.get_or_fetch(
            object_id, lambda: self._catalog.fetch_object(object_id)
        )

    async def _preload(self, item: CatalogItem) -> PreloadResult:
        assert self._preloader is not None
        return await self._preloader.preload(item.full_image_url)

    @staticmethod
    def _raise_if_all_failed(session: SearchSession, viewable: list[CatalogItem]) -> None:
        if not viewable and session.failures > 0:
            raise AllFetchesFailedError(session.failures)

    def _finish_aborted(self, session: SearchSession) -> None:
        if not self._is_current(session):
            return
        LOGGER.debug("Search aborted with %s resolved items", len(session.results))
        self._publish(
            status=SearchStatus.ABORTED,
            results=tuple(session.results),
            failures=session.failures,
            is_searching=False,
            error="",
        )

    @staticmethod
    def _all_settled(session: SearchSession) -> bool:
        return len(session.settled) >= len(session.candidate_ids)

    def _is_current(self, session: SearchSession) -> bool:
        return session.token == self._token

    def _sync_selection(self) -> None:
        self._publish(
            selected=self._selector.selected,
            details=self._selector.details,
            details_loading=self._selector.loading,
        )

    def _publish(self, **changes) -> None:
        self._state = replace(self._state, **changes)
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._state)


__all__ = [
    "ALL_FAILED_MESSAGE",
    "AllFetchesFailedError",
    "SEARCH_FAILED_MESSAGE",
    "SearchController",
    "SearchSession",
]
