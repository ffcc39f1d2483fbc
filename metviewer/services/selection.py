"""Detail selection: fetch-or-cache lookup for the item the user opens."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from metviewer.models import CatalogItem
from metviewer.services.catalog_base import CatalogService
from metviewer.services.object_cache import ObjectCache
from logger import get_logger

LOGGER = get_logger("metviewer.selection")


class DetailSelector:
    """Tracks the selected item and its resolved details.

    Detail fetches ignore search cancellation: the user may inspect an item
    that belongs to a superseded search.
    """

    def __init__(
        self,
        catalog: CatalogService,
        cache: ObjectCache,
        *,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._catalog = catalog
        self._cache = cache
        self._on_change = on_change
        self._selection_token = 0
        self._task: Optional[asyncio.Task] = None
        self.selected: Optional[CatalogItem] = None
        self.details: Optional[CatalogItem] = None
        self.loading = False

    @property
    def active_details(self) -> Optional[CatalogItem]:
        return self.details or self.selected

    def select(self, item: CatalogItem) -> Optional[asyncio.Task]:
        """Select ``item``; return the detail fetch task on a cache miss."""

        self._selection_token += 1
        token = self._selection_token
        self.selected = item
        self.details = None

        cached = self._cache.get(item.object_id)
        if cached is not None:
            self.details = cached
            self.loading = False
            self._notify()
            return None

        self.loading = True
        self._notify()
        self._task = asyncio.get_running_loop().create_task(self._resolve(token, item))
        return self._task

    def close(self) -> None:
        self._selection_token += 1
        self.selected = None
        self.details = None
        self.loading = False
        self._notify()

    async def _resolve(self, token: int, item: CatalogItem) -> CatalogItem:
        try:
            details = await self._cache.get_or_fetch(
                item.object_id, lambda: self._catalog.fetch_object(item.object_id)
            )
        except Exception as exc:  # noqa: BLE001 - degrade to the summary item
            LOGGER.warning(
                "Details for object %s unavailable, showing summary: %s",
                item.object_id,
                exc,
                stage="DETAILS_FALLBACK",
            )
            details = item
        if token != self._selection_token:
            return details
        self.details = details
        self.loading = False
        self._notify()
        return details

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change()


__all__ = ["DetailSelector"]
