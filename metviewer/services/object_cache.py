"""Process-lifetime cache of fully fetched catalog objects."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterator, Optional

from metviewer.models import CatalogItem
from logger import get_logger

LOGGER = get_logger("metviewer.cache")


class ObjectCache:
    """Append-only mapping from object id to item.

    Entries are never evicted. Content for an id is immutable, so concurrent
    writers of the same id converge on an equivalent value.
    """

    def __init__(self) -> None:
        self._items: dict[int, CatalogItem] = {}
        self._locks: dict[int, asyncio.Lock] = {}
        self._waiters: dict[int, int] = {}

    def get(self, object_id: int) -> Optional[CatalogItem]:
        return self._items.get(object_id)

    def put(self, object_id: int, item: CatalogItem) -> None:
        if item.object_id != object_id:
            raise ValueError(f"Cannot store object {item.object_id} under id {object_id}")
        self._items[object_id] = item

    def __contains__(self, object_id: object) -> bool:
        return object_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[int]:
        return iter(list(self._items))

    async def get_or_fetch(
        self,
        object_id: int,
        fetcher: Callable[[], Awaitable[CatalogItem]],
    ) -> CatalogItem:
        """Return the cached item or fetch and store it, atomically per key.

        A failed or cancelled fetch stores nothing and releases the key, so a
        later caller retries the network.
        """

        cached = self._items.get(object_id)
        if cached is not None:
            return cached
        lock = self._locks.setdefault(object_id, asyncio.Lock())
        self._waiters[object_id] = self._waiters.get(object_id, 0) + 1
        try:
            async with lock:
                cached = self._items.get(object_id)
                if cached is not None:
                    return cached
                item = await fetcher()
                self.put(object_id, item)
                LOGGER.debug("Cached object %s (size=%s)", object_id, len(self._items))
                return item
        finally:
            remaining = self._waiters.pop(object_id) - 1
            if remaining:
                self._waiters[object_id] = remaining
            else:
                self._locks.pop(object_id, None)

    @property
    def pending_keys(self) -> int:
        """Number of ids with a fetch in flight or waiting for one."""

        return len(self._locks)


__all__ = ["ObjectCache"]
