"""Catalog service interface."""

from __future__ import annotations

import abc

from metviewer.models import CatalogItem


class CatalogError(RuntimeError):
    """Raised when catalog data cannot be retrieved."""


class TransportError(CatalogError):
    """Raised for network failures and non-success HTTP responses."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ObjectFetchError(TransportError):
    """Raised when a single catalog object cannot be loaded."""

    def __init__(
        self, object_id: int, message: str, *, status_code: int | None = None
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.object_id = object_id


class CatalogService(abc.ABC):
    """Interface for catalog operations."""

    @abc.abstractmethod
    async def search_object_ids(self, query: str) -> list[int]:
        """Return identifiers of objects with images matching ``query``."""

    @abc.abstractmethod
    async def fetch_object(self, object_id: int) -> CatalogItem:
        """Return the full record for ``object_id``."""

    async def aclose(self) -> None:
        """Optional hook for graceful shutdown."""

        return None
