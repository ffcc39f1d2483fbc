"""Metropolitan Museum of Art collection API client."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from metviewer.config import API_BASE, HTTP_TIMEOUT_SECONDS
from metviewer.models import CatalogItem, SearchResponse
from metviewer.services.catalog_base import (
    CatalogService,
    ObjectFetchError,
    TransportError,
)
from logger import get_logger

LOGGER = get_logger("catalog.met")


@dataclass(slots=True)
class MetCatalogConfig:
    """Configuration for the collection API client."""

    base_url: str = API_BASE
    timeout_seconds: float = HTTP_TIMEOUT_SECONDS


def build_http_client(timeout_seconds: float = HTTP_TIMEOUT_SECONDS) -> httpx.AsyncClient:
    """Return the shared async client used for API, preload and download calls."""

    timeout = httpx.Timeout(timeout_seconds, connect=timeout_seconds, read=timeout_seconds)
    return httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        headers={"User-Agent": "met-viewer/1.0"},
    )


class MetCatalog(CatalogService):
    """Search and object endpoints of the public collection API."""

    def __init__(
        self,
        config: MetCatalogConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or MetCatalogConfig()
        self._base_url = self._config.base_url.rstrip("/")
        if client is None:
            self._client = build_http_client(self._config.timeout_seconds)
        else:
            self._client = client
        self._client_owner = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def search_object_ids(self, query: str) -> list[int]:
        url = f"{self._base_url}/search"
        try:
            response = await self._client.get(
                url,
                params={"hasImages": "true", "q": query},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            LOGGER.warning("Search request failed: %s", exc, stage="SEARCH_TRANSPORT")
            raise TransportError(f"Search request failed: {exc}") from exc

        if not response.is_success:
            LOGGER.warning(
                "Search endpoint responded with status %s",
                response.status_code,
                stage="SEARCH_STATUS",
            )
            raise TransportError(
                f"Search request failed with status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            search = SearchResponse.from_payload(self._json_object(response))
        except ValueError as exc:
            raise TransportError(f"Malformed search response: {exc}") from exc
        LOGGER.debug("Search returned total=%s ids=%s", search.total, len(search.object_ids))
        return list(search.object_ids)

    async def fetch_object(self, object_id: int) -> CatalogItem:
        url = f"{self._base_url}/objects/{object_id}"
        try:
            response = await self._client.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            LOGGER.debug("Object %s request failed: %s", object_id, exc)
            raise ObjectFetchError(object_id, f"Failed to load object {object_id}: {exc}") from exc

        if not response.is_success:
            LOGGER.debug("Object %s responded with status %s", object_id, response.status_code)
            raise ObjectFetchError(
                object_id,
                f"Failed to load object {object_id}",
                status_code=response.status_code,
            )

        try:
            item = CatalogItem.from_payload(self._json_object(response))
        except ValueError as exc:
            raise ObjectFetchError(object_id, f"Malformed object {object_id}: {exc}") from exc
        if item.object_id != object_id:
            raise ObjectFetchError(
                object_id,
                f"Object {object_id} returned mismatched id {item.object_id}",
            )
        return item

    async def aclose(self) -> None:  # noqa: D401 - inherited docstring
        if self._client_owner:
            await self._client.aclose()

    @staticmethod
    def _json_object(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ValueError("response is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ValueError("response is not a JSON object")
        return payload


__all__ = ["MetCatalog", "MetCatalogConfig", "build_http_client"]
