"""Image preloading that warms the in-memory image cache before rendering."""

from __future__ import annotations

import asyncio
import io
from dataclasses import dataclass
from typing import Optional

import httpx
from PIL import Image, UnidentifiedImageError

from logger import get_logger

LOGGER = get_logger("metviewer.preload")


class PreloadError(Exception):
    """Raised internally when an image cannot be downloaded or decoded."""


@dataclass(frozen=True, slots=True)
class DecodedImage:
    """Image bytes verified by Pillow together with their geometry."""

    url: str
    width: int
    height: int
    format: str
    data: bytes


@dataclass(frozen=True, slots=True)
class PreloadResult:
    """Outcome of a preload; always ok, ``loaded`` tells whether it decoded."""

    url: str
    loaded: bool
    ok: bool = True


class ImageCache:
    """URL keyed store of decoded images for the presentation layer."""

    def __init__(self) -> None:
        self._images: dict[str, DecodedImage] = {}

    def get(self, url: str) -> Optional[DecodedImage]:
        return self._images.get(url)

    def put(self, image: DecodedImage) -> None:
        self._images[image.url] = image

    def __contains__(self, url: object) -> bool:
        return url in self._images

    def __len__(self) -> int:
        return len(self._images)


def _decode_image(url: str, data: bytes) -> DecodedImage:
    if not data:
        raise PreloadError(f"Empty image body for {url}")
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            width, height = image.size
            format_hint = (image.format or "").upper()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise PreloadError(f"Cannot decode image {url}: {exc}") from exc
    return DecodedImage(url=url, width=width, height=height, format=format_hint, data=data)


class ImagePreloader:
    """Download and decode images so the next render has no pop-in."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        cache: ImageCache | None = None,
    ) -> None:
        if client is None:
            timeout = httpx.Timeout(15.0, connect=15.0, read=15.0)
            self._client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        else:
            self._client = client
        self._client_owner = client is None
        self.cache = cache if cache is not None else ImageCache()

    async def preload(self, url: str | None) -> PreloadResult:
        if not url:
            return PreloadResult(url="", loaded=False)
        if url in self.cache:
            return PreloadResult(url=url, loaded=True)
        try:
            data = await self._download(url)
            decoded = await asyncio.to_thread(_decode_image, url, data)
        except PreloadError as exc:
            LOGGER.debug("Preload skipped: %s", exc, stage="PRELOAD_MISS")
            return PreloadResult(url=url, loaded=False)
        self.cache.put(decoded)
        return PreloadResult(url=url, loaded=True)

    async def _download(self, url: str) -> bytes:
        try:
            response = await self._client.get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise PreloadError(f"Failed to download {url}: {exc}") from exc
        if not response.is_success:
            raise PreloadError(f"Image request for {url} returned status {response.status_code}")
        return response.content

    async def aclose(self) -> None:
        if self._client_owner:
            await self._client.aclose()


__all__ = ["DecodedImage", "ImageCache", "ImagePreloader", "PreloadError", "PreloadResult"]
