"""Saving full-resolution images to local disk."""

from __future__ import annotations

import abc
import asyncio
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import urlparse

import httpx

from metviewer.models import CatalogItem
from metviewer.utils.paths import ensure_dir
from logger import get_logger, info_domain

LOGGER = get_logger("metviewer.persistence")

DEFAULT_EXTENSION = ".jpg"
FALLBACK_BASENAME = "met-image"
NO_IMAGE_MESSAGE = "No image available for download."

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


class PersistenceError(Exception):
    """Raised when an image cannot be downloaded or written."""


@dataclass(frozen=True, slots=True)
class SaveImageRequest:
    url: str
    default_name: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SaveImageResult:
    canceled: bool
    file_path: Optional[Path] = None
    error: Optional[str] = None

    @property
    def saved(self) -> bool:
        return not self.canceled and self.error is None and self.file_path is not None


class SaveDialog(abc.ABC):
    """Interface for asking the user where to save a file."""

    @abc.abstractmethod
    async def choose_path(self, default_name: str) -> Optional[Path]:
        """Return the chosen destination, or None when the user cancels."""


def build_default_filename(item: CatalogItem) -> str:
    """Return a filesystem-friendly base name derived from the item title."""

    safe_title = _NON_ALNUM_RE.sub("-", item.title.lower()).strip("-")
    return safe_title or f"met-{item.object_id}"


def resolve_extension(url: str) -> str:
    suffix = PurePosixPath(urlparse(url).path).suffix
    return suffix or DEFAULT_EXTENSION


def describe_save_result(result: SaveImageResult) -> str:
    """Short status line shown next to the download action."""

    if result.canceled:
        return "Download canceled."
    if result.error:
        return result.error
    return "Saved to disk."


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    ensure_dir(path.parent)
    with tempfile.NamedTemporaryFile("wb", delete=False, dir=path.parent) as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_path = Path(tmp.name)
    try:
        os.replace(tmp_path, path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise


class ImageSaver:
    """Prompt for a location, download the image and write it atomically."""

    def __init__(self, dialog: SaveDialog, *, client: httpx.AsyncClient | None = None) -> None:
        self._dialog = dialog
        if client is None:
            timeout = httpx.Timeout(60.0, connect=15.0)
            self._client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        else:
            self._client = client
        self._client_owner = client is None

    async def save(self, request: SaveImageRequest) -> SaveImageResult:
        try:
            base_name = (request.default_name or "").strip() or FALLBACK_BASENAME
            default_name = f"{base_name}{resolve_extension(request.url)}"
            file_path = await self._dialog.choose_path(default_name)
            if file_path is None:
                LOGGER.debug("Save dialog canceled for %s", request.url)
                return SaveImageResult(canceled=True)

            data = await self._download(request.url)
            await asyncio.to_thread(_atomic_write_bytes, Path(file_path), data)
        except Exception as exc:  # noqa: BLE001 - reported as a status string
            LOGGER.warning("Saving image failed: %s", exc, stage="SAVE_FAILED")
            return SaveImageResult(canceled=False, error=str(exc) or "Unable to save image")

        info_domain(
            "metviewer.persistence",
            f"Image saved to {file_path}",
            stage="SAVE_OK",
            bytes=len(data),
        )
        return SaveImageResult(canceled=False, file_path=Path(file_path))

    async def save_item(self, item: CatalogItem) -> SaveImageResult:
        url = item.full_image_url
        if not url:
            return SaveImageResult(canceled=False, error=NO_IMAGE_MESSAGE)
        return await self.save(SaveImageRequest(url=url, default_name=build_default_filename(item)))

    async def _download(self, url: str) -> bytes:
        try:
            response = await self._client.get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise PersistenceError(f"Download failed: {exc}") from exc
        if response.status_code >= 400:
            raise PersistenceError(f"Download failed: {response.status_code}")
        return response.content

    async def aclose(self) -> None:
        if self._client_owner:
            await self._client.aclose()


__all__ = [
    "ImageSaver",
    "PersistenceError",
    "SaveDialog",
    "SaveImageRequest",
    "SaveImageResult",
    "build_default_filename",
    "describe_save_result",
    "resolve_extension",
]
