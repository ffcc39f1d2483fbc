"""Domain models used by the viewer."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Mapping, Optional


@dataclass(frozen=True, slots=True)
class CatalogItem:
    """Collection object as returned by the catalog object endpoint."""

    object_id: int
    title: str = ""
    primary_image: str = ""
    primary_image_small: str = ""
    artist_display_name: str = ""
    artist_display_bio: str = ""
    object_date: str = ""
    medium: str = ""
    dimensions: str = ""
    culture: str = ""
    department: str = ""
    credit_line: str = ""
    object_name: str = ""
    repository: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CatalogItem":
        """Build an item from the API JSON record."""

        raw_id = payload.get("objectID")
        if isinstance(raw_id, bool) or not isinstance(raw_id, int) or raw_id <= 0:
            raise ValueError(f"Invalid objectID in catalog record: {raw_id!r}")

        def _text(key: str) -> str:
            value = payload.get(key)
            if value is None:
                return ""
            return str(value).strip()

        return cls(
            object_id=raw_id,
            title=_text("title"),
            primary_image=_text("primaryImage"),
            primary_image_small=_text("primaryImageSmall"),
            artist_display_name=_text("artistDisplayName"),
            artist_display_bio=_text("artistDisplayBio"),
            object_date=_text("objectDate"),
            medium=_text("medium"),
            dimensions=_text("dimensions"),
            culture=_text("culture"),
            department=_text("department"),
            credit_line=_text("creditLine"),
            object_name=_text("objectName"),
            repository=_text("repository"),
        )

    @property
    def is_viewable(self) -> bool:
        return bool(self.primary_image or self.primary_image_small)

    @property
    def thumbnail_url(self) -> str:
        """Image shown in the results grid."""

        return self.primary_image_small or self.primary_image

    @property
    def full_image_url(self) -> str:
        """Image shown in the details view and used for downloads."""

        return self.primary_image or self.primary_image_small

    @property
    def caption(self) -> str:
        return self.object_date or self.object_name


def format_artist(item: CatalogItem) -> str:
    if item.artist_display_name and item.artist_display_bio:
        return f"{item.artist_display_name} — {item.artist_display_bio}"
    return item.artist_display_name or item.culture or "Unknown"


@dataclass(frozen=True, slots=True)
class SearchResponse:
    """Payload of the catalog search endpoint."""

    total: int
    object_ids: tuple[int, ...]

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SearchResponse":
        raw_ids = payload.get("objectIDs") or []
        if not isinstance(raw_ids, list):
            raise ValueError("objectIDs must be a list")
        ids = tuple(
            value
            for value in raw_ids
            if isinstance(value, int) and not isinstance(value, bool) and value > 0
        )
        total = payload.get("total")
        return cls(total=total if isinstance(total, int) else len(ids), object_ids=ids)


class SearchStatus(str, enum.Enum):
    """Lifecycle of a search session as seen by the presentation layer."""

    IDLE = "idle"
    SEARCHING = "searching"
    RESULTS_READY = "results_ready"
    EMPTY = "empty"
    ALL_FAILED = "all_failed"
    ERROR = "error"
    ABORTED = "aborted"


class LoadMode(str, enum.Enum):
    """How resolved items are delivered to the results list."""

    BATCH = "batch"
    PROGRESSIVE = "progressive"
    LAZY = "lazy"


@dataclass(frozen=True, slots=True)
class SearchState:
    """Immutable snapshot of everything the presentation layer renders."""

    query: str = ""
    status: SearchStatus = SearchStatus.IDLE
    results: tuple[CatalogItem, ...] = ()
    candidate_ids: tuple[int, ...] = ()
    is_searching: bool = False
    error: str = ""
    selected: Optional[CatalogItem] = None
    details: Optional[CatalogItem] = None
    details_loading: bool = False
    failures: int = 0

    @property
    def loaded_count(self) -> int:
        return len(self.results)

    @property
    def active_details(self) -> Optional[CatalogItem]:
        return self.details or self.selected


__all__ = [
    "CatalogItem",
    "LoadMode",
    "SearchResponse",
    "SearchState",
    "SearchStatus",
    "format_artist",
]
