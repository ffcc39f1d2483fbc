"""Application configuration loaded from environment variables."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

from metviewer.models import LoadMode

logger = logging.getLogger(__name__)

API_BASE = "https://collectionapi.metmuseum.org/public/collection/v1"
PAGE_SIZE = 100
MAX_CONCURRENT = 4
MIN_DELAY_MS = 100
HTTP_TIMEOUT_SECONDS = 15.0

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


@dataclass(frozen=True, slots=True)
class SearchConfig:
    """Limits applied to one search session."""

    page_size: int = PAGE_SIZE
    max_concurrent: int = MAX_CONCURRENT
    min_delay_ms: int = MIN_DELAY_MS
    load_mode: LoadMode = LoadMode.BATCH
    preload_images: bool = True

    def __post_init__(self) -> None:
        if self.page_size < 1:
            raise ValueError("page_size must be greater than or equal to 1")
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be greater than or equal to 1")
        if self.min_delay_ms < 0:
            raise ValueError("min_delay_ms must be greater than or equal to 0")


@dataclass(slots=True)
class Config:
    """Top-level application configuration."""

    api_base: str
    http_timeout: float
    download_dir: Path
    log_level: str
    search: SearchConfig


def _optional_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    stripped = value.strip()
    if not stripped:
        return default
    return stripped


def _parse_int_env(name: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = _optional_env(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer value") from None
    if minimum is not None and value < minimum:
        raise RuntimeError(f"{name} must be greater than or equal to {minimum}")
    return value


def _parse_float_env(name: str, default: float, *, minimum: float) -> float:
    raw = _optional_env(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number") from None
    if value < minimum:
        raise RuntimeError(f"{name} must be greater than or equal to {minimum}")
    return value


def _parse_bool_env(name: str, default: bool) -> bool:
    raw = _optional_env(name)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise RuntimeError(f"{name} must be a boolean flag (1/0, true/false)")


def _parse_url_env(name: str, default: str) -> str:
    value = _optional_env(name, default) or default
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise RuntimeError(f"{name} must be a valid HTTP(S) URL")
    return value.rstrip("/")


def _parse_load_mode(name: str, default: LoadMode) -> LoadMode:
    raw = _optional_env(name)
    if raw is None:
        return default
    try:
        return LoadMode(raw.lower())
    except ValueError:
        allowed = ", ".join(mode.value for mode in LoadMode)
        raise RuntimeError(f"{name} must be one of: {allowed}") from None


def load_config(env_file: str | None = None) -> Config:
    """Load configuration from the provided .env file (or default location)."""

    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    search = SearchConfig(
        page_size=_parse_int_env("MET_PAGE_SIZE", PAGE_SIZE, minimum=1),
        max_concurrent=_parse_int_env("MET_MAX_CONCURRENT", MAX_CONCURRENT, minimum=1),
        min_delay_ms=_parse_int_env("MET_MIN_DELAY_MS", MIN_DELAY_MS, minimum=0),
        load_mode=_parse_load_mode("MET_LOAD_MODE", LoadMode.BATCH),
        preload_images=_parse_bool_env("MET_PRELOAD_IMAGES", True),
    )
    config = Config(
        api_base=_parse_url_env("MET_API_BASE", API_BASE),
        http_timeout=_parse_float_env("MET_HTTP_TIMEOUT", HTTP_TIMEOUT_SECONDS, minimum=1.0),
        download_dir=Path(_optional_env("MET_DOWNLOAD_DIR", "downloads") or "downloads"),
        log_level=(_optional_env("LOG_LEVEL", "INFO") or "INFO").upper(),
        search=search,
    )
    logger.debug(
        "Config loaded: page_size=%s max_concurrent=%s min_delay_ms=%s mode=%s",
        search.page_size,
        search.max_concurrent,
        search.min_delay_ms,
        search.load_mode.value,
    )
    return config


__all__ = [
    "API_BASE",
    "Config",
    "MAX_CONCURRENT",
    "MIN_DELAY_MS",
    "PAGE_SIZE",
    "SearchConfig",
    "load_config",
]
