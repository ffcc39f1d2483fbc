"""Filesystem helpers for saved images."""

from __future__ import annotations

from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Ensure directory exists and return it."""

    path.mkdir(parents=True, exist_ok=True)
    return path


def resolve_destination(answer: str, directory: Path, default_name: str) -> Path:
    """Turn a save-prompt answer into a file path.

    Bare file names land in ``directory``; an existing directory receives
    ``default_name``.
    """

    path = Path(answer).expanduser()
    if path.is_dir():
        return path / default_name
    if not path.is_absolute() and path.parent == Path("."):
        return directory / path
    return path
