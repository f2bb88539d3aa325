"""Path resolution for files served out of the watch root."""
from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Iterable

from .errors import PathBlockedError


def safe_join(root: Path, rel: str) -> Path:
    """Join ``rel`` onto ``root`` and refuse anything that lands outside it.

    ``..`` segments and absolute paths are rejected outright, before any
    filesystem lookup, so the answer does not depend on what exists on disk.
    Symlinks are followed and must still resolve inside the root.
    """
    normalized = str(rel).replace("\\", "/")
    if not normalized.strip("/"):
        raise PathBlockedError("Path is empty")
    if normalized.startswith("/") or (len(normalized) > 1 and normalized[1] == ":"):
        raise PathBlockedError("Absolute paths are not allowed")
    parts = [part for part in normalized.split("/") if part not in ("", ".")]
    if any(part == ".." for part in parts):
        raise PathBlockedError("Path traversal is blocked")
    base = root.resolve()
    p = (base / Path(*parts)).resolve()
    try:
        p.relative_to(base)
    except ValueError:
        raise PathBlockedError("Resolved path escapes the watch root") from None
    return p


def resolve_asset(root: Path, rel: str, extensions: Iterable[str]) -> Path | None:
    """Return the file for an asset request, or None when it should 404.

    Raises PathBlockedError for traversal attempts regardless of extension.
    """
    p = safe_join(root, rel)
    if p.suffix.lower() not in set(extensions):
        return None
    if not p.exists() or not p.is_file():
        return None
    return p


def guess_media_type(path: Path) -> str:
    return mimetypes.guess_type(str(path))[0] or "application/octet-stream"
