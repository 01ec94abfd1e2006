"""Media scanning: walk the media root and describe every supported file."""
from __future__ import annotations

import logging
import os
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional

from .errors import DirectoryUnreadable
from .logs import log
from .paths import MEDIA_EXTS, is_reserved_dir, media_type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MediaItem:
    path: str
    name: str
    folder: str
    type: str
    captured_at_ms: float
    mtime_ms: float
    size_bytes: int

    def sort_key(self) -> tuple[float, str]:
        return (self.captured_at_ms, self.path)

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "name": self.name,
            "folder": self.folder,
            "type": self.type,
            "capturedAtMs": self.captured_at_ms,
            "mtimeMs": self.mtime_ms,
            "sizeBytes": self.size_bytes,
        }


def _captured_at_ms(st: os.stat_result) -> float:
    birth = getattr(st, "st_birthtime", None)
    if birth:
        return float(birth) * 1000.0
    return st.st_mtime_ns / 1_000_000.0


def _iter_dir(dir_path: Path) -> list[os.DirEntry]:
    try:
        with os.scandir(dir_path) as it:
            return list(it)
    except OSError as e:
        raise DirectoryUnreadable(f"failed to read directory {dir_path}: {e}", data={"dir": str(dir_path)}) from e


def _walk(
    root: Path,
    dir_path: Path,
    include_destinations: bool,
    on_error: Callable[[DirectoryUnreadable], None],
) -> Iterator[MediaItem]:
    try:
        entries = _iter_dir(dir_path)
    except DirectoryUnreadable as e:
        on_error(e)
        return
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            if is_reserved_dir(entry.name, include_destinations=include_destinations):
                continue
            yield from _walk(root, Path(entry.path), include_destinations, on_error)
            continue
        if not entry.is_file():
            continue
        ext = posixpath.splitext(entry.name)[1].lower()
        if ext not in MEDIA_EXTS:
            continue
        try:
            st = entry.stat()
        except OSError as e:
            logger.warning("failed to stat file %s: %s", entry.path, e)
            continue
        rel = Path(entry.path).relative_to(root).as_posix()
        folder = posixpath.dirname(rel) or "."
        yield MediaItem(
            path=rel,
            name=entry.name,
            folder=folder,
            type=media_type(entry.name),
            captured_at_ms=_captured_at_ms(st),
            mtime_ms=st.st_mtime_ns / 1_000_000.0,
            size_bytes=st.st_size,
        )


def scan_media(
    root: Path,
    *,
    include_destinations: bool = False,
    on_error: Optional[Callable[[DirectoryUnreadable], None]] = None,
) -> list[MediaItem]:
    """
    Return every supported media file under ``root`` in review-queue order.

    Order is ascending capture time with the relative path as tiebreak.
    Unreadable subtrees are reported to ``on_error`` (default: logged) and skipped.
    Action destination folders are skipped unless ``include_destinations``.
    """
    root = Path(root)

    def _default_on_error(err: DirectoryUnreadable) -> None:
        logger.error("%s", err)

    items = list(_walk(root, root, include_destinations, on_error or _default_on_error))
    items.sort(key=MediaItem.sort_key)
    log("scan", "scanned %s: %d items", root, len(items))
    return items


__all__ = ["MediaItem", "scan_media"]
