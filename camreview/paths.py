"""Path keys, containment checks and the derived-artifact layout.

Every artifact location is a pure function of the item's relative path, so
no separate index is needed to find previews or transcodes:

    .camreview/previews/<dir>/<stem>/frame_001.jpg
    .camreview/transcodes/<dir>/<stem>.mp4
"""
from __future__ import annotations

import os
import posixpath
import re
from pathlib import Path

from .errors import InvalidPath

ARTIFACT_DIR = ".camreview"
IMAGE_EXTS = frozenset({".jpg", ".jpeg", ".png"})
VIDEO_EXTS = frozenset({".mp4", ".mov"})
MEDIA_EXTS = IMAGE_EXTS | VIDEO_EXTS
PREVIEW_EXTS = (".gif", ".jpg", ".jpeg", ".png")
FRAME_PREFIX = "frame_"
FRAME_PATTERN = "frame_%03d.jpg"

ACTION_FOLDERS = {"keep": "Keep", "delete": "Trash", "favorite": "Favorites"}
_DESTINATION_RE = re.compile(r"^(keep|trash|favorites)_\d{4}-\d{2}-\d{2}$", re.IGNORECASE)

_CONTENT_TYPES = {
    ".mov": "video/quicktime",
    ".mp4": "video/mp4",
    ".png": "image/png",
    ".gif": "image/gif",
}


def normalize_rel_path(rel: str) -> str:
    """POSIX-normalize a root-relative key (backslashes and os.sep become '/')."""
    s = str(rel).replace("\\", "/")
    if os.sep != "/":
        s = s.replace(os.sep, "/")
    s = posixpath.normpath(s) if s else s
    if s == ".":
        return ""
    return s.lstrip("/") if not s.startswith("../") else s


def safe_join(root: Path, rel: str) -> Path:
    """Resolve ``rel`` under ``root``; anything resolving outside the root is rejected."""
    root = Path(root).resolve()
    p = (root / normalize_rel_path(rel)).resolve()
    try:
        p.relative_to(root)
    except ValueError:
        raise InvalidPath(f"path escapes media root: {rel}")
    return p


def media_type(name: str) -> str:
    ext = posixpath.splitext(name)[1].lower()
    return "video" if ext in VIDEO_EXTS else "image"


def is_video(name: str) -> bool:
    return posixpath.splitext(name)[1].lower() in VIDEO_EXTS


def is_image(name: str) -> bool:
    return posixpath.splitext(name)[1].lower() in IMAGE_EXTS


def content_type(name: str) -> str:
    ext = posixpath.splitext(str(name))[1].lower()
    return _CONTENT_TYPES.get(ext, "image/jpeg")


def is_reserved_dir(name: str, *, include_destinations: bool = False) -> bool:
    """Artifact cache and action destination folders are never scanned as source media."""
    lower = name.lower()
    if lower == ARTIFACT_DIR or lower == "trash":
        return True
    if include_destinations:
        return False
    return bool(_DESTINATION_RE.match(name))


def in_destination(rel: str) -> bool:
    """True when ``rel`` sits inside a dated Keep/Trash/Favorites folder."""
    head = normalize_rel_path(rel).split("/", 1)[0]
    return bool(_DESTINATION_RE.match(head))


def destination_folder(action: str, session_date: str) -> str:
    return f"{ACTION_FOLDERS[action]}_{session_date}"


def _split(rel: str) -> tuple[str, str]:
    norm = normalize_rel_path(rel)
    directory, base = posixpath.split(norm)
    stem = posixpath.splitext(base)[0]
    return directory, stem


def preview_frame_dir(rel: str) -> str:
    directory, stem = _split(rel)
    return posixpath.join(ARTIFACT_DIR, "previews", directory, stem)


def preview_frame_pattern(rel: str) -> str:
    return posixpath.join(preview_frame_dir(rel), FRAME_PATTERN)


def transcode_rel_path(rel: str) -> str:
    directory, stem = _split(rel)
    return posixpath.join(ARTIFACT_DIR, "transcodes", directory, f"{stem}.mp4")


def preview_candidates(rel: str) -> list[str]:
    """Still-image previews checked before falling back to generated frames."""
    directory, stem = _split(rel)
    base = posixpath.join(directory, stem)
    out: list[str] = []
    for ext in PREVIEW_EXTS:
        out.append(posixpath.join(ARTIFACT_DIR, "previews", f"{base}{ext}"))
        out.append(f"{base}{ext}")
    return out
