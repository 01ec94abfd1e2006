"""Derived artifacts (preview frames, transcodes) and single-flight generation."""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .errors import NotFound, ProcessingFailed
from .ffmpeg import FfmpegAdapter
from .logs import log
from .paths import (
    FRAME_PATTERN,
    FRAME_PREFIX,
    is_video,
    normalize_rel_path,
    preview_candidates,
    preview_frame_dir,
    preview_frame_pattern,
    safe_join,
    transcode_rel_path,
)

logger = logging.getLogger(__name__)

Generator = Callable[[], Awaitable[list[str]]]
Probe = Callable[[], Awaitable[list[str]]]


class ArtifactJobRegistry:
    """
    Keyed single-flight: at most one in-flight generation per destination key.

    Callers arriving while a generation runs join it and receive its result (or
    its exception). The entry is dropped when the generation settles, so a later
    call after a failure retries. Generations are shielded from caller
    cancellation and always run to completion.
    """

    def __init__(self):
        self._inflight: dict[str, asyncio.Future] = {}
        self.generations = 0

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    def keys(self) -> list[str]:
        return list(self._inflight)

    async def ensure(self, key: str, generator: Generator, probe: Probe) -> list[str]:
        fut = self._inflight.get(key)
        if fut is None:
            existing = await probe()
            if existing:
                return existing
            # Re-check: another caller may have started while we probed.
            fut = self._inflight.get(key)
        if fut is None:
            fut = asyncio.ensure_future(generator())
            self._inflight[key] = fut
            self.generations += 1
            fut.add_done_callback(lambda f, k=key: self._settle(k, f))
        return await asyncio.shield(fut)

    def _settle(self, key: str, fut: asyncio.Future) -> None:
        if self._inflight.get(key) is fut:
            del self._inflight[key]
        if not fut.cancelled() and fut.exception() is not None:
            logger.warning("artifact generation failed for %s: %s", key, fut.exception())


def _list_frames(dir_path: Path) -> list[str]:
    try:
        names = os.listdir(dir_path)
    except OSError:
        return []
    return sorted(n for n in names if n.startswith(FRAME_PREFIX) and n.endswith(".jpg"))


def _promote_dir(tmp: Path, final: Path) -> None:
    if final.exists():
        shutil.rmtree(final)
    os.replace(tmp, final)


class ArtifactStore:
    """Preview frames and transcodes stored under the hidden ``.camreview`` subtree."""

    def __init__(
        self,
        root: Path,
        ffmpeg: FfmpegAdapter,
        registry: Optional[ArtifactJobRegistry] = None,
        *,
        fps: float = 2.0,
        max_frames: int = 24,
    ):
        self.root = Path(root)
        self.ffmpeg = ffmpeg
        self.registry = registry or ArtifactJobRegistry()
        self.fps = fps
        self.max_frames = max_frames

    # -- preview frames ----------------------------------------------

    async def list_preview_frames(self, rel: str) -> list[str]:
        dir_rel = preview_frame_dir(rel)
        dir_path = safe_join(self.root, dir_rel)
        names = await asyncio.to_thread(_list_frames, dir_path)
        return [f"{dir_rel}/{n}" for n in names]

    async def ensure_preview_frames(self, rel: str) -> list[str]:
        """Existing frames, or frames generated once no matter how many callers ask."""
        rel = normalize_rel_path(rel)
        if not is_video(rel):
            return []
        key = preview_frame_pattern(rel)

        async def probe() -> list[str]:
            return await self.list_preview_frames(rel)

        async def generate() -> list[str]:
            src = safe_join(self.root, rel)
            if not await asyncio.to_thread(src.is_file):
                raise NotFound(f"source video missing: {rel}")
            final_dir = safe_join(self.root, preview_frame_dir(rel))
            tmp_dir = final_dir.with_name(f"{final_dir.name}.partial-{uuid.uuid4().hex[:8]}")
            await asyncio.to_thread(tmp_dir.mkdir, parents=True, exist_ok=True)
            try:
                await self.ffmpeg.extract_frames(
                    src, tmp_dir / FRAME_PATTERN, fps=self.fps, max_frames=self.max_frames
                )
                if not await asyncio.to_thread(_list_frames, tmp_dir):
                    raise ProcessingFailed(f"ffmpeg produced no frames for {rel}")
                await asyncio.to_thread(_promote_dir, tmp_dir, final_dir)
            finally:
                if tmp_dir.exists():
                    await asyncio.to_thread(shutil.rmtree, tmp_dir, True)
            frames = await self.list_preview_frames(rel)
            log("ffmpeg", "preview frames ready: %s (%d)", rel, len(frames))
            return frames

        return await self.registry.ensure(key, generate, probe)

    # -- transcodes --------------------------------------------------

    async def find_transcode(self, rel: str) -> Optional[str]:
        dest_rel = transcode_rel_path(rel)
        dest = safe_join(self.root, dest_rel)
        return dest_rel if await asyncio.to_thread(dest.is_file) else None

    async def ensure_transcode(self, rel: str) -> str:
        rel = normalize_rel_path(rel)
        dest_rel = transcode_rel_path(rel)

        async def probe() -> list[str]:
            found = await self.find_transcode(rel)
            return [found] if found else []

        async def generate() -> list[str]:
            src = safe_join(self.root, rel)
            if not await asyncio.to_thread(src.is_file):
                raise NotFound(f"source video missing: {rel}")
            dest = safe_join(self.root, dest_rel)
            tmp = dest.with_name(f"{dest.stem}.partial-{uuid.uuid4().hex[:8]}.mp4")
            await asyncio.to_thread(dest.parent.mkdir, parents=True, exist_ok=True)
            try:
                await self.ffmpeg.transcode(src, tmp)
                await asyncio.to_thread(os.replace, tmp, dest)
            finally:
                if tmp.exists():
                    await asyncio.to_thread(tmp.unlink)
            log("ffmpeg", "transcode ready: %s", dest_rel)
            return [dest_rel]

        result = await self.registry.ensure(dest_rel, generate, probe)
        return result[0]

    # -- still previews ----------------------------------------------

    async def find_preview(self, rel: str) -> Optional[str]:
        """A sibling or cached still with the item's stem, else the first frame."""
        for cand in preview_candidates(rel):
            p = safe_join(self.root, cand)
            if await asyncio.to_thread(p.is_file):
                return cand
        frames = await self.list_preview_frames(rel)
        return frames[0] if frames else None

    async def preview_image(self, rel: str) -> Optional[str]:
        found = await self.find_preview(rel)
        if found:
            return found
        frames = await self.ensure_preview_frames(rel)
        return frames[0] if frames else None

    def fs_path(self, rel: str) -> Path:
        return safe_join(self.root, rel)


__all__ = ["ArtifactJobRegistry", "ArtifactStore"]
