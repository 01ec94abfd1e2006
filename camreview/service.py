"""ReviewService: the one object that owns ledger, undo history, job maps and clients."""
from __future__ import annotations

import asyncio
import logging
from datetime import date
from pathlib import Path
from typing import Callable, Optional

import httpx

from .actions import ActionEngine, ActionResult, UndoResult, UndoStack
from .artifacts import ArtifactStore
from .batch import BatchEnrichmentPipeline
from .config import AppConfig
from .errors import InvalidRequest, NotFound, ProcessingFailed, ReviewError
from .ffmpeg import FfmpegAdapter
from .ledger import ReviewLedger, mark_critter, mark_critter_error
from .logs import log
from .paths import content_type, in_destination, is_image, is_video, normalize_rel_path, safe_join
from .scanner import MediaItem, scan_media
from .vision import VisionClassifierClient

logger = logging.getLogger(__name__)

MAX_CAPTION_LENGTH = 1000


def merge_record(item: MediaItem, rec: Optional[dict]) -> dict:
    rec = rec or {}
    out = item.to_dict()
    out.update(
        {
            "status": rec.get("status") or "unreviewed",
            "reviewedAt": rec.get("reviewedAt"),
            "favoritedAt": rec.get("favoritedAt"),
            "caption": rec.get("caption") or "",
            "critter": rec.get("critter"),
            "critterConfidence": rec.get("critterConfidence"),
            "critterCheckedAt": rec.get("critterCheckedAt"),
            "critterModel": rec.get("critterModel"),
            "critterError": rec.get("critterError"),
        }
    )
    return out


def _read_bytes(path: Path) -> bytes:
    return path.read_bytes()


class ReviewService:
    """
    Constructed once at startup and handed to request handlers.

    Every ledger mutation happens under ``self.lock``; network and ffmpeg calls
    never hold it.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        ffmpeg: Optional[FfmpegAdapter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        today: Callable[[], date] = date.today,
    ):
        self.config = config
        self.root = Path(config.media_root)
        self.lock = asyncio.Lock()
        self.ledger = ReviewLedger(config.ledger_path)
        self.undo_stack = UndoStack()
        self.engine = ActionEngine(self.root, self.ledger, self.undo_stack, today=today)
        self.ffmpeg = ffmpeg or FfmpegAdapter(config.ffmpeg_path, timeout=config.ffmpeg_timeout)
        self.artifacts = ArtifactStore(
            self.root,
            self.ffmpeg,
            fps=config.preview_fps,
            max_frames=config.preview_max_frames,
        )
        self.vision = VisionClassifierClient(
            config.openrouter_api_key,
            config.openrouter_model,
            endpoint=config.openrouter_endpoint,
            referrer=config.openrouter_referrer,
            timeout=config.vision_timeout,
            max_image_edge=config.max_image_edge,
            transport=transport,
        )
        self.batch = BatchEnrichmentPipeline(
            self.ledger,
            self.engine,
            self.vision,
            scan=self.scan,
            resolve_image=self.representative_image,
            lock=self.lock,
        )

    def startup(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.ledger.load()
        log("scan", "media root %s, ledger %s", self.root, self.ledger.path)

    # -- listing -----------------------------------------------------

    async def scan(self, *, include_destinations: bool = False) -> list[MediaItem]:
        items = await asyncio.to_thread(scan_media, self.root, include_destinations=include_destinations)
        async with self.lock:
            await self.ledger.sync_async(items)
        return items

    async def list_items(self) -> dict:
        """
        Unreviewed source items in review order, plus progress counts.

        Counts cover the destination folders too, since every decided item
        has been moved into one of them.
        """
        items = await self.scan(include_destinations=True)
        merged = [merge_record(item, self.ledger.get(item.path)) for item in items]
        remaining = [m for m in merged if m["status"] == "unreviewed" and not in_destination(m["path"])]
        return {
            "items": remaining,
            "counts": {
                "total": len(merged),
                "reviewed": sum(1 for m in merged if m["status"] != "unreviewed"),
                "remaining": len(remaining),
            },
        }

    async def library(self) -> dict:
        items = await self.scan(include_destinations=True)
        return {"items": [merge_record(item, self.ledger.get(item.path)) for item in items]}

    def health(self) -> dict:
        return {
            "ok": True,
            "mediaRoot": str(self.root),
            "records": len(self.ledger),
            "ffmpeg": self.ffmpeg.available(),
            "vision": self.vision.configured,
            "undo": len(self.undo_stack),
        }

    # -- review actions ----------------------------------------------

    async def apply_action(self, path: str, action: str) -> ActionResult:
        async with self.lock:
            return await self.engine.apply(path, action)

    async def undo(self) -> UndoResult:
        async with self.lock:
            return await self.engine.undo()

    async def _require_item(self, path: str) -> MediaItem:
        rel = normalize_rel_path(path)
        safe_join(self.root, rel)
        for item in await self.scan(include_destinations=True):
            if item.path == rel:
                return item
        raise NotFound(f"not found: {rel}")

    async def set_caption(self, path: str, caption: str) -> str:
        if len(caption) > MAX_CAPTION_LENGTH:
            raise InvalidRequest("caption exceeds 1000 characters", code="caption_too_long")
        item = await self._require_item(path)
        async with self.lock:
            rec = self.ledger.get(item.path)
            if rec is None:
                raise NotFound(f"not found: {item.path}")
            rec["caption"] = caption
            await self.ledger.save_async()
        return caption

    # -- vision ------------------------------------------------------

    async def representative_image(self, path: str) -> tuple[bytes, str]:
        """Image bytes to show a classifier: the file itself, or a video's first preview frame."""
        rel = normalize_rel_path(path)
        if is_image(rel):
            src = safe_join(self.root, rel)
        elif is_video(rel):
            frame = await self.artifacts.preview_image(rel)
            if not frame:
                raise ProcessingFailed(f"no preview image for {rel}", code="no_preview")
            src = self.artifacts.fs_path(frame)
        else:
            raise InvalidRequest(f"not an image: {rel}", code="not_image")
        try:
            data = await asyncio.to_thread(_read_bytes, src)
        except FileNotFoundError as e:
            raise NotFound(f"not found: {rel}") from e
        return data, content_type(src.name)

    async def detect_critter(self, path: str, *, force: bool = False) -> dict:
        """
        Classify one item. A cached outcome, success or error, is returned as-is
        unless ``force`` is set.
        """
        self.vision.require_credentials()
        item = await self._require_item(path)
        rec = self.ledger.get(item.path)
        if rec is None:
            raise NotFound(f"not found: {item.path}")

        if not force:
            if isinstance(rec.get("critter"), bool):
                return {
                    "critter": rec["critter"],
                    "confidence": rec.get("critterConfidence"),
                    "model": rec.get("critterModel"),
                    "cached": True,
                }
            if rec.get("critterError"):
                return {
                    "critter": None,
                    "confidence": None,
                    "model": rec.get("critterModel"),
                    "error": rec["critterError"],
                    "cached": True,
                }

        model = self.vision.model
        try:
            image, mime = await self.representative_image(item.path)
            result = await self.vision.classify(image, mime)
        except ReviewError as e:
            async with self.lock:
                mark_critter_error(rec, e.code, model)
                await self.ledger.save_async()
            raise
        async with self.lock:
            mark_critter(rec, result.animal_present, result.confidence, model)
            await self.ledger.save_async()
        log("vision", "%s: critter=%s confidence=%s", item.path, result.animal_present, result.confidence)
        return {
            "critter": result.animal_present,
            "confidence": result.confidence,
            "model": model,
            "cached": False,
        }

    async def generate_caption(self, path: str) -> dict:
        self.vision.require_credentials()
        item = await self._require_item(path)
        image, mime = await self.representative_image(item.path)
        text = (await self.vision.caption(image, mime))[:MAX_CAPTION_LENGTH]
        async with self.lock:
            rec = self.ledger.get(item.path)
            if rec is None:
                raise NotFound(f"not found: {item.path}")
            rec["caption"] = text
            await self.ledger.save_async()
        return {"caption": text, "model": self.vision.model}

    def start_batch(self, scope: str = "all") -> dict:
        return self.batch.start(scope).to_dict()

    def batch_status(self) -> Optional[dict]:
        return self.batch.job.to_dict() if self.batch.job else None

    # -- artifacts ---------------------------------------------------

    def _video_path(self, path: str) -> str:
        rel = normalize_rel_path(path)
        safe_join(self.root, rel)
        if not is_video(rel):
            raise InvalidRequest(f"not a video: {rel}", code="not_video")
        return rel

    async def transcode(self, path: str) -> dict:
        rel = self._video_path(path)
        self.ffmpeg.require()
        dest = await self.artifacts.ensure_transcode(rel)
        return {"status": "ready", "path": dest}

    async def preview_frames(self, path: str, *, generate: bool = False) -> list[str]:
        rel = normalize_rel_path(path)
        safe_join(self.root, rel)
        if not is_video(rel):
            return []
        frames = await self.artifacts.list_preview_frames(rel)
        if not frames and generate:
            self.ffmpeg.require()
            frames = await self.artifacts.ensure_preview_frames(rel)
        return frames

    async def preview(self, path: str) -> Path:
        rel = normalize_rel_path(path)
        safe_join(self.root, rel)
        found = await self.artifacts.find_preview(rel)
        if not found and is_video(rel):
            self.ffmpeg.require()
            found = await self.artifacts.preview_image(rel)
        if not found:
            raise NotFound(f"no preview for {rel}", code="no_preview")
        return self.artifacts.fs_path(found)

    def media_path(self, path: str) -> Path:
        rel = normalize_rel_path(path)
        if not rel:
            raise InvalidRequest("missing path", code="missing_path")
        full = safe_join(self.root, rel)
        if not full.is_file():
            raise NotFound(f"not found: {rel}")
        return full


__all__ = ["ReviewService", "merge_record"]
