"""Sequential batch classification that trashes images with no animal in them."""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .actions import ActionEngine
from .errors import AlreadyRunning, InvalidRequest, NotFound, ReviewError
from .ledger import ReviewLedger, mark_critter, mark_critter_error, utc_now_iso
from .logs import log
from .scanner import MediaItem
from .vision import VisionClassifierClient

logger = logging.getLogger(__name__)

SCOPES = ("all", "unreviewed")

Scan = Callable[..., Awaitable[list[MediaItem]]]
ImageResolver = Callable[[str], Awaitable[tuple[bytes, str]]]


@dataclass
class BatchJob:
    id: str
    scope: str = "all"
    status: str = "starting"
    phase: str = "detecting"
    total: int = 0
    processed: int = 0
    matched: int = 0
    deleted: int = 0
    failed: int = 0
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.status in ("starting", "running")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": self.scope,
            "status": self.status,
            "phase": self.phase,
            "total": self.total,
            "processed": self.processed,
            "matched": self.matched,
            "deleted": self.deleted,
            "failed": self.failed,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "error": self.error,
        }


class BatchEnrichmentPipeline:
    """
    One job at a time, one item at a time.

    Positives keep their status and count as ``matched``; negatives go through the
    same ActionEngine delete a reviewer would trigger, so each is undoable.
    Scope ``all`` also walks the Keep/Favorites/Trash folders; an item already
    trashed is counted but not moved again.
    Counters and the ledger are updated after every item.
    """

    def __init__(
        self,
        ledger: ReviewLedger,
        engine: ActionEngine,
        classifier: VisionClassifierClient,
        *,
        scan: Scan,
        resolve_image: ImageResolver,
        lock: Optional[asyncio.Lock] = None,
    ):
        self.ledger = ledger
        self.engine = engine
        self.classifier = classifier
        self.scan = scan
        self.resolve_image = resolve_image
        self.lock = lock or asyncio.Lock()
        self.job: Optional[BatchJob] = None
        self._task: Optional[asyncio.Task] = None

    def _claim(self, scope: str) -> BatchJob:
        if scope not in SCOPES:
            raise InvalidRequest(f"unknown scope: {scope}", code="invalid_scope")
        if self.job is not None and self.job.active:
            raise AlreadyRunning("a batch job is already running", data=self.job.to_dict())
        self.classifier.require_credentials()
        self.job = BatchJob(id=uuid.uuid4().hex[:12], scope=scope, started_at=utc_now_iso())
        return self.job

    def start(self, scope: str = "all") -> BatchJob:
        """Claim the job slot and run in the background; returns the new job."""
        job = self._claim(scope)
        self._task = asyncio.create_task(self._execute(job))
        return job

    async def run(self, scope: str = "all") -> BatchJob:
        job = self._claim(scope)
        await self._execute(job)
        return job

    async def wait(self) -> Optional[BatchJob]:
        if self._task is not None:
            await self._task
        return self.job

    async def _execute(self, job: BatchJob) -> None:
        try:
            await self._run(job)
        except Exception as e:
            logger.exception("batch job %s failed", job.id)
            job.status = "error"
            job.error = str(e)
            job.finished_at = utc_now_iso()

    def _candidates(self, items: list[MediaItem], scope: str) -> list[MediaItem]:
        out = []
        for item in items:
            if item.type != "image":
                continue
            rec = self.ledger.get(item.path)
            if rec is None:
                continue
            if scope == "unreviewed" and rec.get("status") != "unreviewed":
                continue
            out.append(item)
        return out

    async def _run(self, job: BatchJob) -> None:
        job.status = "running"
        job.phase = "scanning"
        try:
            items = await self.scan(include_destinations=job.scope == "all")
        except ReviewError as e:
            job.status = "error"
            job.error = str(e)
            job.finished_at = utc_now_iso()
            return

        job.phase = "detecting"
        candidates = self._candidates(items, job.scope)
        job.total = len(candidates)
        log("batch", "job %s: %d candidates (scope=%s)", job.id, job.total, job.scope)

        for item in candidates:
            try:
                await self._process(job, item)
            except Exception as e:
                job.failed += 1
                code = e.code if isinstance(e, ReviewError) else "exception"
                logger.warning("batch item %s failed: %s", item.path, e)
                rec = self.ledger.get(item.path)
                if rec is not None:
                    rec["critterError"] = code
                    rec["critterCheckedAt"] = utc_now_iso()
            finally:
                job.processed += 1
                async with self.lock:
                    await self.ledger.save_async()
            await asyncio.sleep(0)

        job.status = "done"
        job.finished_at = utc_now_iso()
        log(
            "batch",
            "job %s done: matched=%d deleted=%d failed=%d",
            job.id, job.matched, job.deleted, job.failed,
        )

    async def _process(self, job: BatchJob, item: MediaItem) -> None:
        rec = self.ledger.get(item.path)
        if rec is None:
            raise NotFound(f"record vanished: {item.path}")
        present = rec.get("critter")
        if not isinstance(present, bool):
            model = self.classifier.model
            try:
                image, mime = await self.resolve_image(item.path)
                result = await self.classifier.classify(image, mime, context=item.path)
            except ReviewError as e:
                async with self.lock:
                    mark_critter_error(rec, e.code, model)
                job.failed += 1
                logger.warning("batch classify %s failed: %s", item.path, e)
                return
            async with self.lock:
                mark_critter(rec, result.animal_present, result.confidence, model)
            present = result.animal_present

        if present:
            job.matched += 1
            return
        if rec.get("status") != "delete":
            async with self.lock:
                await self.engine.apply(item.path, "delete")
        job.deleted += 1


__all__ = ["BatchEnrichmentPipeline", "BatchJob", "SCOPES"]
