"""Review actions: move the file, update the ledger, remember how to undo it."""
from __future__ import annotations

import asyncio
import logging
import os
import posixpath
from dataclasses import asdict, dataclass, field
from datetime import date
from pathlib import Path
from typing import Callable, Optional

from .errors import InvalidRequest, MissingSource, MoveFailed, NotFound, ReviewError
from .ledger import ReviewLedger, utc_now_iso
from .logs import log
from .paths import destination_folder, normalize_rel_path, safe_join

logger = logging.getLogger(__name__)

ACTIONS = ("keep", "delete", "favorite")


@dataclass(frozen=True)
class UndoEntry:
    prev_path: str
    next_path: str
    prev_status: str
    prev_reviewed_at: Optional[str]
    prev_favorited_at: Optional[str]


class UndoStack:
    """Unbounded, strictly LIFO; one entry per applied action. Memory only."""

    def __init__(self):
        self._entries: list[UndoEntry] = []

    def push(self, entry: UndoEntry) -> None:
        self._entries.append(entry)

    def pop(self) -> Optional[UndoEntry]:
        return self._entries.pop() if self._entries else None

    def peek(self) -> Optional[UndoEntry]:
        return self._entries[-1] if self._entries else None

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> list[UndoEntry]:
        return list(self._entries)


@dataclass
class ActionResult:
    ok: bool
    prev_path: str
    path: str
    record: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "prevPath": self.prev_path,
            "path": self.path,
            "status": self.record.get("status"),
            "reviewedAt": self.record.get("reviewedAt"),
            "favoritedAt": self.record.get("favoritedAt"),
            "record": self.record,
        }


@dataclass
class UndoResult:
    ok: bool
    path: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _move_file(src: Path, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    if dest.exists():
        raise FileExistsError(f"destination already exists: {dest}")
    os.rename(src, dest)


class ActionEngine:
    """
    Applies keep/delete/favorite decisions.

    Each successful call performs exactly one rename, pushes one UndoEntry and
    writes the ledger once. A failed rename leaves the record as it was.
    """

    def __init__(
        self,
        root: Path,
        ledger: ReviewLedger,
        undo_stack: Optional[UndoStack] = None,
        *,
        session_date: Optional[str] = None,
        today: Callable[[], date] = date.today,
    ):
        self.root = Path(root)
        self.ledger = ledger
        self.undo_stack = undo_stack if undo_stack is not None else UndoStack()
        self._session_date = session_date
        self._today = today

    @property
    def session_date(self) -> str:
        """One stamp per process, computed on first use."""
        if self._session_date is None:
            self._session_date = self._today().strftime("%Y-%m-%d")
        self.ledger.session_date = self._session_date
        return self._session_date

    async def apply(self, path: str, action: str) -> ActionResult:
        if action not in ACTIONS:
            raise InvalidRequest(f"unknown action: {action}", code="invalid_action")
        rel = normalize_rel_path(path)
        rec = self.ledger.get(rel)
        if rec is None:
            raise NotFound(f"no ledger record for {rel}")

        prev_status = rec.get("status") or "unreviewed"
        prev_reviewed_at = rec.get("reviewedAt")
        prev_favorited_at = rec.get("favoritedAt")
        folder = destination_folder(action, self.session_date)

        cur = rec["path"]
        if cur.lower().startswith(folder.lower() + "/"):
            dest_rel = cur
        else:
            dest_rel = posixpath.join(folder, rec.get("originalPath") or cur)

        if dest_rel != cur:
            src = safe_join(self.root, cur)
            dest = safe_join(self.root, dest_rel)
            if not await asyncio.to_thread(src.exists):
                rec["missing"] = True
                rec["missingAt"] = utc_now_iso()
                await self.ledger.save_async()
                logger.warning("action %s: source missing for %s", action, cur)
                raise MissingSource(f"file no longer on disk: {cur}", data={"path": cur, "record": rec})
            try:
                await asyncio.to_thread(_move_file, src, dest)
            except OSError as e:
                # Nothing was mutated yet; persist the unchanged state and report.
                await self.ledger.save_async()
                logger.error("action %s: move %s -> %s failed: %s", action, cur, dest_rel, e)
                raise MoveFailed(str(e), data={"path": cur}) from e
            if not rec.get("originalPath"):
                rec["originalPath"] = cur
            rec["path"] = dest_rel
            rec["movedAt"] = utc_now_iso()
            rec.pop("missing", None)
            rec.pop("missingAt", None)
            self.ledger.rekey(cur, dest_rel)
            log("actions", "moved to %s: %s", folder, dest_rel)

        now = utc_now_iso()
        rec["status"] = action
        rec["reviewedAt"] = now
        if action == "favorite":
            rec["favoritedAt"] = now
        elif "favoritedAt" in rec:
            rec["favoritedAt"] = None

        self.undo_stack.push(
            UndoEntry(
                prev_path=rel,
                next_path=rec["path"],
                prev_status=prev_status,
                prev_reviewed_at=prev_reviewed_at,
                prev_favorited_at=prev_favorited_at,
            )
        )
        await self.ledger.save_async()
        return ActionResult(ok=True, prev_path=rel, path=rec["path"], record=rec)

    async def undo(self) -> UndoResult:
        """Revert the most recent action. An empty stack is a no-op ``ok=False``."""
        entry = self.undo_stack.pop()
        if entry is None:
            return UndoResult(ok=False)
        rec = self.ledger.get(entry.next_path) or self.ledger.get(entry.prev_path)
        if rec is None:
            self.undo_stack.push(entry)
            return UndoResult(ok=False)

        try:
            if rec["path"] != entry.prev_path:
                await self._move_back(rec, entry)
        except ReviewError:
            self.undo_stack.push(entry)
            raise

        rec["status"] = entry.prev_status or "unreviewed"
        rec["reviewedAt"] = entry.prev_reviewed_at
        if "favoritedAt" in rec:
            rec["favoritedAt"] = entry.prev_favorited_at
        await self.ledger.save_async()
        log("actions", "undo restored %s (%s)", rec["path"], rec["status"])
        return UndoResult(ok=True, path=rec["path"])

    async def _move_back(self, rec: dict, entry: UndoEntry) -> None:
        cur = rec["path"]
        src = safe_join(self.root, cur)
        dest = safe_join(self.root, entry.prev_path)
        if not await asyncio.to_thread(src.exists):
            rec["missing"] = True
            rec["missingAt"] = utc_now_iso()
            await self.ledger.save_async()
            raise MissingSource(f"file no longer on disk: {cur}", data={"path": cur})
        try:
            await asyncio.to_thread(_move_file, src, dest)
        except OSError as e:
            logger.error("undo: move %s -> %s failed: %s", cur, entry.prev_path, e)
            raise MoveFailed(str(e), code="undo_move_failed", data={"path": cur}) from e
        rec["path"] = entry.prev_path
        rec["movedAt"] = utc_now_iso()
        self.ledger.rekey(cur, entry.prev_path)


__all__ = ["ACTIONS", "ActionEngine", "ActionResult", "UndoEntry", "UndoResult", "UndoStack"]
