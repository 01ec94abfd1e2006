"""Persisted review ledger: one record per media path ever scanned.

On-disk shape (rewritten in full on every mutation)::

    {"schemaVersion": 1, "sessionDate": "2024-01-01" | null, "items": [record, ...]}
"""
from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from .logs import log
from .scanner import MediaItem

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
STATUSES = ("unreviewed", "keep", "delete", "favorite")

# Fields every record carries. Records written by older revisions are backfilled
# with these defaults on sync.
RECORD_DEFAULTS: dict[str, Any] = {
    "status": "unreviewed",
    "reviewedAt": None,
    "favoritedAt": None,
    "caption": "",
    "critter": None,
    "critterConfidence": None,
    "critterCheckedAt": None,
    "critterModel": None,
    "critterError": None,
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_record(path: str) -> dict:
    rec = {"path": path}
    rec.update(copy.deepcopy(RECORD_DEFAULTS))
    return rec


def mark_critter(rec: dict, present: bool, confidence: Optional[float], model: str) -> None:
    rec["critter"] = present
    rec["critterConfidence"] = confidence
    rec["critterCheckedAt"] = utc_now_iso()
    rec["critterModel"] = model
    rec["critterError"] = None


def mark_critter_error(rec: dict, code: str, model: str) -> None:
    """Failed attempts are cached too, so page loads do not retry them."""
    rec["critterError"] = code
    rec["critterCheckedAt"] = utc_now_iso()
    rec["critterModel"] = model


def _json_dump_atomic(path: Path, payload: str) -> None:
    """Write text atomically to avoid partial files."""
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(payload, encoding="utf-8")
    tmp.replace(path)


class ReviewLedger:
    """Owns every ReviewRecord and is the only writer of the ledger file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.session_date: Optional[str] = None
        self._records: dict[str, dict] = {}
        self.writes = 0

    # -- persistence -------------------------------------------------

    def load(self) -> None:
        """
        Read the ledger file.

        A missing file becomes an empty ledger that is written immediately. A
        malformed file is copied aside as ``<name>.corrupt-<ms>`` and replaced
        with an empty ledger; startup never fails on ledger content.
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            log("ledger", "no ledger at %s, creating", self.path)
            self._reset()
            self.save()
            return
        try:
            doc = json.loads(raw)
            if not isinstance(doc, dict) or not isinstance(doc.get("items"), list):
                raise ValueError("invalid ledger shape")
        except ValueError as e:
            self._backup_corrupt(e)
            self._reset()
            self.save()
            return

        self._records = {}
        for rec in doc["items"]:
            if isinstance(rec, dict) and isinstance(rec.get("path"), str) and rec["path"]:
                self._records[rec["path"]] = rec
        self.session_date = doc.get("sessionDate")
        if "sessionDate" not in doc or "schemaVersion" not in doc:
            self.save()
        log("ledger", "loaded %d records from %s", len(self._records), self.path)

    def _reset(self) -> None:
        self._records = {}
        self.session_date = None

    def _backup_corrupt(self, err: Exception) -> None:
        backup = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time() * 1000)}")
        logger.error("ledger %s is malformed (%s); backing up to %s", self.path, err, backup)
        try:
            backup.write_bytes(self.path.read_bytes())
        except OSError as e:
            logger.error("failed to back up corrupt ledger: %s", e)

    def to_document(self) -> dict:
        return {
            "schemaVersion": SCHEMA_VERSION,
            "sessionDate": self.session_date,
            "items": list(self._records.values()),
        }

    def dumps(self) -> str:
        return json.dumps(self.to_document(), indent=2)

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        _json_dump_atomic(self.path, self.dumps())
        self.writes += 1

    async def save_async(self) -> None:
        # Serialize on the loop; only the file write leaves it.
        payload = self.dumps()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(_json_dump_atomic, self.path, payload)
        self.writes += 1

    # -- records -----------------------------------------------------

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, path: str) -> bool:
        return path in self._records

    def __iter__(self) -> Iterator[dict]:
        return iter(list(self._records.values()))

    def get(self, path: str) -> Optional[dict]:
        return self._records.get(path)

    def snapshot(self) -> dict[str, dict]:
        return dict(self._records)

    def rekey(self, old: str, new: str) -> None:
        """Re-index a record after its file moved; the record dict itself is kept."""
        if old == new:
            return
        rec = self._records.get(old)
        if rec is None:
            return
        if new in self._records:
            logger.warning("ledger: record at %s replaced by moved record from %s", new, old)
            del self._records[new]
        self._records = {(new if k == old else k): v for k, v in self._records.items()}

    def sync(self, scan_items: Iterable[MediaItem]) -> dict[str, dict]:
        """Reconcile a scan and persist once if anything was created or backfilled."""
        if self.reconcile(scan_items):
            self.save()
        return self.snapshot()

    async def sync_async(self, scan_items: Iterable[MediaItem]) -> dict[str, dict]:
        if self.reconcile(scan_items):
            await self.save_async()
        return self.snapshot()

    def reconcile(self, scan_items: Iterable[MediaItem]) -> bool:
        """
        Create default records for unseen paths and backfill fields missing from
        existing ones. Returns True when the ledger changed. Idempotent for an
        unchanged scan.
        """
        changed = False
        for item in scan_items:
            rec = self._records.get(item.path)
            if rec is None:
                self._records[item.path] = new_record(item.path)
                changed = True
                continue
            if not rec.get("status"):
                rec["status"] = "unreviewed"
                changed = True
            for key, default in RECORD_DEFAULTS.items():
                if key not in rec:
                    rec[key] = copy.deepcopy(default)
                    changed = True
        return changed


__all__ = [
    "ReviewLedger",
    "RECORD_DEFAULTS",
    "STATUSES",
    "SCHEMA_VERSION",
    "mark_critter",
    "mark_critter_error",
    "new_record",
    "utc_now_iso",
]
