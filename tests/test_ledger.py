import asyncio
import json

from camreview.ledger import RECORD_DEFAULTS, SCHEMA_VERSION, ReviewLedger
from camreview.scanner import scan_media

from helpers import write_image


def test_missing_file_creates_empty_ledger(ledger_path):
    ledger = ReviewLedger(ledger_path)
    ledger.load()
    assert len(ledger) == 0
    doc = json.loads(ledger_path.read_text())
    assert doc == {"schemaVersion": SCHEMA_VERSION, "sessionDate": None, "items": []}


def test_corrupt_ledger_is_backed_up_and_reset(ledger_path):
    ledger_path.write_text("{this is not json")
    ledger = ReviewLedger(ledger_path)
    ledger.load()

    assert len(ledger) == 0
    backups = list(ledger_path.parent.glob(ledger_path.name + ".corrupt-*"))
    assert len(backups) == 1
    assert backups[0].read_text() == "{this is not json"
    assert json.loads(ledger_path.read_text())["items"] == []


def test_wrong_shape_counts_as_corrupt(ledger_path):
    ledger_path.write_text(json.dumps({"items": {"a.jpg": {}}}))
    ReviewLedger(ledger_path).load()
    assert list(ledger_path.parent.glob(ledger_path.name + ".corrupt-*"))


def test_sync_creates_defaults_and_is_idempotent(media_root, ledger_path):
    write_image(media_root, "a.jpg", mtime=1_700_000_000)
    write_image(media_root, "b.jpg", mtime=1_700_000_001)
    ledger = ReviewLedger(ledger_path)
    ledger.load()
    writes_after_load = ledger.writes

    items = scan_media(media_root)
    snapshot = ledger.sync(items)
    assert set(snapshot) == {"a.jpg", "b.jpg"}
    assert snapshot["a.jpg"]["status"] == "unreviewed"
    for key, default in RECORD_DEFAULTS.items():
        assert snapshot["b.jpg"][key] == default
    assert ledger.writes == writes_after_load + 1

    # unchanged tree: no further writes
    ledger.sync(scan_media(media_root))
    asyncio.run(ledger.sync_async(scan_media(media_root)))
    assert ledger.writes == writes_after_load + 1


def test_sync_backfills_older_records(media_root, ledger_path):
    write_image(media_root, "a.jpg")
    ledger_path.write_text(json.dumps({"items": [{"path": "a.jpg", "status": "keep", "reviewedAt": "x"}]}))
    ledger = ReviewLedger(ledger_path)
    ledger.load()
    ledger.sync(scan_media(media_root))

    rec = ledger.get("a.jpg")
    assert rec["status"] == "keep"
    assert rec["reviewedAt"] == "x"
    assert rec["caption"] == ""
    assert rec["critter"] is None
    doc = json.loads(ledger_path.read_text())
    assert doc["schemaVersion"] == SCHEMA_VERSION
    assert doc["items"][0]["critterError"] is None


def test_records_for_vanished_files_are_kept(media_root, ledger_path):
    p = write_image(media_root, "a.jpg")
    ledger = ReviewLedger(ledger_path)
    ledger.load()
    ledger.sync(scan_media(media_root))
    p.unlink()
    ledger.sync(scan_media(media_root))
    assert "a.jpg" in ledger

    reloaded = ReviewLedger(ledger_path)
    reloaded.load()
    assert reloaded.get("a.jpg")["status"] == "unreviewed"


def test_rekey_moves_record(ledger_path):
    ledger = ReviewLedger(ledger_path)
    ledger.load()
    ledger._records["a.jpg"] = {"path": "a.jpg", "status": "unreviewed"}
    ledger.rekey("a.jpg", "Keep_2024-01-01/a.jpg")
    assert "a.jpg" not in ledger
    assert ledger.get("Keep_2024-01-01/a.jpg")["status"] == "unreviewed"
