import asyncio
import json
from datetime import date

import pytest

from camreview.actions import ActionEngine
from camreview.errors import InvalidRequest, MissingSource, MoveFailed, NotFound
from camreview.ledger import ReviewLedger
from camreview.scanner import scan_media

from helpers import write_image


@pytest.fixture()
def engine(media_root, ledger_path):
    ledger = ReviewLedger(ledger_path)
    ledger.load()
    return ActionEngine(media_root, ledger, today=lambda: date(2024, 1, 1))


def synced(engine):
    engine.ledger.sync(scan_media(engine.root))
    return engine


def test_delete_then_undo_roundtrip(engine, media_root, ledger_path):
    write_image(media_root, "a.jpg")
    synced(engine)

    result = asyncio.run(engine.apply("a.jpg", "delete"))
    assert result.ok
    assert result.path == "Trash_2024-01-01/a.jpg"
    assert not (media_root / "a.jpg").exists()
    assert (media_root / "Trash_2024-01-01" / "a.jpg").is_file()
    rec = engine.ledger.get("Trash_2024-01-01/a.jpg")
    assert rec["status"] == "delete"
    assert rec["reviewedAt"]
    assert rec["originalPath"] == "a.jpg"
    assert len(engine.undo_stack) == 1

    doc = json.loads(ledger_path.read_text())
    assert doc["sessionDate"] == "2024-01-01"
    assert [r["path"] for r in doc["items"]] == ["Trash_2024-01-01/a.jpg"]

    undone = asyncio.run(engine.undo())
    assert undone.ok and undone.path == "a.jpg"
    assert (media_root / "a.jpg").is_file()
    assert not (media_root / "Trash_2024-01-01" / "a.jpg").exists()
    rec = engine.ledger.get("a.jpg")
    assert rec["status"] == "unreviewed"
    assert rec["reviewedAt"] is None
    assert rec["favoritedAt"] is None
    assert len(engine.undo_stack) == 0


def test_nested_paths_keep_their_structure(engine, media_root):
    write_image(media_root, "cam1/night/a.jpg")
    synced(engine)
    result = asyncio.run(engine.apply("cam1/night/a.jpg", "keep"))
    assert result.path == "Keep_2024-01-01/cam1/night/a.jpg"
    assert (media_root / "Keep_2024-01-01/cam1/night/a.jpg").is_file()


def test_favorite_then_keep_clears_favorited_at(engine, media_root):
    write_image(media_root, "a.jpg")
    synced(engine)

    fav = asyncio.run(engine.apply("a.jpg", "favorite"))
    assert fav.path == "Favorites_2024-01-01/a.jpg"
    favorited_at = fav.record["favoritedAt"]
    assert favorited_at

    kept = asyncio.run(engine.apply(fav.path, "keep"))
    assert kept.path == "Keep_2024-01-01/a.jpg"
    assert kept.record["status"] == "keep"
    assert kept.record["favoritedAt"] is None

    # one undo per action, most recent first
    asyncio.run(engine.undo())
    rec = engine.ledger.get("Favorites_2024-01-01/a.jpg")
    assert rec["status"] == "favorite"
    assert rec["favoritedAt"] == favorited_at
    asyncio.run(engine.undo())
    assert engine.ledger.get("a.jpg")["status"] == "unreviewed"
    assert (media_root / "a.jpg").is_file()


def test_repeat_action_in_same_folder_does_not_move(engine, media_root):
    write_image(media_root, "a.jpg")
    synced(engine)
    asyncio.run(engine.apply("a.jpg", "delete"))
    again = asyncio.run(engine.apply("Trash_2024-01-01/a.jpg", "delete"))
    assert again.path == "Trash_2024-01-01/a.jpg"
    assert len(engine.undo_stack) == 2


def test_missing_source_is_recorded(engine, media_root):
    p = write_image(media_root, "a.jpg")
    synced(engine)
    p.unlink()

    with pytest.raises(MissingSource):
        asyncio.run(engine.apply("a.jpg", "keep"))
    rec = engine.ledger.get("a.jpg")
    assert rec["missing"] is True
    assert rec["status"] == "unreviewed"
    assert len(engine.undo_stack) == 0


def test_move_failure_leaves_record_unchanged(engine, media_root):
    write_image(media_root, "a.jpg")
    write_image(media_root, "Trash_2024-01-01/a.jpg", color=(1, 2, 3))
    synced(engine)

    with pytest.raises(MoveFailed):
        asyncio.run(engine.apply("a.jpg", "delete"))
    rec = engine.ledger.get("a.jpg")
    assert rec["status"] == "unreviewed"
    assert rec["reviewedAt"] is None
    assert (media_root / "a.jpg").is_file()
    assert len(engine.undo_stack) == 0


def test_undo_failure_keeps_entry(engine, media_root):
    write_image(media_root, "a.jpg")
    synced(engine)
    asyncio.run(engine.apply("a.jpg", "delete"))
    # something new now occupies the original location
    write_image(media_root, "a.jpg", color=(5, 5, 5))

    with pytest.raises(MoveFailed) as exc:
        asyncio.run(engine.undo())
    assert exc.value.code == "undo_move_failed"
    assert len(engine.undo_stack) == 1
    assert engine.ledger.get("Trash_2024-01-01/a.jpg")["status"] == "delete"


def test_undo_with_empty_stack_is_noop(engine):
    result = asyncio.run(engine.undo())
    assert result.ok is False


def test_rejects_unknown_action_and_path(engine, media_root):
    write_image(media_root, "a.jpg")
    synced(engine)
    with pytest.raises(InvalidRequest):
        asyncio.run(engine.apply("a.jpg", "archive"))
    with pytest.raises(NotFound):
        asyncio.run(engine.apply("nope.jpg", "keep"))
