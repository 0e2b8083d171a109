from __future__ import annotations

import json

from pdh_upload.core.queue_store import QueueEntry, load_queue, save_queue


def test_save_and_load_skips_missing_files(tmp_path):
    present = tmp_path / "a.pdf"
    present.write_bytes(b"pdf")
    path = tmp_path / "queue.json"

    save_queue(
        [
            QueueEntry(path=str(present), category="document", upload_id="u1", size=3, bytes_sent=1),
            QueueEntry(path=str(tmp_path / "gone.pdf"), category="document"),
        ],
        path,
    )

    assert load_queue(path) == [
        QueueEntry(path=str(present), category="document", upload_id="u1", size=3, bytes_sent=1)
    ]


def test_invalid_entries_are_skipped(tmp_path):
    present = tmp_path / "a.png"
    present.write_bytes(b"png")
    path = tmp_path / "queue.json"
    path.write_text(
        json.dumps([{"path": str(present)}, "x", {"path": str(present), "category": "image", "extra": 1}]),
        encoding="utf-8",
    )

    assert load_queue(path) == [QueueEntry(path=str(present), category="image")]


def test_missing_or_broken_queue(tmp_path):
    assert load_queue(tmp_path / "nope.json") == []
    broken = tmp_path / "queue.json"
    broken.write_text("{", encoding="utf-8")
    assert load_queue(broken) == []
