from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import pytest

from pdh_upload.utils.io import atomic_write_json
from pdh_upload.utils.logging_utils import setup_logging
from pdh_upload.utils.paths import basename_from_path, resolve_path_maybe_windows


@pytest.mark.parametrize(
    "raw, name",
    [
        ("E:\\photos\\cat.png", "cat.png"),
        ("/home/u/clip.mp4", "clip.mp4"),
        ("dir/sub/", "sub"),
        ("", "file"),
        ("///", "file"),
    ],
)
def test_basename_from_path(raw, name):
    assert basename_from_path(raw) == name


@pytest.mark.skipif(os.name == "nt", reason="盘符映射只在非 Windows 上生效")
def test_windows_drive_maps_to_mnt():
    assert resolve_path_maybe_windows("E:\\a\\b.png") == Path("/mnt/e/a/b.png")


def test_relative_path_resolves_against_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert resolve_path_maybe_windows("x/y.txt") == (tmp_path / "x" / "y.txt").resolve()


def test_atomic_write_json_leaves_no_temp_files(tmp_path):
    target = tmp_path / "nested" / "queue.json"
    atomic_write_json(target, [{"name": "附件"}])
    atomic_write_json(target, [])

    assert json.loads(target.read_text(encoding="utf-8")) == []
    assert [p.name for p in target.parent.iterdir()] == ["queue.json"]


def test_setup_logging_is_idempotent(tmp_path):
    root = logging.getLogger()
    before = list(root.handlers)
    try:
        path = setup_logging(tmp_path)
        count = len(root.handlers)
        assert setup_logging(tmp_path) == path
        assert len(root.handlers) == count
        assert path.name.startswith("pdh_upload_")
    finally:
        for h in root.handlers[:]:
            if h not in before:
                root.removeHandler(h)
                h.close()
