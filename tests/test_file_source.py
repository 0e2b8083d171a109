from __future__ import annotations

from pathlib import Path

import pytest

from pdh_upload.core.file_source import (
    DEFAULT_MIME_TYPE,
    LocalFile,
    MemoryFile,
    as_upload_file,
    group_by_category,
    guess_category,
)


@pytest.mark.parametrize(
    "name, category",
    [
        ("a.PNG", "image"),
        ("clip.mkv", "video"),
        ("book.epub", "document"),
        ("run.ps1", "script"),
        ("song.mp3", None),
        ("README", None),
    ],
)
def test_guess_category(name, category):
    assert guess_category(name) == category


def test_memory_file():
    f = MemoryFile("a.png", b"0123456789")
    assert f.size == 10
    assert f.mime_type == "image/png"
    assert f.read(4, 4) == b"4567"
    assert MemoryFile("blob", b"").mime_type == DEFAULT_MIME_TYPE


def test_local_file(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_bytes(b"hello world")
    f = LocalFile(path)

    assert f.name == "notes.txt"
    assert f.size == 11
    assert f.read(6, 5) == b"world"
    with pytest.raises(OSError):
        f.read(6, 10)


def test_missing_local_file_has_zero_size(tmp_path):
    assert LocalFile(tmp_path / "gone.bin").size == 0


def test_as_upload_file(tmp_path):
    assert isinstance(as_upload_file(str(tmp_path / "a.txt")), LocalFile)
    mem = MemoryFile("a.txt", b"a")
    assert as_upload_file(mem) is mem
    with pytest.raises(TypeError):
        as_upload_file(42)


def test_group_by_category_falls_back_to_default():
    groups = group_by_category(["a.png", "b.pdf", "c.unknown", "d.jpg"], "document")
    assert groups == {
        "image": [Path("a.png"), Path("d.jpg")],
        "document": [Path("b.pdf"), Path("c.unknown")],
    }
