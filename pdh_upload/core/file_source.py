from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Protocol, Union, runtime_checkable


# 与服务端白名单保持一致（后端按 类别+扩展名+MIME 三者校验）
CATEGORY_EXTENSIONS: dict[str, frozenset[str]] = {
    "image": frozenset({"png", "jpg", "jpeg", "webp", "gif"}),
    "video": frozenset({"mp4", "webm", "ogv", "ogg", "mov", "avi", "wmv", "flv", "mkv"}),
    "document": frozenset({"pdf", "doc", "docx", "txt", "ppt", "pptx", "xls", "xlsx", "epub"}),
    "script": frozenset({"py", "sh", "bat", "js", "cpp", "exe", "ps1"}),
}

DEFAULT_MIME_TYPE = "application/octet-stream"


def guess_category(name: str) -> Optional[str]:
    suf = Path(name or "").suffix.lower().lstrip(".")
    if not suf:
        return None
    for category, exts in CATEGORY_EXTENSIONS.items():
        if suf in exts:
            return category
    return None


def guess_mime_type(name: str) -> str:
    mime, _ = mimetypes.guess_type(name or "")
    return mime or DEFAULT_MIME_TYPE


@runtime_checkable
class UploadFile(Protocol):
    """可按字节区间读取的上传源。"""

    @property
    def name(self) -> str: ...

    @property
    def size(self) -> int: ...

    @property
    def mime_type(self) -> str: ...

    def read(self, offset: int, length: int) -> bytes: ...


@dataclass(frozen=True)
class MemoryFile:
    name: str
    data: bytes = field(repr=False)
    mime_type: str = ""

    def __post_init__(self) -> None:
        if not self.mime_type:
            object.__setattr__(self, "mime_type", guess_mime_type(self.name))

    @property
    def size(self) -> int:
        return len(self.data)

    def read(self, offset: int, length: int) -> bytes:
        return bytes(self.data[offset : offset + length])


@dataclass(frozen=True)
class LocalFile:
    path: Path
    name: str = ""
    mime_type: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path))
        if not self.name:
            object.__setattr__(self, "name", self.path.name or "file")
        if not self.mime_type:
            object.__setattr__(self, "mime_type", guess_mime_type(self.name))

    @property
    def size(self) -> int:
        try:
            return int(self.path.stat().st_size)
        except OSError:
            return 0

    def read(self, offset: int, length: int) -> bytes:
        with self.path.open("rb") as fh:
            fh.seek(offset)
            data = fh.read(length)
        if len(data) != length:
            raise OSError(f"本地文件读取不完整：{self.path}（offset={offset}, 期望 {length} 字节，实际 {len(data)}）")
        return data


FileLike = Union[UploadFile, Path, str]


def as_upload_file(obj: FileLike) -> UploadFile:
    if isinstance(obj, (str, Path)):
        return LocalFile(Path(obj))
    if isinstance(obj, UploadFile):
        return obj
    raise TypeError(f"不支持的上传源类型：{type(obj).__name__}")


def group_by_category(paths: Iterable[Path | str], default: str) -> dict[str, list[Path]]:
    """按扩展名猜类别分组，猜不出的归入 default；保持输入顺序。"""
    groups: dict[str, list[Path]] = {}
    for p in paths:
        path = Path(p)
        groups.setdefault(guess_category(path.name) or default, []).append(path)
    return groups
