from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Literal, Optional, Union

from pdh_upload.core.cancel import CancelToken
from pdh_upload.core.file_source import UploadFile


TaskStatus = Literal["queued", "uploading", "paused", "canceled", "done", "failed"]
TaskSource = Literal["file", "path"]

TASK_STATUSES: tuple[str, ...] = ("queued", "uploading", "paused", "canceled", "done", "failed")
# done/canceled 为终态；failed 保留在列表里供用户查看
TERMINAL_STATUSES = frozenset({"done", "canceled"})


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class UploadTask:
    id: str
    source: TaskSource
    name: str
    category: str
    size: int = 0
    bytes_sent: int = 0
    status: TaskStatus = "queued"
    error: Optional[str] = None
    upload_id: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def progress(self) -> float:
        # 只由 bytes_sent/size 推导，不单独存储
        if self.size <= 0:
            return 0.0
        return max(0.0, min(1.0, self.bytes_sent / self.size))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["progress"] = self.progress
        return data


@dataclass(frozen=True)
class UploadStats:
    total: int = 0
    uploading: int = 0
    queued: int = 0
    paused: int = 0
    failed: int = 0

    @classmethod
    def from_tasks(cls, tasks: Iterable[UploadTask]) -> "UploadStats":
        items = list(tasks)
        return cls(
            total=len(items),
            uploading=sum(1 for t in items if t.status == "uploading"),
            queued=sum(1 for t in items if t.status == "queued"),
            paused=sum(1 for t in items if t.status == "paused"),
            failed=sum(1 for t in items if t.status == "failed"),
        )


@dataclass
class FileTaskRuntime:
    file: UploadFile
    category: str
    upload_id: Optional[str] = None
    pause_requested: bool = False
    cancel_requested: bool = False
    # 已向服务端发过 abort；保证取消只发一次
    abort_sent: bool = False
    cancel_token: Optional[CancelToken] = None

    def new_token(self) -> CancelToken:
        self.cancel_token = CancelToken()
        return self.cancel_token


@dataclass
class PathTaskRuntime:
    path: str
    category: str


TaskRuntime = Union[FileTaskRuntime, PathTaskRuntime]
