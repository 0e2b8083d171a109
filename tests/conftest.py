from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from pdh_upload.adapters.upload_client import ChunkTransferError, SessionMeta
from pdh_upload.core.cancel import CancelToken
from pdh_upload.core.models import UploadTask


MiB = 1024 * 1024


class FakeTransport:
    """内存里的断点续传服务端：按 uploadId 记录已收字节数，并记下每次调用。"""

    def __init__(self, *, init_error: Optional[Exception] = None) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.received: dict[str, int] = {}
        self.init_error = init_error
        self.chunk_errors: dict[str, Exception] = {}
        self.on_chunk: Optional[Callable[[str, int, int], Awaitable[None]]] = None
        self.on_complete: Optional[Callable[[str], Awaitable[None]]] = None
        self._seq = 0

    def count(self, kind: str) -> int:
        return sum(1 for c in self.calls if c[0] == kind)

    def chunk_offsets(self, upload_id: Optional[str] = None) -> list[int]:
        return [c[2] for c in self.calls if c[0] == "chunk" and (upload_id is None or c[1] == upload_id)]

    async def init_session(self, meta: SessionMeta, *, cancel: CancelToken) -> str:
        self.calls.append(("init", meta.original_name, meta.category, meta.size))
        await asyncio.sleep(0)
        if self.init_error is not None:
            raise self.init_error
        self._seq += 1
        upload_id = f"up-{self._seq}"
        self.received[upload_id] = 0
        return upload_id

    async def get_status(self, upload_id: str, *, cancel: CancelToken) -> int:
        self.calls.append(("status", upload_id, self.received.get(upload_id, 0)))
        await asyncio.sleep(0)
        return self.received.get(upload_id, 0)

    async def upload_chunk(self, upload_id, chunk, offset, *, on_progress, cancel) -> None:
        self.calls.append(("chunk", upload_id, offset, len(chunk)))
        await asyncio.sleep(0)
        cancel.raise_if_cancelled()
        if upload_id in self.chunk_errors:
            raise self.chunk_errors[upload_id]
        if offset != self.received.get(upload_id, 0):
            raise ChunkTransferError("分片偏移不匹配", status_code=409)
        on_progress(len(chunk) // 2)
        on_progress(len(chunk))
        self.received[upload_id] = offset + len(chunk)
        if self.on_chunk is not None:
            await self.on_chunk(upload_id, offset, len(chunk))

    async def complete_session(self, upload_id: str, *, cancel: CancelToken) -> dict[str, Any]:
        self.calls.append(("complete", upload_id))
        await asyncio.sleep(0)
        if self.on_complete is not None:
            await self.on_complete(upload_id)
        return {"id": f"att-{upload_id}", "uploadId": upload_id, "size": self.received.get(upload_id, 0)}

    async def abort_session(self, upload_id: str) -> None:
        self.calls.append(("abort", upload_id))
        await asyncio.sleep(0)


class FakeWriter:
    """状态机单测用的任务表。"""

    def __init__(self, *tasks: UploadTask) -> None:
        self.tasks = {t.id: t for t in tasks}
        self.history: list[tuple[str, dict[str, Any]]] = []

    def get_task(self, task_id: str) -> Optional[UploadTask]:
        return self.tasks.get(task_id)

    def update_task(self, task_id: str, **patch: Any) -> None:
        self.history.append((task_id, dict(patch)))
        task = self.tasks[task_id]
        for k, v in patch.items():
            setattr(task, k, v)

    def statuses(self, task_id: str) -> list[str]:
        return [p["status"] for tid, p in self.history if tid == task_id and "status" in p]


class FakeRunner:
    """桌面端原生任务桥：命令用 AsyncMock 记录，事件通过 emit() 推送。"""

    def __init__(self) -> None:
        self.start = AsyncMock()
        self.pause = AsyncMock()
        self.resume = AsyncMock()
        self.cancel = AsyncMock()
        self.handlers: list[Callable[[dict[str, Any]], None]] = []

    def listen(self, handler):
        self.handlers.append(handler)
        return lambda: self.handlers.remove(handler)

    def emit(self, payload: dict[str, Any]) -> None:
        for h in list(self.handlers):
            h(payload)


def make_bridge(url: Optional[str] = "http://127.0.0.1:1234") -> MagicMock:
    bridge = MagicMock()
    bridge.gateway_url = AsyncMock(return_value=url)
    bridge.set_backend_url = AsyncMock()
    bridge.set_token = AsyncMock()
    return bridge


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()
