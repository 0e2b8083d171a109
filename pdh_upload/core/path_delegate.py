from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pdh_upload.adapters.desktop_gateway import DesktopBridgeError, DesktopGateway, TaskRunnerBridge
from pdh_upload.core.models import TASK_STATUSES, TaskStatus


logger = logging.getLogger(__name__)


def _num(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        return 0
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(num) or num < 0:
        return 0
    return int(num)


@dataclass(frozen=True)
class PathTaskEvent:
    task_id: str
    status: TaskStatus
    bytes_sent: int = 0
    total_bytes: int = 0
    upload_id: Optional[str] = None
    error: Optional[str] = None
    attachment: Optional[dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["PathTaskEvent"]:
        if not isinstance(payload, dict):
            return None
        task_id = payload.get("taskId")
        if not task_id:
            return None
        status = payload.get("status") or "uploading"
        if status not in TASK_STATUSES:
            logger.warning("忽略未知的桌面端任务状态：%r", status)
            status = "uploading"
        attachment = payload.get("attachment")
        return cls(
            task_id=str(task_id),
            status=status,
            bytes_sent=_num(payload.get("bytesSent")),
            total_bytes=_num(payload.get("totalBytes")),
            upload_id=payload.get("uploadId") or None,
            error=payload.get("error") or None,
            attachment=attachment if isinstance(attachment, dict) else None,
        )


class PathUploadDelegate:
    """
    路径上传（桌面端拖拽本地文件）完全交给原生任务执行，这里只做转发与事件镜像，
    不重复实现断点续传。
    """

    def __init__(self, runner: TaskRunnerBridge, gateway: Optional[DesktopGateway] = None) -> None:
        self._runner = runner
        self._gateway = gateway

    async def ensure_ready(self) -> str:
        if self._gateway is None:
            return ""
        return await self._gateway.ensure_ready()

    async def start(self, task_id: str, path: str, category: str) -> None:
        await self._runner.start(task_id, path, category)

    async def pause(self, task_id: str) -> None:
        try:
            await self._runner.pause(task_id)
        except DesktopBridgeError as e:
            logger.warning("暂停桌面端任务 %s 失败：%s", task_id, e)

    async def resume(self, task_id: str) -> None:
        try:
            await self._runner.resume(task_id)
        except DesktopBridgeError as e:
            logger.warning("继续桌面端任务 %s 失败：%s", task_id, e)

    async def cancel(self, task_id: str) -> None:
        try:
            await self._runner.cancel(task_id)
        except DesktopBridgeError as e:
            logger.warning("取消桌面端任务 %s 失败：%s", task_id, e)

    def attach(self, on_event: Callable[[PathTaskEvent], None]) -> Callable[[], None]:
        def handle(payload: dict[str, Any]) -> None:
            event = PathTaskEvent.from_payload(payload)
            if event is not None:
                on_event(event)

        return self._runner.listen(handle)
