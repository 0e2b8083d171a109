from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol

from pdh_upload.adapters.upload_client import SessionMeta, UploadError, UploadTransport
from pdh_upload.config import DEFAULT_CHUNK_SIZE
from pdh_upload.core.cancel import UploadAborted
from pdh_upload.core.models import FileTaskRuntime, TaskStatus, UploadTask


logger = logging.getLogger(__name__)


class TaskWriter(Protocol):
    def get_task(self, task_id: str) -> Optional[UploadTask]: ...

    def update_task(self, task_id: str, **patch: Any) -> None: ...


class FileUploadStateMachine:
    """
    驱动单个文件任务走完断点续传流程：
    init（已有 uploadId 则复用）-> status 探测 -> 顺序上传分片 -> complete。

    暂停/取消只在挂起点之间检查；正在进行的网络调用通过 CancelToken 打断。
    用户主动中断抛出的异常一律归类为 paused/canceled，不记为 failed。
    """

    def __init__(
        self,
        transport: UploadTransport,
        writer: TaskWriter,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_uploaded: Optional[Callable[[dict[str, Any]], None]] = None,
    ) -> None:
        self._transport = transport
        self._writer = writer
        self._chunk_size = max(1, int(chunk_size))
        self._on_uploaded = on_uploaded

    async def abort_session(self, rt: FileTaskRuntime) -> None:
        if not rt.upload_id or rt.abort_sent:
            return
        rt.abort_sent = True
        try:
            await self._transport.abort_session(rt.upload_id)
        except UploadError as e:
            logger.warning("取消上传会话 %s 失败（忽略）：%s", rt.upload_id, e)

    async def run(self, task_id: str, rt: FileTaskRuntime) -> TaskStatus:
        file = rt.file
        size = int(file.size or 0)
        if size <= 0:
            return self._fail(task_id, "文件为空或大小为0")

        try:
            if not rt.upload_id:
                token = rt.new_token()
                upload_id = await self._transport.init_session(
                    SessionMeta(
                        category=rt.category,
                        original_name=file.name or "file",
                        mime_type=file.mime_type or "application/octet-stream",
                        size=size,
                    ),
                    cancel=token,
                )
                rt.cancel_token = None
                rt.upload_id = upload_id
                self._writer.update_task(task_id, upload_id=upload_id)

            if rt.cancel_requested:
                # init 期间被取消：cancel_task 当时还拿不到 uploadId，由这里清理新会话
                await self.abort_session(rt)
                return self._set(task_id, "canceled")

            token = rt.new_token()
            received = await self._transport.get_status(rt.upload_id, cancel=token)
            rt.cancel_token = None
            offset = min(size, max(0, int(received)))

            if rt.cancel_requested:
                await self.abort_session(rt)
                return self._set(task_id, "canceled")

            # 先用服务端已收字节数回填进度（断点续传后立即反映已完成部分）
            patch: dict[str, Any] = {"size": size, "bytes_sent": offset, "error": None}
            if not rt.pause_requested:
                patch["status"] = "uploading"
            self._writer.update_task(task_id, **patch)
            logger.info("任务 %s 从 %d/%d 字节开始上传", task_id, offset, size)

            while offset < size:
                if rt.cancel_requested:
                    return self._set(task_id, "canceled")
                if rt.pause_requested:
                    return self._settle_paused(task_id, rt)

                length = min(self._chunk_size, size - offset)
                chunk = await asyncio.to_thread(file.read, offset, length)
                chunk_start = offset

                # 读文件期间可能已被暂停/取消（取消时 abort 已发出），不能再发分片
                if rt.cancel_requested:
                    return self._set(task_id, "canceled")
                if rt.pause_requested:
                    return self._settle_paused(task_id, rt)

                token = rt.new_token()
                await self._transport.upload_chunk(
                    rt.upload_id,
                    chunk,
                    chunk_start,
                    on_progress=lambda loaded, start=chunk_start: self._on_chunk_progress(task_id, size, start + loaded),
                    cancel=token,
                )
                rt.cancel_token = None
                offset = chunk_start + len(chunk)
                self._writer.update_task(task_id, bytes_sent=offset)

            if rt.cancel_requested:
                return self._set(task_id, "canceled")

            token = rt.new_token()
            attachment = await self._transport.complete_session(rt.upload_id, cancel=token)
            rt.cancel_token = None

            if rt.cancel_requested:
                logger.info("任务 %s 在完成请求期间被取消，保持 canceled", task_id)
                return self._set(task_id, "canceled")

            self._writer.update_task(task_id, status="done", bytes_sent=size, error=None)
            logger.info("任务 %s 上传完成", task_id)
            if attachment and self._on_uploaded is not None:
                self._on_uploaded(attachment)
            return "done"
        except Exception as e:
            return self._classify_failure(task_id, rt, e)
        finally:
            rt.cancel_token = None

    def _on_chunk_progress(self, task_id: str, size: int, sent: int) -> None:
        task = self._writer.get_task(task_id)
        if task is None:
            return
        nxt = min(size, sent)
        # 分片内进度只前进不后退
        if nxt > task.bytes_sent:
            self._writer.update_task(task_id, bytes_sent=nxt)

    def _classify_failure(self, task_id: str, rt: FileTaskRuntime, exc: Exception) -> TaskStatus:
        if rt.cancel_requested:
            return self._set(task_id, "canceled")
        if rt.pause_requested:
            return self._settle_paused(task_id, rt)
        if isinstance(exc, UploadAborted):
            # 被暂停打断后用户又立刻恢复：标记位已清，重新排队
            return self._settle_paused(task_id, rt)
        if isinstance(exc, UploadError):
            logger.warning("任务 %s 上传失败：%s", task_id, exc)
        else:
            logger.exception("任务 %s 上传异常", task_id)
        return self._fail(task_id, str(exc).strip() or "上传失败")

    def _settle_paused(self, task_id: str, rt: FileTaskRuntime) -> TaskStatus:
        if rt.pause_requested:
            return self._set(task_id, "paused")
        return self._set(task_id, "queued")

    def _set(self, task_id: str, status: TaskStatus) -> TaskStatus:
        self._writer.update_task(task_id, status=status)
        return status

    def _fail(self, task_id: str, message: str) -> TaskStatus:
        self._writer.update_task(task_id, status="failed", error=message)
        return "failed"
