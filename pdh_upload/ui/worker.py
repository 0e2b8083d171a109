from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

from PySide6.QtCore import QObject, QThread, Signal

from pdh_upload.adapters.attachment_url_cache import AttachmentUrlCache
from pdh_upload.config import AppConfig
from pdh_upload.core.manager import UploadManager
from pdh_upload.core.queue_store import QueueEntry, save_queue


logger = logging.getLogger(__name__)


class UploadWorker(QObject):
    """
    在 QThread 里跑 asyncio 事件循环和 UploadManager。
    UI 线程通过 run_coroutine_threadsafe 投递命令，任务快照经 Signal 回到 UI 线程。
    """

    tasks_changed = Signal(object)
    uploaded = Signal(object, str)
    log = Signal(str)
    finished = Signal()

    def __init__(self, config: AppConfig, restore: Optional[List[QueueEntry]] = None) -> None:
        super().__init__()
        self._config = config
        self._restore = list(restore or [])
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._manager: Optional[UploadManager] = None
        self._urls = AttachmentUrlCache(self._attachment_base)

    def start(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            manager = UploadManager.from_config(self._config, on_uploaded=self._emit_uploaded)
            manager.subscribe(self.tasks_changed.emit)
            if self._restore:
                manager.restore(self._restore)
                self.log.emit(f"已恢复 {len(self._restore)} 个未完成的任务（已暂停，点“继续”续传）")
            self._manager = manager
            self._loop = loop
            loop.run_forever()
        except Exception as e:
            logger.exception("上传线程异常退出")
            self.log.emit(f"上传线程异常退出：{e}")
        finally:
            self._loop = None
            loop.run_until_complete(loop.shutdown_default_executor())
            loop.close()
            self.finished.emit()

    def enqueue_files(self, paths: list[Path], category: str) -> None:
        self._submit(lambda m: m.enqueue_files(paths, category))

    def pause(self, task_id: str) -> None:
        self._submit(lambda m: m.pause_task(task_id))

    def resume(self, task_id: str) -> None:
        self._submit(lambda m: m.resume_task(task_id))

    def cancel(self, task_id: str) -> None:
        self._submit(lambda m: m.cancel_task(task_id))

    def clear_finished(self) -> None:
        async def run(m: UploadManager) -> None:
            n = m.clear_finished()
            if n:
                self.log.emit(f"已清除 {n} 个已结束任务")

        self._submit(run)

    def stop(self) -> None:
        """暂停运行中的任务、保存可续传队列，然后结束事件循环。"""
        loop = self._loop

        async def shutdown(m: UploadManager) -> None:
            entries = m.resumable_entries()
            await m.aclose()
            save_queue(entries)
            logger.info("已保存 %d 个可续传任务", len(entries))

        fut = self._submit(shutdown)
        if fut is None or loop is None:
            return
        fut.add_done_callback(lambda _: loop.call_soon_threadsafe(loop.stop))

    def _submit(self, make: Callable[[UploadManager], Awaitable[Any]]) -> Optional[Future]:
        loop, manager = self._loop, self._manager
        if loop is None or manager is None or loop.is_closed():
            return None
        fut = asyncio.run_coroutine_threadsafe(make(manager), loop)
        fut.add_done_callback(self._report)
        return fut

    def _report(self, fut: Future) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.error("上传命令执行失败：%s", exc)
            self.log.emit(f"操作失败：{exc}")

    def _emit_uploaded(self, attachment: dict[str, Any]) -> None:
        # 由 UploadManager 在事件循环线程里回调
        asyncio.get_running_loop().create_task(self._announce(attachment))

    async def _announce(self, attachment: dict[str, Any]) -> None:
        url = ""
        try:
            url = await self._urls.url_for_attachment(attachment) or ""
        except Exception as e:
            logger.warning("解析附件地址失败：%s", e)
        if url:
            logger.info("附件地址：%s", url)
        self.uploaded.emit(attachment, url)

    async def _attachment_base(self) -> str:
        return self._config.server_url


@dataclass
class WorkerHandle:
    thread: QThread
    worker: UploadWorker
