from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import requests

from pdh_upload.adapters.upload_client import AsyncUploadTransport, ResumableUploadClient, UploadTransport
from pdh_upload.config import CATEGORIES, DEFAULT_CHUNK_SIZE, DEFAULT_CONCURRENCY, AppConfig
from pdh_upload.core.file_source import FileLike, LocalFile, as_upload_file
from pdh_upload.core.models import (
    TERMINAL_STATUSES,
    FileTaskRuntime,
    PathTaskRuntime,
    UploadStats,
    UploadTask,
    now_iso,
)
from pdh_upload.core.path_delegate import PathTaskEvent, PathUploadDelegate
from pdh_upload.core.queue_store import QueueEntry
from pdh_upload.core.runtime_registry import TaskRuntimeRegistry
from pdh_upload.core.scheduler import UploadScheduler
from pdh_upload.core.state_machine import FileUploadStateMachine
from pdh_upload.utils.paths import basename_from_path


logger = logging.getLogger(__name__)


TasksListener = Callable[[tuple[UploadTask, ...]], None]
UploadedListener = Callable[[dict[str, Any]], None]

_MUTABLE_FIELDS = frozenset({"size", "bytes_sent", "status", "error", "upload_id"})
RESUMABLE_STATUSES = frozenset({"queued", "uploading", "paused", "failed"})


def _gen_id() -> str:
    return str(uuid.uuid4())


class UploadManager:
    """
    附件上传队列。

    - 文件任务（内存/本地文件）：由调度器按并发上限放行，状态机负责断点续传；
    - 路径任务（桌面端）：交给原生任务执行，这里只镜像进度事件。

    所有方法都应在同一个事件循环线程里调用；任务列表只通过 update_task 变更，
    每次变更都会通知订阅者并重新评估调度。
    """

    def __init__(
        self,
        transport: UploadTransport,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        default_category: str = "image",
        desktop: Optional[PathUploadDelegate] = None,
        on_uploaded: Optional[UploadedListener] = None,
    ) -> None:
        self._tasks: dict[str, UploadTask] = {}
        self._runtimes = TaskRuntimeRegistry()
        self._scheduler = UploadScheduler(concurrency)
        self._machine = FileUploadStateMachine(
            transport,
            self,
            chunk_size=chunk_size,
            on_uploaded=self._emit_uploaded,
        )
        self._default_category = default_category
        self._desktop = desktop
        self._listeners: list[TasksListener] = []
        self._uploaded_listeners: list[UploadedListener] = []
        if on_uploaded is not None:
            self._uploaded_listeners.append(on_uploaded)

        self._runs: dict[str, asyncio.Task[None]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._detach_desktop: Optional[Callable[[], None]] = None
        self._pumping = False
        self._closed = False
        self._client: Optional[ResumableUploadClient] = None

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        desktop: Optional[PathUploadDelegate] = None,
        on_uploaded: Optional[UploadedListener] = None,
        session: Optional[requests.Session] = None,
    ) -> "UploadManager":
        config = config.validated()
        client = ResumableUploadClient(config, session=session)
        manager = cls(
            AsyncUploadTransport(client),
            concurrency=config.concurrency,
            chunk_size=config.chunk_size_bytes,
            default_category=config.default_category,
            desktop=desktop,
            on_uploaded=on_uploaded,
        )
        manager._client = client
        return manager

    # ---- 可观察状态 ----

    @property
    def tasks(self) -> tuple[UploadTask, ...]:
        return tuple(replace(t) for t in self._tasks.values())

    @property
    def stats(self) -> UploadStats:
        return UploadStats.from_tasks(self._tasks.values())

    @property
    def in_flight(self) -> frozenset[str]:
        return self._scheduler.in_flight

    def get_task(self, task_id: str) -> Optional[UploadTask]:
        task = self._tasks.get(task_id)
        return replace(task) if task is not None else None

    def subscribe(self, listener: TasksListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._remove(self._listeners, listener)

    def subscribe_uploaded(self, listener: UploadedListener) -> Callable[[], None]:
        self._uploaded_listeners.append(listener)
        return lambda: self._remove(self._uploaded_listeners, listener)

    # ---- 入队 ----

    async def enqueue_files(self, files: Iterable[FileLike], category: Optional[str] = None) -> list[str]:
        self._bind_loop()
        cat = self._category(category)
        items = [as_upload_file(f) for f in (files or []) if f is not None and f != ""]
        if not items:
            return []

        created = now_iso()
        ids: list[str] = []
        for f in items:
            task_id = _gen_id()
            self._runtimes.set(task_id, FileTaskRuntime(file=f, category=cat))
            self._tasks[task_id] = UploadTask(
                id=task_id,
                source="file",
                name=f.name or "file",
                category=cat,
                size=int(f.size or 0),
                status="queued",
                created_at=created,
                updated_at=created,
            )
            ids.append(task_id)

        logger.info("加入 %d 个文件上传任务（%s）", len(ids), cat)
        self._changed()
        return ids

    async def enqueue_paths(self, paths: Iterable[str | Path], category: Optional[str] = None) -> list[str]:
        self._bind_loop()
        cat = self._category(category)
        items = [str(p).strip() for p in (paths or []) if p is not None and str(p).strip()]
        if not items:
            return []

        created = now_iso()
        ids: list[str] = []
        for path in items:
            task_id = _gen_id()
            self._runtimes.set(task_id, PathTaskRuntime(path=path, category=cat))
            self._tasks[task_id] = UploadTask(
                id=task_id,
                source="path",
                name=basename_from_path(path),
                category=cat,
                status="uploading",
                created_at=created,
                updated_at=created,
            )
            ids.append(task_id)
        self._changed()

        if self._desktop is None:
            self._fail_all(ids, "路径上传仅支持桌面端")
            return ids

        try:
            await self._desktop.ensure_ready()
        except asyncio.CancelledError:
            self._fail_all(ids, "路径上传已中断")
            raise
        except Exception as e:
            self._fail_all(ids, str(e).strip() or "本地网关未就绪，请稍后再试")
            return ids

        for task_id in ids:
            rt = self._runtimes.get(task_id)
            if not isinstance(rt, PathTaskRuntime):
                continue
            try:
                await self._desktop.start(task_id, rt.path, rt.category)
            except Exception as e:
                logger.warning("启动桌面端上传失败：%s", e)
                self.update_task(task_id, status="failed", error=str(e).strip() or "启动桌面端上传失败")
        return ids

    def restore(self, entries: Iterable[QueueEntry]) -> list[str]:
        """把上次退出时未完成的本地文件任务恢复为 paused，resume 后从服务端已收位置继续。"""
        created = now_iso()
        ids: list[str] = []
        for entry in entries:
            try:
                cat = self._category(entry.category)
            except ValueError as e:
                logger.warning("跳过无法恢复的任务 %s：%s", entry.path, e)
                continue
            f = LocalFile(Path(entry.path), name=entry.name or "")
            size = int(f.size or 0)
            task_id = _gen_id()
            self._runtimes.set(task_id, FileTaskRuntime(file=f, category=cat, upload_id=entry.upload_id or None))
            self._tasks[task_id] = UploadTask(
                id=task_id,
                source="file",
                name=f.name,
                category=cat,
                size=size,
                bytes_sent=max(0, min(size, int(entry.bytes_sent or 0))),
                status="paused",
                upload_id=entry.upload_id or None,
                created_at=created,
                updated_at=created,
            )
            ids.append(task_id)
        if ids:
            logger.info("恢复 %d 个未完成的上传任务", len(ids))
            self._changed()
        return ids

    def resumable_entries(self) -> list[QueueEntry]:
        entries: list[QueueEntry] = []
        for task_id, task in self._tasks.items():
            if task.source != "file" or task.status not in RESUMABLE_STATUSES:
                continue
            rt = self._runtimes.get(task_id)
            if not isinstance(rt, FileTaskRuntime) or not isinstance(rt.file, LocalFile):
                continue
            entries.append(
                QueueEntry(
                    path=str(rt.file.path),
                    category=rt.category,
                    name=task.name,
                    upload_id=rt.upload_id,
                    size=task.size,
                    bytes_sent=task.bytes_sent,
                    status=task.status,
                )
            )
        return entries

    # ---- 控制 ----

    async def pause_task(self, task_id: str) -> None:
        self._bind_loop()
        rt = self._runtimes.get(task_id)
        task = self._tasks.get(task_id)
        if rt is None or task is None or task.status not in ("queued", "uploading"):
            return

        if isinstance(rt, PathTaskRuntime):
            await self._require_desktop().pause(task_id)
            self.update_task(task_id, status="paused")
            return
        if isinstance(rt, FileTaskRuntime):
            rt.pause_requested = True
            if rt.cancel_token is not None:
                rt.cancel_token.cancel("pause")
            self.update_task(task_id, status="paused")
            return
        raise TypeError(f"未知的任务运行时：{type(rt).__name__}")

    async def resume_task(self, task_id: str) -> None:
        self._bind_loop()
        rt = self._runtimes.get(task_id)
        task = self._tasks.get(task_id)
        if rt is None or task is None or task.status != "paused":
            return

        if isinstance(rt, PathTaskRuntime):
            await self._require_desktop().resume(task_id)
            self.update_task(task_id, status="uploading", error=None)
            return
        if isinstance(rt, FileTaskRuntime):
            rt.pause_requested = False
            rt.cancel_requested = False
            if self._scheduler.is_in_flight(task_id):
                # 上一轮还没退出：它会继续上传，或在收尾时改回 queued 重新排队
                self.update_task(task_id, status="uploading", error=None)
            else:
                self.update_task(task_id, status="queued", error=None)
            return
        raise TypeError(f"未知的任务运行时：{type(rt).__name__}")

    async def cancel_task(self, task_id: str) -> None:
        self._bind_loop()
        rt = self._runtimes.get(task_id)
        task = self._tasks.get(task_id)
        if rt is None or task is None or task.status in TERMINAL_STATUSES:
            return

        if isinstance(rt, PathTaskRuntime):
            await self._require_desktop().cancel(task_id)
        elif isinstance(rt, FileTaskRuntime):
            rt.cancel_requested = True
            rt.pause_requested = False
            if rt.cancel_token is not None:
                rt.cancel_token.cancel("cancel")
            # 尽量通知后端清理会话；结果不影响本地状态
            await self._machine.abort_session(rt)
        else:
            raise TypeError(f"未知的任务运行时：{type(rt).__name__}")

        self.update_task(task_id, status="canceled")
        self._runtimes.delete(task_id)

    def clear_finished(self) -> int:
        removed = [task_id for task_id, t in self._tasks.items() if t.status in TERMINAL_STATUSES]
        for task_id in removed:
            del self._tasks[task_id]
            self._runtimes.delete(task_id)
        if removed:
            self._changed()
        return len(removed)

    async def wait_idle(self) -> None:
        """等待所有已放行的文件任务结束（路径任务由桌面端驱动，不在此等待）。"""
        while self._runs:
            await asyncio.gather(*list(self._runs.values()))

    async def aclose(self) -> None:
        """
        卸载：让运行中的文件任务按暂停处理并等待其退出，然后释放运行期状态。
        不向服务端发送 abort，会话保留以便下次恢复。
        """
        if self._closed:
            return
        for task_id, rt in self._runtimes.items():
            if isinstance(rt, FileTaskRuntime) and self._scheduler.is_in_flight(task_id):
                rt.pause_requested = True
                if rt.cancel_token is not None:
                    rt.cancel_token.cancel("pause")
        self._closed = True
        if self._runs:
            await asyncio.gather(*list(self._runs.values()))
        if self._detach_desktop is not None:
            self._detach_desktop()
            self._detach_desktop = None
        self._runtimes.clear()
        self._listeners.clear()
        self._uploaded_listeners.clear()
        if self._client is not None:
            self._client.close()
        logger.info("上传管理器已关闭")

    # ---- TaskWriter ----

    def update_task(self, task_id: str, **patch: Any) -> None:
        task = self._tasks.get(task_id)
        if task is None:
            return
        unknown = set(patch) - _MUTABLE_FIELDS
        if unknown:
            raise AttributeError(f"不可修改的任务字段：{sorted(unknown)}")

        status = patch.pop("status", None)
        if status is not None and status != task.status:
            if task.status in TERMINAL_STATUSES:
                logger.debug("任务 %s 已是 %s，忽略状态 %s", task_id, task.status, status)
            else:
                logger.info("任务 %s：%s -> %s", task_id, task.status, status)
                task.status = status
        for key, value in patch.items():
            setattr(task, key, value)

        task.bytes_sent = max(0, int(task.bytes_sent or 0))
        task.size = max(0, int(task.size or 0))
        if task.size > 0 and task.bytes_sent > task.size:
            task.bytes_sent = task.size
        task.updated_at = now_iso()
        self._changed()

    # ---- 内部 ----

    def _changed(self) -> None:
        snapshot = self.tasks
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("任务列表监听回调异常")
        self._pump()

    def _pump(self) -> None:
        if self._pumping or self._closed or self._loop is None:
            return
        self._pumping = True
        try:
            for task in self._scheduler.admit(self._tasks.values()):
                self.update_task(task.id, status="uploading", error=None)
                self._runs[task.id] = self._loop.create_task(self._drive(task.id))
        finally:
            self._pumping = False

    async def _drive(self, task_id: str) -> None:
        try:
            rt = self._runtimes.get(task_id)
            if not isinstance(rt, FileTaskRuntime):
                # 放行后、开始前已被取消
                return
            status = await self._machine.run(task_id, rt)
            if status in TERMINAL_STATUSES:
                self._runtimes.delete(task_id)
        finally:
            self._runs.pop(task_id, None)
            self._scheduler.release(task_id)
            self._pump()

    def _bind_loop(self) -> None:
        if self._closed:
            raise RuntimeError("上传管理器已关闭")
        if self._loop is not None:
            return
        self._loop = asyncio.get_running_loop()
        if self._desktop is not None:
            self._detach_desktop = self._desktop.attach(self._on_path_event_threadsafe)

    def _on_path_event_threadsafe(self, event: PathTaskEvent) -> None:
        # 桌面端事件可能来自其他线程，统一切回事件循环线程处理
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._on_path_event, event)

    def _on_path_event(self, event: PathTaskEvent) -> None:
        task = self._tasks.get(event.task_id)
        if task is None or task.source != "path":
            return
        was_done = task.status == "done"
        self.update_task(
            event.task_id,
            status=event.status,
            bytes_sent=event.bytes_sent,
            size=event.total_bytes,
            upload_id=event.upload_id,
            error=event.error,
        )
        now = self._tasks.get(event.task_id)
        if now is not None and now.status == "done" and not was_done and event.attachment:
            self._emit_uploaded(event.attachment)
        if now is not None and now.status in TERMINAL_STATUSES:
            self._runtimes.delete(event.task_id)

    def _emit_uploaded(self, attachment: dict[str, Any]) -> None:
        for listener in list(self._uploaded_listeners):
            try:
                listener(attachment)
            except Exception:
                logger.exception("上传完成回调异常")

    def _fail_all(self, task_ids: list[str], message: str) -> None:
        logger.warning("路径上传失败（%d 个任务）：%s", len(task_ids), message)
        for task_id in task_ids:
            self.update_task(task_id, status="failed", error=message)
            self._runtimes.delete(task_id)

    def _require_desktop(self) -> PathUploadDelegate:
        if self._desktop is None:
            raise RuntimeError("路径上传仅支持桌面端")
        return self._desktop

    def _category(self, category: Optional[str]) -> str:
        cat = str(category or self._default_category or "image").strip().lower()
        if cat not in CATEGORIES:
            raise ValueError(f"不支持的附件类别：{category!r}")
        return cat

    @staticmethod
    def _remove(items: list[Any], item: Any) -> None:
        try:
            items.remove(item)
        except ValueError:
            pass
