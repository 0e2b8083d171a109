from __future__ import annotations

from typing import Iterable

from pdh_upload.config import DEFAULT_CONCURRENCY
from pdh_upload.core.models import UploadTask


class UploadScheduler:
    """
    文件任务并发泵：任务列表每次变化后调用 admit()，
    在并发上限内挑选 queued 任务放行。贪心、不抢占：运行中的任务不会为新任务让路。
    """

    def __init__(self, concurrency: int = DEFAULT_CONCURRENCY) -> None:
        self.concurrency = max(1, int(concurrency))
        self._in_flight: set[str] = set()

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def is_in_flight(self, task_id: str) -> bool:
        return task_id in self._in_flight

    def running_count(self, tasks: Iterable[UploadTask]) -> int:
        # 已放行但尚未改成 uploading 的任务也要算上，两者取并集避免重复计数
        uploading = {t.id for t in tasks if t.source == "file" and t.status == "uploading"}
        return len(uploading | self._in_flight)

    def admit(self, tasks: Iterable[UploadTask]) -> list[UploadTask]:
        items = list(tasks)
        available = max(0, self.concurrency - self.running_count(items))
        if available <= 0:
            return []

        picked: list[UploadTask] = []
        for t in items:
            if len(picked) >= available:
                break
            if t.source != "file" or t.status != "queued" or t.id in self._in_flight:
                continue
            self._in_flight.add(t.id)
            picked.append(t)
        return picked

    def release(self, task_id: str) -> None:
        self._in_flight.discard(task_id)
