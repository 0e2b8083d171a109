from __future__ import annotations

from typing import Iterator, Optional

from pdh_upload.core.models import TaskRuntime


class TaskRuntimeRegistry:
    """task_id -> 运行期状态（文件句柄/路径、uploadId、暂停/取消标记），不进入可观察的任务列表。"""

    def __init__(self) -> None:
        self._items: dict[str, TaskRuntime] = {}

    def get(self, task_id: str) -> Optional[TaskRuntime]:
        return self._items.get(task_id)

    def set(self, task_id: str, runtime: TaskRuntime) -> None:
        self._items[task_id] = runtime

    def delete(self, task_id: str) -> None:
        self._items.pop(task_id, None)

    def clear(self) -> None:
        self._items.clear()

    def items(self) -> Iterator[tuple[str, TaskRuntime]]:
        return iter(list(self._items.items()))

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._items

    def __len__(self) -> int:
        return len(self._items)
