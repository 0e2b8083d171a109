from __future__ import annotations

from pdh_upload.core.models import UploadStats, UploadTask
from pdh_upload.core.runtime_registry import TaskRuntimeRegistry
from pdh_upload.core.models import PathTaskRuntime
from pdh_upload.core.scheduler import UploadScheduler


def _task(task_id: str, status: str = "queued", source: str = "file") -> UploadTask:
    return UploadTask(id=task_id, source=source, name=f"{task_id}.txt", category="document", status=status)


def test_admit_fills_free_slots_in_order():
    scheduler = UploadScheduler(2)
    tasks = [_task("a", "uploading"), _task("b"), _task("c"), _task("p", source="path")]

    assert [t.id for t in scheduler.admit(tasks)] == ["b"]
    assert scheduler.in_flight == frozenset({"b"})
    assert scheduler.admit(tasks) == []


def test_admitted_but_not_yet_uploading_counts_once():
    scheduler = UploadScheduler(2)
    tasks = [_task("a"), _task("b"), _task("c")]
    scheduler.admit(tasks)
    tasks[0].status = "uploading"

    assert scheduler.running_count(tasks) == 2
    assert scheduler.admit(tasks) == []


def test_release_frees_slot():
    scheduler = UploadScheduler(1)
    tasks = [_task("a"), _task("b")]
    [first] = scheduler.admit(tasks)
    first.status = "done"
    scheduler.release("a")

    assert [t.id for t in scheduler.admit(tasks)] == ["b"]
    scheduler.release("missing")


def test_path_tasks_do_not_use_file_slots():
    scheduler = UploadScheduler(1)
    tasks = [_task("p", "uploading", source="path"), _task("a")]

    assert [t.id for t in scheduler.admit(tasks)] == ["a"]


def test_concurrency_is_at_least_one():
    assert UploadScheduler(0).concurrency == 1


def test_stats_and_progress():
    tasks = [_task("a", "uploading"), _task("b"), _task("c", "failed"), _task("d", "done")]
    tasks[0].size, tasks[0].bytes_sent = 8, 2

    assert UploadStats.from_tasks(tasks) == UploadStats(total=4, uploading=1, queued=1, paused=0, failed=1)
    assert tasks[0].progress == 0.25
    assert tasks[1].progress == 0.0
    assert tasks[0].to_dict()["progress"] == 0.25


def test_runtime_registry():
    registry = TaskRuntimeRegistry()
    registry.set("p", PathTaskRuntime(path="/a.png", category="image"))

    assert "p" in registry and len(registry) == 1
    for task_id, _ in registry.items():
        registry.delete(task_id)
    assert registry.get("p") is None
    registry.delete("p")
