from __future__ import annotations

from pathlib import Path

from PySide6.QtCore import Qt, QThread
from PySide6.QtGui import QAction
from PySide6.QtWidgets import (
    QComboBox,
    QFileDialog,
    QHBoxLayout,
    QLabel,
    QMainWindow,
    QMessageBox,
    QPushButton,
    QTableWidget,
    QTableWidgetItem,
    QTextEdit,
    QVBoxLayout,
    QWidget,
)

from pdh_upload.config import CATEGORIES, AppConfig, load_config, save_config
from pdh_upload.core.file_source import group_by_category
from pdh_upload.core.models import UploadTask
from pdh_upload.core.queue_store import load_queue
from pdh_upload.utils.logging_utils import setup_logging
from pdh_upload.ui.settings_dialog import SettingsDialog
from pdh_upload.ui.worker import UploadWorker, WorkerHandle


_STATUS_LABELS = {
    "queued": "排队中",
    "uploading": "上传中",
    "paused": "已暂停",
    "canceled": "已取消",
    "done": "已完成",
    "failed": "失败",
}


class DropLabel(QLabel):
    def __init__(self, text: str, on_drop, parent=None) -> None:
        super().__init__(text, parent)
        self.setAcceptDrops(True)
        self.setAlignment(Qt.AlignmentFlag.AlignCenter)
        self.setStyleSheet("border: 2px dashed #888; padding: 18px;")
        self._on_drop = on_drop

    def dragEnterEvent(self, event) -> None:  # type: ignore[override]
        if event.mimeData().hasUrls():
            event.acceptProposedAction()

    def dropEvent(self, event) -> None:  # type: ignore[override]
        urls = event.mimeData().urls()
        paths = [Path(u.toLocalFile()) for u in urls if u.isLocalFile()]
        self._on_drop(paths)


class MainWindow(QMainWindow):
    def __init__(self) -> None:
        super().__init__()
        self.setWindowTitle("PDH 附件上传")
        self.resize(900, 640)

        self._config: AppConfig = load_config()
        self._config.ensure_dirs()
        setup_logging(Path(self._config.log_dir))

        self._tasks: tuple[UploadTask, ...] = ()
        self._worker_handle: WorkerHandle | None = None

        self._build_ui()
        self._build_menu()
        self._start_worker()

    def _build_menu(self) -> None:
        settings_action = QAction("设置", self)
        settings_action.triggered.connect(self._open_settings)
        self.menuBar().addAction(settings_action)

    def _build_ui(self) -> None:
        self.drop = DropLabel("拖拽文件到这里上传", self._add_paths)

        self.category = QComboBox()
        self.category.addItem("自动（按扩展名）", "")
        for c in CATEGORIES:
            self.category.addItem(c, c)

        self.table = QTableWidget(0, 5)
        self.table.setHorizontalHeaderLabels(["文件", "类别", "状态", "进度", "信息"])
        self.table.horizontalHeader().setStretchLastSection(True)
        self.table.setSelectionBehavior(QTableWidget.SelectionBehavior.SelectRows)
        self.table.setEditTriggers(QTableWidget.EditTrigger.NoEditTriggers)

        self.log = QTextEdit()
        self.log.setReadOnly(True)
        self.log.setMaximumHeight(160)

        btn_add_files = QPushButton("添加文件")
        btn_add_files.clicked.connect(self._pick_files)
        btn_pause = QPushButton("暂停")
        btn_pause.clicked.connect(self._pause)
        btn_resume = QPushButton("继续")
        btn_resume.clicked.connect(self._resume)
        btn_cancel = QPushButton("取消")
        btn_cancel.clicked.connect(self._cancel)
        btn_clear = QPushButton("清除已完成")
        btn_clear.clicked.connect(self._clear_finished)

        row1 = QHBoxLayout()
        row1.addWidget(QLabel("类别"))
        row1.addWidget(self.category)
        row1.addWidget(btn_add_files)
        row1.addStretch(1)

        row2 = QHBoxLayout()
        for b in (btn_pause, btn_resume, btn_cancel, btn_clear):
            row2.addWidget(b)
        row2.addStretch(1)

        self.stats = QLabel("")

        root = QVBoxLayout()
        root.addWidget(self.drop)
        root.addLayout(row1)
        root.addLayout(row2)
        root.addWidget(self.table, 1)
        root.addWidget(self.stats)
        root.addWidget(QLabel("日志"))
        root.addWidget(self.log)

        w = QWidget()
        w.setLayout(root)
        self.setCentralWidget(w)

    def _start_worker(self) -> None:
        thread = QThread(self)
        worker = UploadWorker(self._config, load_queue())
        worker.moveToThread(thread)
        thread.started.connect(worker.start)
        worker.log.connect(self._append_log)
        worker.tasks_changed.connect(self._on_tasks_changed)
        worker.uploaded.connect(self._on_uploaded)
        # 事件循环结束时 UI 线程可能正阻塞在 wait() 上，必须直连退出线程
        worker.finished.connect(thread.quit, Qt.ConnectionType.DirectConnection)
        thread.finished.connect(worker.deleteLater)

        self._worker_handle = WorkerHandle(thread=thread, worker=worker)
        thread.start()

    def _append_log(self, msg: str) -> None:
        self.log.append(msg)

    def _worker(self) -> UploadWorker | None:
        return self._worker_handle.worker if self._worker_handle else None

    def _pick_files(self) -> None:
        files, _ = QFileDialog.getOpenFileNames(self, "选择文件", "")
        self._add_paths([Path(f) for f in files])

    def _add_paths(self, paths: list[Path]) -> None:
        worker = self._worker()
        if worker is None:
            return
        if not self._config.server_url:
            QMessageBox.warning(self, "提示", "请先在“设置”中配置 SERVER_URL")
            return

        files = [p for p in paths if p.is_file()]
        skipped = len(paths) - len(files)
        if skipped:
            self._append_log(f"跳过文件夹/不可读路径：{skipped} 个")
        if not files:
            return

        chosen = self.category.currentData() or ""
        if chosen:
            worker.enqueue_files(files, chosen)
            return
        for category, group in group_by_category(files, self._config.default_category).items():
            worker.enqueue_files(group, category)

    def _selected_ids(self) -> list[str]:
        rows = sorted({r.row() for r in self.table.selectedIndexes()})
        return [self._tasks[r].id for r in rows if 0 <= r < len(self._tasks)]

    def _pause(self) -> None:
        worker = self._worker()
        for task_id in self._selected_ids():
            if worker:
                worker.pause(task_id)

    def _resume(self) -> None:
        worker = self._worker()
        for task_id in self._selected_ids():
            if worker:
                worker.resume(task_id)

    def _cancel(self) -> None:
        ids = self._selected_ids()
        if not ids:
            return
        if QMessageBox.question(self, "确认", f"取消选中的 {len(ids)} 个任务？") != QMessageBox.StandardButton.Yes:
            return
        worker = self._worker()
        for task_id in ids:
            if worker:
                worker.cancel(task_id)

    def _clear_finished(self) -> None:
        worker = self._worker()
        if worker:
            worker.clear_finished()

    def _on_tasks_changed(self, tasks: tuple[UploadTask, ...]) -> None:
        self._tasks = tasks
        self.table.setRowCount(len(tasks))
        for i, t in enumerate(tasks):
            self._update_row(i, t)
        uploading = sum(1 for t in tasks if t.status == "uploading")
        failed = sum(1 for t in tasks if t.status == "failed")
        self.stats.setText(f"共 {len(tasks)} 个，上传中 {uploading}，失败 {failed}")

    def _update_row(self, row: int, t: UploadTask) -> None:
        self.table.setItem(row, 0, QTableWidgetItem(t.name))
        self.table.setItem(row, 1, QTableWidgetItem(t.category))
        self.table.setItem(row, 2, QTableWidgetItem(_STATUS_LABELS.get(t.status, t.status)))
        self.table.setItem(row, 3, QTableWidgetItem(f"{int(t.progress * 100)}%"))
        self.table.setItem(row, 4, QTableWidgetItem(t.error or ""))

    def _on_uploaded(self, attachment: dict, url: str) -> None:
        name = attachment.get("originalName") or attachment.get("filename") or attachment.get("id") or ""
        self._append_log(f"上传完成：{name}" + (f"  {url}" if url else ""))

    def _open_settings(self) -> None:
        dlg = SettingsDialog(self._config, self)
        if dlg.exec() == dlg.DialogCode.Accepted:
            try:
                self._config = dlg.get_config().validated()
            except ValueError as e:
                QMessageBox.warning(self, "失败", f"设置无效：{e}")
                return
            self._config.ensure_dirs()
            save_config(self._config)
            setup_logging(Path(self._config.log_dir))
            self._restart_worker()
            QMessageBox.information(self, "提示", "设置已保存")

    def _stop_worker(self) -> None:
        handle = self._worker_handle
        if handle is None:
            return
        self._worker_handle = None
        handle.worker.stop()
        handle.thread.wait(15000)

    def _restart_worker(self) -> None:
        # 未完成的任务会先落盘，新线程启动时以暂停状态恢复
        self._stop_worker()
        self._start_worker()

    def closeEvent(self, event) -> None:  # type: ignore[override]
        if any(t.status == "uploading" for t in self._tasks):
            if QMessageBox.question(self, "退出确认", "仍有任务在上传，退出后可下次继续。确定退出？") != QMessageBox.StandardButton.Yes:
                event.ignore()
                return
        self._stop_worker()
        event.accept()
