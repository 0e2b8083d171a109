from __future__ import annotations

from dataclasses import replace

from PySide6.QtWidgets import (
    QCheckBox,
    QComboBox,
    QDialog,
    QDialogButtonBox,
    QFileDialog,
    QFormLayout,
    QHBoxLayout,
    QLineEdit,
    QPushButton,
    QSpinBox,
    QVBoxLayout,
    QWidget,
)

from pdh_upload.config import CATEGORIES, AppConfig


_MB = 1024 * 1024
_KB = 1024


class SettingsDialog(QDialog):
    def __init__(self, config: AppConfig, parent=None) -> None:
        super().__init__(parent)
        self.setWindowTitle("设置")
        self._config = config

        self.server_url = QLineEdit(config.server_url)
        self.server_url.setPlaceholderText("示例：http://127.0.0.1:5000/api")
        self.token = QLineEdit(config.token)
        self.token.setEchoMode(QLineEdit.EchoMode.Password)
        self.attachment_token = QLineEdit(config.attachment_token)
        self.attachment_token.setEchoMode(QLineEdit.EchoMode.Password)

        self.default_category = QComboBox()
        for c in CATEGORIES:
            self.default_category.addItem(c, c)
        idx = self.default_category.findData(config.default_category)
        self.default_category.setCurrentIndex(idx if idx >= 0 else 0)

        self.chunk_size_mb = QSpinBox()
        self.chunk_size_mb.setRange(1, 512)
        self.chunk_size_mb.setValue(max(1, int(config.chunk_size_bytes) // _MB))

        self.concurrency = QSpinBox()
        self.concurrency.setRange(1, 16)
        self.concurrency.setValue(int(config.concurrency))

        self.max_retries = QSpinBox()
        self.max_retries.setRange(0, 20)
        self.max_retries.setValue(int(config.max_retries))

        self.connect_timeout_s = QSpinBox()
        self.connect_timeout_s.setRange(1, 120)
        self.connect_timeout_s.setValue(int(config.connect_timeout_s))

        self.read_timeout_s = QSpinBox()
        self.read_timeout_s.setRange(5, 3600)
        self.read_timeout_s.setValue(int(config.read_timeout_s))

        self.progress_block_kb = QSpinBox()
        self.progress_block_kb.setRange(4, 4096)
        self.progress_block_kb.setValue(max(4, int(config.progress_block_bytes) // _KB))

        self.use_system_proxy = QCheckBox("使用系统/环境代理（HTTP(S)_PROXY 等）")
        self.use_system_proxy.setChecked(bool(config.use_system_proxy))

        self.log_dir = QLineEdit(config.log_dir)
        choose_btn = QPushButton("选择...")
        choose_btn.clicked.connect(self._choose_log_dir)
        log_row = QHBoxLayout()
        log_row.addWidget(self.log_dir)
        log_row.addWidget(choose_btn)
        log_wrap = QWidget()
        log_wrap.setLayout(log_row)

        form = QFormLayout()
        form.addRow("SERVER_URL", self.server_url)
        form.addRow("TOKEN", self.token)
        form.addRow("ATTACHMENT_TOKEN", self.attachment_token)
        form.addRow("DEFAULT_CATEGORY", self.default_category)
        form.addRow("CHUNK_SIZE_MB", self.chunk_size_mb)
        form.addRow("CONCURRENCY", self.concurrency)
        form.addRow("MAX_RETRIES（仅状态查询）", self.max_retries)
        form.addRow("CONNECT_TIMEOUT_S", self.connect_timeout_s)
        form.addRow("READ_TIMEOUT_S", self.read_timeout_s)
        form.addRow("PROGRESS_BLOCK_KB", self.progress_block_kb)
        form.addRow("USE_SYSTEM_PROXY", self.use_system_proxy)
        form.addRow("LOG_DIR", log_wrap)

        buttons = QDialogButtonBox(QDialogButtonBox.StandardButton.Ok | QDialogButtonBox.StandardButton.Cancel)
        buttons.accepted.connect(self.accept)
        buttons.rejected.connect(self.reject)

        layout = QVBoxLayout()
        layout.addLayout(form)
        layout.addWidget(buttons)
        self.setLayout(layout)

    def _choose_log_dir(self) -> None:
        path = QFileDialog.getExistingDirectory(self, "选择日志目录", self.log_dir.text().strip() or "")
        if path:
            self.log_dir.setText(path)

    def get_config(self) -> AppConfig:
        # 网关相关字段不在界面上编辑，沿用原值
        return replace(
            self._config,
            server_url=self.server_url.text().strip(),
            token=self.token.text().strip(),
            attachment_token=self.attachment_token.text().strip(),
            default_category=self.default_category.currentData() or "image",
            chunk_size_bytes=int(self.chunk_size_mb.value()) * _MB,
            concurrency=int(self.concurrency.value()),
            max_retries=int(self.max_retries.value()),
            connect_timeout_s=int(self.connect_timeout_s.value()),
            read_timeout_s=int(self.read_timeout_s.value()),
            progress_block_bytes=int(self.progress_block_kb.value()) * _KB,
            use_system_proxy=bool(self.use_system_proxy.isChecked()),
            log_dir=self.log_dir.text().strip() or self._config.log_dir,
        )
