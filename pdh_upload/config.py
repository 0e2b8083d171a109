from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path

from pdh_upload.utils.io import atomic_write_json


CATEGORIES = ("image", "video", "document", "script")

DEFAULT_CHUNK_SIZE = 4 * 1024 * 1024  # 4MB
DEFAULT_CONCURRENCY = 2


def config_dir() -> Path:
    if os.name == "nt":
        base = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(base) / "PdhUpload"
    return Path.home() / ".config" / "pdh-upload"


def _config_path() -> Path:
    return config_dir() / "config.json"


def _default_log_dir() -> str:
    return str(config_dir() / "logs")


@dataclass(frozen=True)
class AppConfig:
    # 后端地址，例如 http://127.0.0.1:5000/api；桌面端一般指向本机网关
    server_url: str = ""
    # 登录态 JWT（Authorization: Bearer ...）
    token: str = ""
    # 附件接口额外的访问令牌（X-Attachment-Token）
    attachment_token: str = ""
    chunk_size_bytes: int = DEFAULT_CHUNK_SIZE
    concurrency: int = DEFAULT_CONCURRENCY
    connect_timeout_s: int = 10
    read_timeout_s: int = 120
    # 仅用于查询会话状态（幂等请求）；init/chunk/complete 不自动重试
    max_retries: int = 3
    # requests 默认会从环境变量/系统设置读取代理（HTTP_PROXY/HTTPS_PROXY 等）
    use_system_proxy: bool = True
    # 分片内进度回调粒度：每读出这么多字节回调一次
    progress_block_bytes: int = 64 * 1024
    gateway_timeout_s: int = 15
    gateway_poll_interval_ms: int = 100
    default_category: str = "image"
    log_dir: str = _default_log_dir()

    def validated(self) -> "AppConfig":
        category = (self.default_category or "").strip().lower()
        if category not in CATEGORIES:
            raise ValueError(f"不支持的附件类别：{self.default_category!r}")
        return replace(
            self,
            server_url=(self.server_url or "").strip().rstrip("/"),
            chunk_size_bytes=max(1, int(self.chunk_size_bytes)),
            concurrency=max(1, int(self.concurrency)),
            progress_block_bytes=max(1, int(self.progress_block_bytes)),
            max_retries=max(0, int(self.max_retries)),
            default_category=category,
        )

    def ensure_dirs(self) -> None:
        Path(self.log_dir).mkdir(parents=True, exist_ok=True)


def load_config(path: Path | None = None) -> AppConfig:
    path = path or _config_path()
    if not path.exists():
        return AppConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return AppConfig()
    if not isinstance(data, dict):
        return AppConfig()
    known = {k: v for k, v in data.items() if k in AppConfig.__dataclass_fields__}
    return AppConfig(**known)


def save_config(config: AppConfig, path: Path | None = None) -> Path:
    path = path or _config_path()
    atomic_write_json(path, asdict(config))
    return path
