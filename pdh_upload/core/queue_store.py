from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Iterable, Optional

from pdh_upload.config import config_dir
from pdh_upload.utils.io import atomic_write_json


logger = logging.getLogger(__name__)


@dataclass
class QueueEntry:
    """可在重启后继续的本地文件任务；uploadId 用于向服务端查询已收字节数。"""

    path: str
    category: str
    name: str = ""
    upload_id: Optional[str] = None
    size: int = 0
    bytes_sent: int = 0
    status: str = "paused"


def _queue_path() -> Path:
    return config_dir() / "queue.json"


def save_queue(entries: Iterable[QueueEntry], path: Optional[Path] = None) -> Path:
    path = path or _queue_path()
    atomic_write_json(path, [asdict(e) for e in entries])
    return path


def load_queue(path: Optional[Path] = None) -> list[QueueEntry]:
    path = path or _queue_path()
    if not path.exists():
        return []
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("读取上传队列失败，忽略：%s", e)
        return []

    entries: list[QueueEntry] = []
    for r in raw if isinstance(raw, list) else []:
        if not isinstance(r, dict):
            continue
        known = {k: v for k, v in r.items() if k in QueueEntry.__dataclass_fields__}
        if not known.get("path") or not known.get("category"):
            continue
        if not Path(known["path"]).is_file():
            continue
        entries.append(QueueEntry(**known))
    return entries
