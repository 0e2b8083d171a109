from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path


_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def setup_logging(log_dir: Path, *, level: int = logging.INFO) -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"pdh_upload_{datetime.now().strftime('%Y%m%d')}.log"

    root = logging.getLogger()
    root.setLevel(level)

    # 设置页保存后会再次调用；同一路径不重复挂 handler，避免日志重复输出
    for h in root.handlers:
        if isinstance(h, logging.FileHandler) and h.baseFilename == os.path.abspath(log_path):
            return log_path

    fmt = logging.Formatter(_FORMAT)

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(fmt)
    root.addHandler(fh)

    if not any(type(h) is logging.StreamHandler for h in root.handlers):
        sh = logging.StreamHandler()
        sh.setFormatter(fmt)
        root.addHandler(sh)

    return log_path
