from __future__ import annotations

import os
import re
from pathlib import Path


_WIN_ABS_RE = re.compile(r"^(?P<drive>[A-Za-z]):[\\/](?P<rest>.*)$")


def basename_from_path(path: str | Path) -> str:
    """
    取路径最后一段作为展示名；兼容 Windows 分隔符（桌面端拖拽传入的可能是 E:\\a\\b.png）。
    空路径返回 "file"。
    """
    raw = str(path or "").strip()
    if not raw:
        return "file"
    parts = [p for p in raw.replace("\\", "/").split("/") if p]
    return parts[-1] if parts else "file"


def resolve_path_maybe_windows(path: str | Path) -> Path:
    """
    将路径解析为本机可访问的 Path：
    - Windows：原样使用（E:\\...）
    - Linux/WSL：若传入 Windows 盘符路径，尝试映射到 /mnt/<drive>/<rest>
    - 相对路径：相对于当前工作目录
    """
    s = str(path)
    m = _WIN_ABS_RE.match(s)
    if m and os.name != "nt":
        drive = m.group("drive").lower()
        rest = m.group("rest").replace("\\", "/")
        return Path("/mnt") / drive / rest

    p = Path(s)
    if p.is_absolute():
        return p
    return p.resolve()
