from __future__ import annotations

import argparse
import asyncio
from dataclasses import replace
from pathlib import Path

from pdh_upload.adapters.attachment_url_cache import AttachmentUrlCache
from pdh_upload.config import CATEGORIES, AppConfig, load_config
from pdh_upload.core.file_source import group_by_category
from pdh_upload.core.manager import UploadManager
from pdh_upload.core.models import UploadTask
from pdh_upload.utils.logging_utils import setup_logging
from pdh_upload.utils.paths import resolve_path_maybe_windows


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    patch = {}
    if args.server_url:
        patch["server_url"] = args.server_url
    if args.token:
        patch["token"] = args.token
    if args.concurrency:
        patch["concurrency"] = int(args.concurrency)
    if args.chunk_mb:
        patch["chunk_size_bytes"] = int(args.chunk_mb) * 1024 * 1024
    return replace(config, **patch).validated()


class _ProgressLog:
    """只在状态变化或每跨过 10% 时打印一行。"""

    def __init__(self) -> None:
        self._seen: dict[str, tuple[str, int]] = {}

    def __call__(self, tasks: tuple[UploadTask, ...]) -> None:
        for t in tasks:
            step = int(t.progress * 10)
            if self._seen.get(t.id) == (t.status, step):
                continue
            self._seen[t.id] = (t.status, step)
            extra = f" {t.error}" if t.error else ""
            print(f"[{t.status}] {t.name} {int(t.progress * 100)}%{extra}")


async def _print_urls(config: AppConfig, attachments: list[dict]) -> None:
    async def base() -> str:
        return config.server_url

    urls = AttachmentUrlCache(base)
    for attachment in attachments:
        url = await urls.url_for_attachment(attachment)
        if url:
            print(f"[ok] {attachment.get('originalName') or ''} -> {url}")


async def _run(config: AppConfig, files: list[Path], category: str | None) -> tuple[UploadTask, ...]:
    manager = UploadManager.from_config(config)
    manager.subscribe(_ProgressLog())
    attachments: list[dict] = []
    manager.subscribe_uploaded(attachments.append)
    try:
        if category:
            await manager.enqueue_files(files, category)
        else:
            for cat, group in group_by_category(files, config.default_category).items():
                await manager.enqueue_files(group, cat)
        await manager.wait_idle()
        await _print_urls(config, attachments)
        return manager.tasks
    finally:
        await manager.aclose()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="断点续传上传附件（命令行，无界面）")
    parser.add_argument("files", nargs="+", type=str, help="本地文件路径（可多个）")
    parser.add_argument("--category", choices=CATEGORIES, help="附件类别；默认按扩展名猜测，猜不出用配置的默认类别")
    parser.add_argument("--server-url", type=str, default="", help="覆盖配置中的 SERVER_URL")
    parser.add_argument("--token", type=str, default="", help="覆盖配置中的 TOKEN")
    parser.add_argument("--concurrency", type=int, default=0, help="并发上传数")
    parser.add_argument("--chunk-mb", type=int, default=0, help="分片大小（MB）")
    args = parser.parse_args(argv)

    try:
        config = _apply_overrides(load_config(), args)
    except ValueError as e:
        raise SystemExit(f"配置无效：{e}")
    if not config.server_url:
        raise SystemExit("未配置 SERVER_URL（可用 --server-url 指定）")
    setup_logging(Path(config.log_dir))

    files: list[Path] = []
    for raw in args.files:
        p = resolve_path_maybe_windows(raw)
        if not p.is_file():
            print(f"[skip] 不是文件：{p}")
            continue
        files.append(p)
    if not files:
        print("没有可上传的文件。")
        return 1

    tasks = asyncio.run(_run(config, files, args.category))

    done = sum(1 for t in tasks if t.status == "done")
    failed = sum(1 for t in tasks if t.status == "failed")
    print(f"done. total={len(tasks)}, uploaded={done}, failed={failed}")
    return 0 if tasks and done == len(tasks) else 1


if __name__ == "__main__":
    raise SystemExit(main())
