from __future__ import annotations

import logging
import re
from typing import Any, Awaitable, Callable, Iterable, Optional


logger = logging.getLogger(__name__)


ATTACH_REF_RE = re.compile(r"attach://(?P<id>[0-9a-fA-F]{24})")


def extract_attachment_ids(text: str) -> list[str]:
    """按出现顺序返回去重后的附件 id。"""
    seen: dict[str, None] = {}
    for m in ATTACH_REF_RE.finditer(text or ""):
        seen.setdefault(m.group("id"), None)
    return list(seen)


class AttachmentUrlCache:
    """
    attach://<id> -> 可访问的附件地址。

    基址由 resolve_base 提供（桌面端一般是 DesktopGateway.ensure_ready）；
    地址只在显式 invalidate()/clear() 时失效，不做 TTL。
    """

    def __init__(self, resolve_base: Callable[[], Awaitable[str]]) -> None:
        self._resolve_base = resolve_base
        self._base: Optional[str] = None
        self._urls: dict[str, str] = {}

    async def url_for(self, attachment_id: str) -> str:
        cached = self._urls.get(attachment_id)
        if cached:
            return cached
        base = await self._base_url()
        url = f"{base}/attachments/{attachment_id}"
        self._urls[attachment_id] = url
        return url

    async def url_for_attachment(self, attachment: dict[str, Any]) -> Optional[str]:
        """complete 接口返回的附件记录 -> 地址；记录里没有 id 时返回 None。"""
        attachment_id = str(attachment.get("id") or attachment.get("_id") or "").strip()
        if not attachment_id:
            return None
        return await self.url_for(attachment_id)

    async def urls_for(self, attachment_ids: Iterable[str]) -> dict[str, str]:
        out: dict[str, str] = {}
        for attachment_id in attachment_ids:
            if attachment_id and attachment_id not in out:
                out[attachment_id] = await self.url_for(attachment_id)
        return out

    async def replace_attachment_urls(self, text: str) -> str:
        ids = extract_attachment_ids(text)
        if not ids:
            return text or ""
        urls = await self.urls_for(ids)
        return ATTACH_REF_RE.sub(lambda m: urls[m.group("id")], text)

    def invalidate(self, attachment_id: str) -> None:
        self._urls.pop(attachment_id, None)

    def clear(self) -> None:
        self._urls.clear()
        self._base = None

    async def _base_url(self) -> str:
        if self._base is None:
            base = (await self._resolve_base() or "").strip().rstrip("/")
            if not base:
                raise RuntimeError("附件服务地址为空")
            logger.debug("附件地址基址：%s", base)
            self._base = base
        return self._base
