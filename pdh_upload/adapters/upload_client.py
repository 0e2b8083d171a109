from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import requests

from pdh_upload.config import AppConfig
from pdh_upload.core.cancel import CancelToken, UploadAborted


logger = logging.getLogger(__name__)


ProgressFn = Callable[[int], None]


class UploadError(RuntimeError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SessionInitError(UploadError):
    pass


class StatusProbeError(UploadError):
    pass


class ChunkTransferError(UploadError):
    pass


class CompletionError(UploadError):
    pass


@dataclass(frozen=True)
class SessionMeta:
    category: str
    original_name: str
    mime_type: str
    size: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "originalName": self.original_name,
            "mimeType": self.mime_type,
            "size": int(self.size),
        }


_STATUS_MESSAGES = {
    400: "请求参数错误",
    401: "未授权访问，请检查访问令牌",
    403: "禁止访问",
    404: "上传会话不存在或已过期",
    413: "文件大小超过限制",
    415: "不支持的文件类型",
    500: "服务器内部错误",
}

# 413/415 的服务端 message 往往是框架默认文案，统一用客户端文案
_FIXED_MESSAGE_STATUSES = (413, 415)


def _is_retryable_status(status: int) -> bool:
    return status in (408, 429, 500, 502, 503, 504)


def _server_message(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return ""
    if isinstance(data, dict):
        msg = data.get("message")
        if isinstance(msg, str):
            return msg.strip()
    return ""


def error_message_for(resp: requests.Response) -> str:
    status = resp.status_code
    if status in _FIXED_MESSAGE_STATUSES:
        return _STATUS_MESSAGES[status]
    msg = _server_message(resp)
    if msg:
        return msg
    if status in _STATUS_MESSAGES:
        return _STATUS_MESSAGES[status]
    if status >= 500:
        return _STATUS_MESSAGES[500]
    return f"请求失败 (HTTP {status})"


def parse_offset(value: Any) -> int:
    """服务端 bytesReceived 缺失/非法一律按 0 处理，且不会为负。"""
    if isinstance(value, bool) or value is None:
        return 0
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(num) or num < 0:
        return 0
    return int(num)


class _ChunkBody:
    """
    分片请求体：requests/urllib3 会按块调用 read()，每读一块回调一次进度，
    并检查中断句柄；暂停/取消时直接在发送过程中抛出，打断当前请求。
    """

    def __init__(
        self,
        data: bytes,
        *,
        block_size: int,
        cancel: Optional[CancelToken],
        on_progress: Optional[ProgressFn],
    ) -> None:
        self._data = data
        self._pos = 0
        self._block_size = max(1, int(block_size))
        self._cancel = cancel
        self._on_progress = on_progress

    def __len__(self) -> int:
        return len(self._data)

    def read(self, size: int = -1) -> bytes:
        if self._cancel is not None:
            self._cancel.raise_if_cancelled()
        if size is None or size < 0:
            size = self._block_size
        n = min(size, self._block_size)
        piece = self._data[self._pos : self._pos + n]
        self._pos += len(piece)
        if piece and self._on_progress is not None:
            self._on_progress(self._pos)
        return piece


class ResumableUploadClient:
    """
    断点续传协议客户端（同步，基于 requests.Session）：
    init -> status -> chunk* -> complete，取消时 abort。
    所有方法都接受 cancel 句柄；已被触发的句柄不会再发出请求。
    """

    INIT_PATH = "/attachments/uploads"
    STATUS_PATH = "/attachments/uploads/{upload_id}"
    CHUNK_PATH = "/attachments/uploads/{upload_id}/chunk"
    COMPLETE_PATH = "/attachments/uploads/{upload_id}/complete"
    ABORT_PATH = "/attachments/uploads/{upload_id}/abort"

    def __init__(self, config: AppConfig, session: Optional[requests.Session] = None) -> None:
        self._config = config
        self._session = session or requests.Session()
        # 是否读取环境变量/系统代理配置（HTTP(S)_PROXY/NO_PROXY 等）
        self._session.trust_env = bool(config.use_system_proxy)

    def close(self) -> None:
        self._session.close()

    def init_session(self, meta: SessionMeta, *, cancel: Optional[CancelToken] = None) -> str:
        _check(cancel)
        resp = self._request(
            "POST",
            self.INIT_PATH,
            SessionInitError,
            json=meta.to_payload(),
        )
        data = self._data(resp, SessionInitError)
        upload_id = data.get("uploadId") if isinstance(data, dict) else None
        if not upload_id:
            raise SessionInitError("初始化上传会话失败", status_code=resp.status_code)
        logger.info("创建上传会话 %s：%s（%d 字节）", upload_id, meta.original_name, meta.size)
        return str(upload_id)

    def get_status(self, upload_id: str, *, cancel: Optional[CancelToken] = None) -> int:
        path = self.STATUS_PATH.format(upload_id=upload_id)
        attempt = 0
        while True:
            attempt += 1
            _check(cancel)
            try:
                resp = self._session.get(self._url(path), headers=self._headers(), timeout=self._timeout())
            except requests.RequestException as e:
                if attempt <= self._config.max_retries:
                    self._sleep_backoff(attempt, cancel)
                    continue
                raise StatusProbeError("网络连接失败，请检查网络设置") from e

            if resp.status_code >= 400:
                if _is_retryable_status(resp.status_code) and attempt <= self._config.max_retries:
                    self._sleep_backoff(attempt, cancel)
                    continue
                raise StatusProbeError(error_message_for(resp), status_code=resp.status_code)

            data = self._data(resp, StatusProbeError)
            received = data.get("bytesReceived") if isinstance(data, dict) else None
            return parse_offset(received)

    def upload_chunk(
        self,
        upload_id: str,
        chunk: bytes,
        offset: int,
        *,
        on_progress: Optional[ProgressFn] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        _check(cancel)
        body = _ChunkBody(
            chunk,
            block_size=self._config.progress_block_bytes,
            cancel=cancel,
            on_progress=on_progress,
        )
        headers = self._headers(content_type="application/octet-stream")
        try:
            resp = self._session.post(
                self._url(self.CHUNK_PATH.format(upload_id=upload_id)),
                params={"offset": int(offset)},
                data=body,
                headers=headers,
                timeout=self._timeout(),
            )
        except UploadAborted:
            raise
        except requests.RequestException as e:
            # 连接被我们主动打断时，底层可能包装成连接错误；以中断句柄为准
            _check(cancel)
            raise ChunkTransferError("网络连接失败，请检查网络设置") from e
        if resp.status_code >= 400:
            raise ChunkTransferError(error_message_for(resp), status_code=resp.status_code)

    def complete_session(self, upload_id: str, *, cancel: Optional[CancelToken] = None) -> dict[str, Any]:
        _check(cancel)
        resp = self._request("POST", self.COMPLETE_PATH.format(upload_id=upload_id), CompletionError)
        data = self._data(resp, CompletionError)
        if not isinstance(data, dict):
            raise CompletionError("完成上传失败：响应缺少附件信息", status_code=resp.status_code)
        return data

    def abort_session(self, upload_id: str) -> None:
        # 尽力通知后端清理会话；失败不影响客户端状态
        try:
            self._request("POST", self.ABORT_PATH.format(upload_id=upload_id), UploadError)
        except UploadError as e:
            logger.warning("取消上传会话 %s 失败（忽略）：%s", upload_id, e)

    def _request(
        self,
        method: str,
        path: str,
        error_cls: type[UploadError],
        *,
        json: Optional[dict[str, Any]] = None,
    ) -> requests.Response:
        try:
            resp = self._session.request(
                method,
                self._url(path),
                json=json,
                headers=self._headers(content_type="application/json"),
                timeout=self._timeout(),
            )
        except requests.RequestException as e:
            raise error_cls("网络连接失败，请检查网络设置") from e
        if resp.status_code >= 400:
            raise error_cls(error_message_for(resp), status_code=resp.status_code)
        return resp

    def _data(self, resp: requests.Response, error_cls: type[UploadError]) -> Any:
        try:
            payload = resp.json()
        except ValueError as e:
            raise error_cls("响应不是 JSON", status_code=resp.status_code) from e
        if not isinstance(payload, dict):
            raise error_cls("响应格式错误", status_code=resp.status_code)
        return payload.get("data")

    def _url(self, path: str) -> str:
        base = (self._config.server_url or "").rstrip("/")
        if not base:
            raise UploadError("未配置 SERVER_URL")
        return base + path

    def _headers(self, *, content_type: Optional[str] = None) -> dict[str, str]:
        headers: dict[str, str] = {}
        if content_type:
            headers["Content-Type"] = content_type
        if self._config.token:
            headers["Authorization"] = f"Bearer {self._config.token}"
        if self._config.attachment_token:
            headers["X-Attachment-Token"] = self._config.attachment_token
        return headers

    def _timeout(self) -> tuple[int, int]:
        return (self._config.connect_timeout_s, self._config.read_timeout_s)

    def _sleep_backoff(self, attempt: int, cancel: Optional[CancelToken]) -> None:
        base = 2 ** max(0, attempt - 1)
        jitter = random.uniform(0.0, 0.3)
        delay = min(30.0, base + jitter)
        logger.info("查询上传状态失败，%.1fs 后第 %d 次重试", delay, attempt)
        if cancel is not None:
            # 暂停/取消可以提前结束等待
            if cancel.wait(delay):
                cancel.raise_if_cancelled()
            return
        time.sleep(delay)


def _check(cancel: Optional[CancelToken]) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()


class UploadTransport(Protocol):
    """状态机依赖的异步传输接口；每个方法都是一个 await 挂起点。"""

    async def init_session(self, meta: SessionMeta, *, cancel: CancelToken) -> str: ...

    async def get_status(self, upload_id: str, *, cancel: CancelToken) -> int: ...

    async def upload_chunk(
        self,
        upload_id: str,
        chunk: bytes,
        offset: int,
        *,
        on_progress: ProgressFn,
        cancel: CancelToken,
    ) -> None: ...

    async def complete_session(self, upload_id: str, *, cancel: CancelToken) -> dict[str, Any]: ...

    async def abort_session(self, upload_id: str) -> None: ...


class AsyncUploadTransport:
    """把同步客户端放到线程里执行；进度回调切回事件循环线程。"""

    def __init__(self, client: ResumableUploadClient) -> None:
        self._client = client

    async def init_session(self, meta: SessionMeta, *, cancel: CancelToken) -> str:
        return await asyncio.to_thread(self._client.init_session, meta, cancel=cancel)

    async def get_status(self, upload_id: str, *, cancel: CancelToken) -> int:
        return await asyncio.to_thread(self._client.get_status, upload_id, cancel=cancel)

    async def upload_chunk(
        self,
        upload_id: str,
        chunk: bytes,
        offset: int,
        *,
        on_progress: ProgressFn,
        cancel: CancelToken,
    ) -> None:
        loop = asyncio.get_running_loop()

        def progress(loaded: int) -> None:
            loop.call_soon_threadsafe(on_progress, loaded)

        await asyncio.to_thread(
            self._client.upload_chunk,
            upload_id,
            chunk,
            offset,
            on_progress=progress,
            cancel=cancel,
        )

    async def complete_session(self, upload_id: str, *, cancel: CancelToken) -> dict[str, Any]:
        return await asyncio.to_thread(self._client.complete_session, upload_id, cancel=cancel)

    async def abort_session(self, upload_id: str) -> None:
        await asyncio.to_thread(self._client.abort_session, upload_id)
