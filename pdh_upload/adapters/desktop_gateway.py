from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol


logger = logging.getLogger(__name__)


class DesktopBridgeError(RuntimeError):
    pass


class GatewayUnavailableError(DesktopBridgeError):
    pass


class GatewayBridge(Protocol):
    """桌面壳暴露的本机网关命令；网关未启动时 gateway_url() 返回空或抛 DesktopBridgeError。"""

    async def gateway_url(self) -> Optional[str]: ...

    async def set_backend_url(self, url: str) -> None: ...

    async def set_token(self, token: Optional[str]) -> None: ...


class TaskRunnerBridge(Protocol):
    """
    桌面端原生上传任务（按本地路径断点续传）。
    listen() 注册事件回调，返回取消订阅函数；事件负载字段：
    taskId/status/bytesSent/totalBytes/uploadId/error/attachment。
    """

    async def start(self, task_id: str, path: str, category: str) -> None: ...

    async def pause(self, task_id: str) -> None: ...

    async def resume(self, task_id: str) -> None: ...

    async def cancel(self, task_id: str) -> None: ...

    def listen(self, handler: Callable[[dict[str, Any]], None]) -> Callable[[], None]: ...


class DesktopGateway:
    """
    确保本机网关就绪，并把后端地址/令牌同步给桌面壳（路径上传任务依赖它）。
    并发调用共享同一次轮询；轮询失败不缓存，下次调用会重新等待。
    """

    def __init__(
        self,
        bridge: GatewayBridge,
        *,
        server_url: str = "",
        token: Optional[str] = None,
        timeout_s: float = 15,
        poll_interval_ms: int = 100,
    ) -> None:
        self._bridge = bridge
        self._server_url = server_url
        self._token = token
        self._timeout_s = float(timeout_s)
        self._poll_interval_s = max(0.0, poll_interval_ms / 1000.0)
        self._url = ""
        self._inflight: Optional[asyncio.Future[str]] = None

    @property
    def url(self) -> str:
        return self._url

    async def ensure_ready(self) -> str:
        if self._url:
            await self._sync_config()
            return self._url

        inflight = self._inflight
        if inflight is None:
            inflight = self._inflight = asyncio.ensure_future(self._wait_for_gateway())
            inflight.add_done_callback(self._forget_failed_poll)
        # 某个调用方被取消不能连带取消共享的轮询
        return await asyncio.shield(inflight)

    def _forget_failed_poll(self, fut: asyncio.Future) -> None:
        if self._inflight is not fut:
            return
        if fut.cancelled() or fut.exception() is not None:
            self._inflight = None

    async def set_server_url(self, url: str) -> None:
        self._server_url = url
        if self._url:
            await self._sync_config()

    async def set_token(self, token: Optional[str]) -> None:
        self._token = token
        if self._url:
            await self._sync_config()

    async def _wait_for_gateway(self) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout_s
        while loop.time() < deadline:
            try:
                url = await self._bridge.gateway_url()
            except Exception as e:
                logger.debug("网关尚未就绪：%s", e)
                url = None
            if url:
                self._url = url
                logger.info("本地网关已就绪：%s", url)
                await self._sync_config()
                return url
            await asyncio.sleep(self._poll_interval_s)
        raise GatewayUnavailableError("本地网关未就绪，请稍后再试")

    async def _sync_config(self) -> None:
        if self._server_url:
            try:
                await self._bridge.set_backend_url(self._server_url)
            except DesktopBridgeError as e:
                logger.warning("同步后端地址到网关失败：%s", e)
        try:
            await self._bridge.set_token(self._token or None)
        except DesktopBridgeError as e:
            logger.warning("同步令牌到网关失败：%s", e)
