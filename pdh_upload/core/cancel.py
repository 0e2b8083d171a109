from __future__ import annotations

from threading import Event
from typing import Literal, Optional


AbortReason = Literal["pause", "cancel"]


class UploadAborted(RuntimeError):
    """用户主动中断（暂停/取消），不是失败，不应展示为错误。"""

    reason: AbortReason = "cancel"


class UserPaused(UploadAborted):
    reason: AbortReason = "pause"

    def __init__(self, message: str = "已暂停") -> None:
        super().__init__(message)


class UserCanceled(UploadAborted):
    reason: AbortReason = "cancel"

    def __init__(self, message: str = "已取消") -> None:
        super().__init__(message)


class CancelToken:
    """
    单次网络调用的中断句柄。

    上传请求在工作线程里执行，所以用 threading.Event；每次调用都用新句柄，
    旧句柄被触发不会影响后续请求。
    """

    def __init__(self) -> None:
        self._event = Event()
        self._reason: Optional[AbortReason] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[AbortReason]:
        return self._reason

    def cancel(self, reason: AbortReason = "cancel") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if not self._event.is_set():
            return
        if self._reason == "pause":
            raise UserPaused()
        raise UserCanceled()
