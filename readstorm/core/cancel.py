"""
协作式取消令牌

基于 threading.Event, 支持:
- 父子联动: 父令牌取消 → 所有子令牌视为已取消
- 截止时间: linked(timeout) 创建带期限的子令牌 (单书源超时)
- 原因: cancel / pause / timeout, 下载引擎据此决定进入 Cancelled 还是 Paused
"""

import threading
import time
from typing import Optional

from .errors import CancelledError


class CancelToken:

    def __init__(self, parent: Optional["CancelToken"] = None,
                 timeout: Optional[float] = None):
        self._event = threading.Event()
        self._parent = parent
        self._deadline = time.monotonic() + timeout if timeout else None
        self._reason = ""

    # ── 触发 ──

    def cancel(self, reason: str = "cancel"):
        if not self._event.is_set():
            self._reason = reason
        self._event.set()

    def linked(self, timeout: Optional[float] = None) -> "CancelToken":
        """创建子令牌; timeout 从此刻开始计时"""
        return CancelToken(parent=self, timeout=timeout)

    # ── 查询 ──

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str:
        if self._event.is_set():
            return self._reason
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return "timeout"
        if self._parent is not None:
            return self._parent.reason
        return ""

    def remaining(self) -> Optional[float]:
        """距截止时间的秒数 (含父令牌), 无期限返回 None"""
        values = []
        if self._deadline is not None:
            values.append(self._deadline - time.monotonic())
        if self._parent is not None:
            parent_left = self._parent.remaining()
            if parent_left is not None:
                values.append(parent_left)
        return min(values) if values else None

    def raise_if_cancelled(self):
        if self.cancelled:
            reason = self.reason or "cancel"
            message = "请求超时" if reason == "timeout" else "任务已取消"
            raise CancelledError(message, reason=reason)

    def wait(self, seconds: float) -> bool:
        """
        可中断等待, 返回 True 表示等待期间被取消

        按 0.1s 切片轮询, 使父令牌的取消和截止时间都能及时生效。
        """
        end = time.monotonic() + max(seconds, 0)
        while True:
            if self.cancelled:
                return True
            left = end - time.monotonic()
            if left <= 0:
                return False
            self._event.wait(min(0.1, left))

    def __repr__(self):
        state = f"cancelled:{self.reason}" if self.cancelled else "active"
        return f"CancelToken({state})"
