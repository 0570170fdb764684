from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from .errors import DeadlineExceeded


@dataclass(slots=True)
class RunContext:
    """
    一次批次执行的上下文：截止时间 + 取消信号。

    - deadline 使用 time.monotonic() 的时间轴
    - 网络调用前调用 check()，并用 timeout() 约束单次调用的超时
    - 进行中的调用通过 on_cancel() 注册中止回调，cancel() 时立即触发
    """

    deadline: float | None = None
    _cancelled: threading.Event = field(default_factory=threading.Event)
    _callbacks: list[Callable[[], None]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    @classmethod
    def with_timeout(cls, seconds: float | None) -> RunContext:
        if seconds is None or seconds <= 0:
            return cls()
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for cb in callbacks:
            cb()

    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        注册取消回调，返回注销函数。已取消时回调立即执行。
        """
        with self._lock:
            if not self._cancelled.is_set():
                self._callbacks.append(callback)
                registered = True
            else:
                registered = False
        if not registered:
            callback()

        def remove() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return remove

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def check(self) -> None:
        if self._cancelled.is_set():
            raise DeadlineExceeded("context cancelled")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise DeadlineExceeded("context deadline exceeded")

    def timeout(self, default: float) -> float:
        """返回本次调用可用的超时秒数（不超过剩余时间）。"""
        self.check()
        remaining = self.remaining()
        if remaining is None:
            return default
        return max(0.001, min(default, remaining))
