"""
按书源串行化 — 同一书源同一时刻只有一个请求在进行, 不同书源互不阻塞
"""

import threading
from typing import Callable, Dict, Hashable, Optional, TypeVar

from .cancel import CancelToken

T = TypeVar("T")

# 等锁时检查取消的间隔 (秒)
ACQUIRE_SLICE = 0.1


class SourceSerializationQueue:

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def run(self, source_id: Hashable, fn: Callable[..., T], *args,
            cancel: Optional[CancelToken] = None, **kwargs) -> T:
        """
        持有 source_id 对应的锁执行 fn(*args, **kwargs)

        cancel 只作用于等锁阶段: 等待期间被取消 / 超时则抛出 CancelledError,
        不会传给 fn。同一线程内不可嵌套持有同一书源的锁。
        """
        lock = self._lock_for(source_id)
        if cancel is None:
            lock.acquire()
        else:
            cancel.raise_if_cancelled()
            while not lock.acquire(timeout=ACQUIRE_SLICE):
                cancel.raise_if_cancelled()
        try:
            return fn(*args, **kwargs)
        finally:
            lock.release()

    def lock_count(self) -> int:
        with self._guard:
            return len(self._locks)

    def clear(self):
        """丢弃所有锁; 仅在没有进行中的请求时调用"""
        with self._guard:
            self._locks.clear()
