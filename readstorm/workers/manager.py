"""
下载任务管理器 — 线程池执行下载任务, 提供暂停 / 恢复 / 取消 / 重试

- 同一本书 (书名|作者) 同一时刻只有一个任务在执行, 其余排队等待
- 每个任务持有自己的 CancelToken; 暂停 = 以 "pause" 原因取消, 恢复 = 重新排队
- 订阅者只收到不可变的 TaskSnapshot
- 阅读器预取: 按规划结果下发区间任务 (窗口 + 缺口补齐)
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional

from readstorm.core.cancel import CancelToken
from readstorm.core.download import DownloadCallbacks, DownloadEngine
from readstorm.core.models import DownloadMode, SearchResult
from readstorm.core.prefetch import ReaderAutoDownloadPlanner, ReaderAutoPrefetchPolicy
from readstorm.core.queue import SourceSerializationQueue
from readstorm.core.task import DownloadTask, DownloadTaskStatus, TaskSnapshot

logger = logging.getLogger(__name__)

Subscriber = Callable[[TaskSnapshot], None]


class DownloadManager:

    def __init__(
        self,
        engine: DownloadEngine,
        *,
        workers: Optional[int] = None,
        planner: Optional[ReaderAutoDownloadPlanner] = None,
        on_log: Optional[Callable[[str], None]] = None,
    ):
        self.engine = engine
        self.settings = engine.settings
        self.planner = planner or ReaderAutoDownloadPlanner(engine.repository)
        self._on_log = on_log or engine.callbacks.on_log
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, workers or self.settings.download_workers),
            thread_name_prefix="download",
        )
        self._book_queue = SourceSerializationQueue()
        self._lock = threading.RLock()
        self._tasks: Dict[str, DownloadTask] = {}
        self._tokens: Dict[str, CancelToken] = {}
        self._futures: Dict[str, Future] = {}
        self._subscribers: List[Subscriber] = []
        self._callbacks = DownloadCallbacks(on_log=self._log, on_snapshot=self._publish)

    # ── 订阅 ──

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """注册快照订阅者, 返回取消订阅函数"""
        with self._lock:
            self._subscribers.append(subscriber)

        def unsubscribe():
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)
        return unsubscribe

    def _publish(self, snapshot: TaskSnapshot):
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(snapshot)
            except Exception:
                logger.exception("[!] 任务快照订阅者异常 task=%s", snapshot.id)

    def _log(self, line: str):
        try:
            self._on_log(line)
        except Exception:
            logger.exception("[!] 日志回调异常")

    # ── 入队 / 执行 ──

    def enqueue(
        self,
        selected: SearchResult,
        mode: DownloadMode = DownloadMode.FULL_BOOK,
        *,
        range_start: Optional[int] = None,
        range_count: Optional[int] = None,
        is_auto_prefetch: bool = False,
        auto_prefetch_reason: str = "",
        book_id: Optional[str] = None,
    ) -> DownloadTask:
        task = DownloadTask(
            source_result=selected,
            mode=mode,
            range_start=range_start,
            range_count=range_count,
            is_auto_prefetch=is_auto_prefetch,
            auto_prefetch_reason=auto_prefetch_reason,
            book_id=book_id,
        )
        with self._lock:
            self._tasks[task.id] = task
        self._publish(task.snapshot())
        self._submit(task)
        logger.info("[*] 任务入队 %s 《%s》 mode=%s", task.id, task.book_title, mode.name)
        return task

    def _submit(self, task: DownloadTask):
        token = CancelToken()
        with self._lock:
            self._tokens[task.id] = token
            self._futures[task.id] = self._pool.submit(self._run, task, token)

    def _run(self, task: DownloadTask, token: CancelToken):
        key = task.source_result.dedup_key
        self._book_queue.run(key, self._run_exclusive, task, token)
        return task

    def _run_exclusive(self, task: DownloadTask, token: CancelToken):
        # 排队期间被取消 / 已被其他路径处理
        if task.status is not DownloadTaskStatus.QUEUED:
            return
        if token.cancelled:
            task.transition_to(DownloadTaskStatus.CANCELLED)
            self._publish(task.snapshot())
            return
        self.engine.run(task, task.source_result, token, callbacks=self._callbacks)

    # ── 查询 ──

    def get(self, task_id: str) -> Optional[DownloadTask]:
        with self._lock:
            return self._tasks.get(task_id)

    def snapshots(self) -> List[TaskSnapshot]:
        with self._lock:
            tasks = list(self._tasks.values())
        return [t.snapshot() for t in tasks]

    def wait(self, task_id: str, timeout: Optional[float] = None) -> Optional[TaskSnapshot]:
        """等待任务本轮执行结束, 返回最终快照"""
        with self._lock:
            future = self._futures.get(task_id)
            task = self._tasks.get(task_id)
        if future is None or task is None:
            return None
        if not future.cancelled():
            future.result(timeout=timeout)
        return task.snapshot()

    # ── 控制 ──

    def cancel(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            token = self._tokens.get(task_id)
            future = self._futures.get(task_id)
        if task is None or not task.can_cancel:
            return False
        if task.status is DownloadTaskStatus.PAUSED:
            task.transition_to(DownloadTaskStatus.CANCELLED)
            self._publish(task.snapshot())
            return True
        if token is not None:
            token.cancel("cancel")
        # 还没开始执行的任务直接取消
        if task.status is DownloadTaskStatus.QUEUED and future is not None and future.cancel():
            task.transition_to(DownloadTaskStatus.CANCELLED)
            self._publish(task.snapshot())
        return True

    def pause(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            token = self._tokens.get(task_id)
        if task is None or not task.can_pause or token is None:
            return False
        token.cancel("pause")
        return True

    def resume(self, task_id: str) -> bool:
        task = self.get(task_id)
        if task is None or not task.can_resume:
            return False
        task.reset_for_resume()
        self._publish(task.snapshot())
        self._submit(task)
        return True

    def retry(self, task_id: str) -> bool:
        task = self.get(task_id)
        if task is None or not task.can_retry:
            return False
        task.reset_for_retry()
        self._publish(task.snapshot())
        self._submit(task)
        return True

    def remove(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or not task.can_delete:
                return False
            del self._tasks[task_id]
            self._tokens.pop(task_id, None)
            self._futures.pop(task_id, None)
        return True

    def shutdown(self, wait: bool = True):
        with self._lock:
            tokens = list(self._tokens.values())
        for token in tokens:
            token.cancel("cancel")
        self._pool.shutdown(wait=wait)

    # ── 阅读预取 ──

    def request_prefetch(self, book_id: str, anchor_chapter_index: int,
                         trigger: str = "open") -> List[DownloadTask]:
        """
        根据阅读位置下发预取任务

        窗口任务: 规划 + 策略判定通过时, 从锚点起下载 batch 章;
        缺口任务: 锚点之前存在未完成章节时, 额外补齐缺口到锚点。
        同一本书已有进行中的预取任务时不重复下发。
        """
        book = self.engine.repository.get_book(book_id)
        if book is None:
            return []
        plan = self.planner.build_plan(
            book_id, anchor_chapter_index,
            self.settings.prefetch_batch_size, self.settings.prefetch_low_watermark)

        with self._lock:
            busy = any(
                t.book_id == book_id and t.is_auto_prefetch
                and t.status in (DownloadTaskStatus.QUEUED, DownloadTaskStatus.DOWNLOADING)
                for t in self._tasks.values()
            )
        if busy:
            logger.debug("[*] 预取跳过: 《%s》已有进行中的预取任务", book.title)
            return []

        rule = self.engine.catalog.load(book.source_id)
        selected = SearchResult(
            title=book.title,
            author=book.author,
            source_id=book.source_id,
            source_name=rule.name if rule else "",
            url=book.toc_url,
        )

        queued = []
        if ReaderAutoPrefetchPolicy.should_queue_window(plan, trigger):
            task = self.enqueue(
                selected, DownloadMode.RANGE,
                range_start=plan.window_start_index, range_count=plan.window_take_count,
                is_auto_prefetch=True, auto_prefetch_reason=trigger, book_id=book_id)
            queued.append(task)
        if plan.has_gap and plan.first_gap_index < plan.window_start_index:
            task = self.enqueue(
                selected, DownloadMode.RANGE,
                range_start=plan.first_gap_index,
                range_count=plan.window_start_index - plan.first_gap_index,
                is_auto_prefetch=True, auto_prefetch_reason="gap-fill", book_id=book_id)
            queued.append(task)

        if queued:
            logger.info("[*] 预取《%s》anchor=%d trigger=%s → %d 个任务",
                        book.title, anchor_chapter_index, trigger, len(queued))
        return queued
