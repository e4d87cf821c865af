"""
下载任务状态机

任务本身由下载引擎线程修改, 对外只发布不可变的 TaskSnapshot。
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from .errors import IllegalTransitionError
from .models import DownloadErrorKind, DownloadMode, SearchResult


class DownloadTaskStatus(Enum):
    QUEUED = "Queued"
    DOWNLOADING = "Downloading"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    PAUSED = "Paused"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[DownloadTaskStatus] = frozenset({
    DownloadTaskStatus.SUCCEEDED,
    DownloadTaskStatus.FAILED,
    DownloadTaskStatus.CANCELLED,
})

ALLOWED_TRANSITIONS: Dict[DownloadTaskStatus, FrozenSet[DownloadTaskStatus]] = {
    DownloadTaskStatus.QUEUED: frozenset({
        DownloadTaskStatus.DOWNLOADING,
        DownloadTaskStatus.CANCELLED,
        DownloadTaskStatus.FAILED,
    }),
    DownloadTaskStatus.DOWNLOADING: frozenset({
        DownloadTaskStatus.SUCCEEDED,
        DownloadTaskStatus.FAILED,
        DownloadTaskStatus.CANCELLED,
        DownloadTaskStatus.PAUSED,
    }),
    DownloadTaskStatus.PAUSED: frozenset({
        DownloadTaskStatus.DOWNLOADING,
        DownloadTaskStatus.CANCELLED,
    }),
    DownloadTaskStatus.SUCCEEDED: frozenset(),
    DownloadTaskStatus.FAILED: frozenset(),
    DownloadTaskStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class TaskSnapshot:
    """某一时刻的任务状态副本, 订阅者只能拿到它"""
    id: str
    book_id: Optional[str]
    book_title: str
    author: str
    mode: DownloadMode
    status: DownloadTaskStatus
    progress_percent: int
    current_chapter_index: int
    total_chapter_count: int
    current_chapter_title: str
    error: Optional[str]
    error_kind: DownloadErrorKind
    retry_count: int
    is_auto_prefetch: bool
    auto_prefetch_reason: str
    enqueued_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    output_path: Optional[str]
    history: Tuple[Tuple[DownloadTaskStatus, datetime], ...] = ()

    @property
    def chapter_progress_display(self) -> str:
        if self.total_chapter_count <= 0:
            return "-"
        text = f"{self.current_chapter_index}/{self.total_chapter_count}"
        if self.current_chapter_title:
            text += f" {self.current_chapter_title}"
        return text


@dataclass
class DownloadTask:
    """一次下载请求 (整本 / 区间 / 最新 N 章)"""
    source_result: SearchResult
    mode: DownloadMode = DownloadMode.FULL_BOOK
    range_start: Optional[int] = None
    range_count: Optional[int] = None
    is_auto_prefetch: bool = False
    auto_prefetch_reason: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    book_id: Optional[str] = None
    enqueued_at: datetime = field(default_factory=datetime.now)
    output_path: Optional[str] = None

    progress_percent: int = field(default=0, init=False)
    current_chapter_index: int = field(default=0, init=False)
    total_chapter_count: int = field(default=0, init=False)
    current_chapter_title: str = field(default="", init=False)
    error: Optional[str] = field(default=None, init=False)
    error_kind: DownloadErrorKind = field(default=DownloadErrorKind.NONE, init=False)
    retry_count: int = field(default=0, init=False)
    started_at: Optional[datetime] = field(default=None, init=False)
    completed_at: Optional[datetime] = field(default=None, init=False)
    _status: DownloadTaskStatus = field(default=DownloadTaskStatus.QUEUED, init=False, repr=False)
    _history: List[Tuple[DownloadTaskStatus, datetime]] = field(default_factory=list, init=False, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False, compare=False)

    def __post_init__(self):
        self._history.append((self._status, self.enqueued_at))

    @property
    def book_title(self) -> str:
        return self.source_result.title

    @property
    def author(self) -> str:
        return self.source_result.author

    @property
    def status(self) -> DownloadTaskStatus:
        return self._status

    @property
    def history(self) -> List[Tuple[DownloadTaskStatus, datetime]]:
        return list(self._history)

    # ── 状态迁移 ──

    def transition_to(self, target: DownloadTaskStatus):
        with self._lock:
            if target not in ALLOWED_TRANSITIONS[self._status]:
                raise IllegalTransitionError(self._status, target)
            now = datetime.now()
            self._status = target
            self._history.append((target, now))
            if target is DownloadTaskStatus.DOWNLOADING and self.started_at is None:
                self.started_at = now
            if target.is_terminal:
                self.completed_at = now
            if target is DownloadTaskStatus.SUCCEEDED:
                self.progress_percent = 100

    def reset_for_retry(self):
        """Failed / Cancelled → Queued, 重试计数 +1"""
        with self._lock:
            if self._status not in (DownloadTaskStatus.FAILED, DownloadTaskStatus.CANCELLED):
                raise IllegalTransitionError(self._status, DownloadTaskStatus.QUEUED)
            self.retry_count += 1
            self.error = None
            self.error_kind = DownloadErrorKind.NONE
            self.progress_percent = 0
            self.completed_at = None
            self._status = DownloadTaskStatus.QUEUED
            self._history.append((self._status, datetime.now()))

    def reset_for_resume(self):
        """Paused → Queued, 保留进度"""
        with self._lock:
            if self._status is not DownloadTaskStatus.PAUSED:
                raise IllegalTransitionError(self._status, DownloadTaskStatus.QUEUED)
            self._status = DownloadTaskStatus.QUEUED
            self._history.append((self._status, datetime.now()))

    # ── 进度 / 错误 ──

    def update_progress(self, percent: int):
        self.progress_percent = min(max(int(percent), 0), 100)

    def update_chapter_progress(self, current: int, total: int, title: str = ""):
        total = max(int(total), 0)
        self.total_chapter_count = total
        self.current_chapter_index = min(max(int(current), 0), total)
        self.current_chapter_title = title or ""

    def set_error(self, kind: DownloadErrorKind, message: str):
        self.error_kind = kind
        self.error = message

    @property
    def chapter_progress_display(self) -> str:
        return self.snapshot().chapter_progress_display

    # ── 能力 ──

    @property
    def can_retry(self) -> bool:
        return self._status in (DownloadTaskStatus.FAILED, DownloadTaskStatus.CANCELLED)

    @property
    def can_cancel(self) -> bool:
        return self._status in (DownloadTaskStatus.QUEUED, DownloadTaskStatus.DOWNLOADING,
                                DownloadTaskStatus.PAUSED)

    @property
    def can_pause(self) -> bool:
        return self._status is DownloadTaskStatus.DOWNLOADING

    @property
    def can_resume(self) -> bool:
        return self._status is DownloadTaskStatus.PAUSED

    @property
    def can_delete(self) -> bool:
        return self._status.is_terminal

    # ── 快照 ──

    def snapshot(self) -> TaskSnapshot:
        with self._lock:
            return TaskSnapshot(
                id=self.id,
                book_id=self.book_id,
                book_title=self.book_title,
                author=self.author,
                mode=self.mode,
                status=self._status,
                progress_percent=self.progress_percent,
                current_chapter_index=self.current_chapter_index,
                total_chapter_count=self.total_chapter_count,
                current_chapter_title=self.current_chapter_title,
                error=self.error,
                error_kind=self.error_kind,
                retry_count=self.retry_count,
                is_auto_prefetch=self.is_auto_prefetch,
                auto_prefetch_reason=self.auto_prefetch_reason,
                enqueued_at=self.enqueued_at,
                started_at=self.started_at,
                completed_at=self.completed_at,
                output_path=self.output_path,
                history=tuple(self._history),
            )
