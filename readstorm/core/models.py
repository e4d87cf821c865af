"""
统一数据模型 — 搜索结果 / 书架 / 章节 / 阅读状态 / 预取计划

所有书源规则、下载引擎、存储层共用这些结构。
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional


def now_ms() -> int:
    """当前时间戳 (毫秒)"""
    return int(time.time() * 1000)


# ══════════════════════════════════════════════════════════════
# 枚举
# ══════════════════════════════════════════════════════════════

class ChapterStatus(IntEnum):
    """章节下载状态 (数值即数据库存储值)"""
    PENDING = 0
    DOWNLOADING = 1
    DONE = 2
    FAILED = 3

    @classmethod
    def from_value(cls, value) -> "ChapterStatus":
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return cls.PENDING


class DownloadMode(IntEnum):
    FULL_BOOK = 1   # 整本
    RANGE = 2       # 指定区间
    LATEST_N = 3    # 最新 N 章


class DownloadErrorKind(IntEnum):
    NONE = 0
    NETWORK = 1
    RULE = 2
    PARSE = 3
    IO = 4
    CANCELLED = 5
    UNKNOWN = 99


# ══════════════════════════════════════════════════════════════
# 搜索
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SearchResult:
    """一条搜索结果 (不落库)"""
    title: str
    author: str
    source_id: int
    source_name: str = ""
    url: str = ""               # 书籍详情页 / 目录页 URL
    latest_chapter: str = ""
    updated_at: int = field(default_factory=now_ms)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def dedup_key(self) -> str:
        """跨书源去重键: 书名|作者 (忽略大小写)"""
        return f"{self.title.strip().lower()}|{self.author.strip().lower()}"

    def __repr__(self):
        return f"SearchResult('{self.title}', '{self.author}', source={self.source_id})"


@dataclass(frozen=True)
class TocEntry:
    """目录中的一项"""
    title: str
    url: str


@dataclass(frozen=True)
class BookSourceRule:
    """书源列表项 (规则目录的轻量视图)"""
    id: int
    name: str
    url: str
    search_supported: bool = False


# ══════════════════════════════════════════════════════════════
# 书架 / 章节
# ══════════════════════════════════════════════════════════════

@dataclass
class BookEntity:
    """书架上的一本书 (聚合根)"""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    title: str = ""
    author: str = ""
    source_id: int = 0
    toc_url: str = ""
    total_chapters: int = 0
    done_chapters: int = 0
    read_chapter_index: int = 0
    read_chapter_title: str = ""
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    read_at: int = 0
    cover_url: Optional[str] = None
    cover_image: Optional[str] = None
    cover_blob: Optional[bytes] = None
    cover_rule: Optional[str] = None

    @property
    def progress_percent(self) -> int:
        if self.total_chapters <= 0:
            return 0
        done = min(max(self.done_chapters, 0), self.total_chapters)
        return done * 100 // self.total_chapters

    @property
    def is_complete(self) -> bool:
        return self.total_chapters > 0 and self.done_chapters >= self.total_chapters

    def __repr__(self):
        return (f"BookEntity('{self.title}', '{self.author}', "
                f"{self.done_chapters}/{self.total_chapters})")


@dataclass
class ChapterEntity:
    """一个章节: (book_id, index_no) 唯一, index_no 入库后不再重排"""
    book_id: str
    index_no: int
    title: str
    status: ChapterStatus = ChapterStatus.PENDING
    source_id: int = 0
    source_url: str = ""
    content: Optional[str] = None   # 仅 DONE 时有值
    error: Optional[str] = None     # 仅 FAILED 时有值
    updated_at: int = field(default_factory=now_ms)
    id: int = 0

    def __repr__(self):
        return f"ChapterEntity({self.index_no}, '{self.title}', {self.status.name})"


@dataclass
class ReadingState:
    book_id: str
    chapter_index: int = 0
    page_index: int = 0
    anchor_text: Optional[str] = None
    layout_fingerprint: Optional[str] = None
    updated_at: int = field(default_factory=now_ms)


@dataclass
class ReadingBookmark:
    book_id: str
    chapter_index: int
    page_index: int
    chapter_title: str = ""
    preview_text: Optional[str] = None
    anchor_text: Optional[str] = None
    created_at: int = field(default_factory=now_ms)

    @property
    def display(self) -> str:
        return f"{self.chapter_title} · 第 {self.page_index + 1} 页"


# ══════════════════════════════════════════════════════════════
# 阅读预取 / 书源体检
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ReaderAutoDownloadPlan:
    """阅读器自动预取的规划结果"""
    should_queue_window: bool = False
    window_start_index: int = 0
    window_take_count: int = 0
    consecutive_done_after_anchor: int = 0
    has_gap: bool = False
    first_gap_index: int = -1


@dataclass(frozen=True)
class SourceHealthResult:
    source_id: int
    reachable: bool
    elapsed_ms: int = 0


@dataclass
class SourceDiagnosticResult:
    """单个书源的诊断报告"""
    source_id: int
    source_name: str = ""
    base_url: str = ""
    search_rule_found: bool = False
    toc_rule_found: bool = False
    chapter_rule_found: bool = False
    http_status_code: int = 0
    http_status_message: str = ""
    search_result_count: int = 0
    toc_item_count: int = 0
    toc_selector: str = ""
    chapter_content_selector: str = ""
    sample_chapter_text: str = ""
    summary: str = ""
    lines: List[str] = field(default_factory=list)

    @property
    def is_healthy(self) -> bool:
        return (self.search_rule_found and self.toc_rule_found
                and self.chapter_rule_found
                and 200 <= self.http_status_code < 400)
