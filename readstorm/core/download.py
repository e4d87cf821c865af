"""
下载引擎 — 按书源规则抓取目录和正文, 逐章落库

职责:
- 抓取目录 (含分页), 建立 / 复用书架记录
- 与已有章节比对: Done 跳过, 其余重置为 Pending
- 按 index_no 顺序逐章抓取, 单章失败记录后继续
- 每章结束后发布 TaskSnapshot, 支持暂停 / 取消
- 检查新章节、单章换源、导出 TXT / EPUB

CLI 和 DownloadManager 都使用这个引擎, 只需传入不同的回调函数即可。
"""

import functools
import logging
import random
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .cancel import CancelToken
from .config import AppSettings
from .errors import CancelledError, IllegalTransitionError, ParseError, RuleError, classify
from .export import export_book
from .models import (
    BookEntity, ChapterEntity, ChapterStatus, DownloadErrorKind, DownloadMode,
    SearchResult, TocEntry,
)
from .network import HttpGateway
from .queue import SourceSerializationQueue
from .task import DownloadTask, DownloadTaskStatus, TaskSnapshot
from .utils import title_similarity, trace_timestamp
from readstorm.sources.extractor import (
    CHAPTER_MAX_EXTRA_PAGES, TOC_MAX_EXTRA_PAGES, extract_chapter_text,
    extract_next_pages, finalize_toc, parse_toc,
)
from readstorm.sources.rule import build_toc_url

logger = logging.getLogger(__name__)

MAX_ERROR_TRACE_LINES = 18
TITLE_MATCH_THRESHOLD = 0.5


# ══════════════════════════════════════════════════════════════
# 回调接口
# ══════════════════════════════════════════════════════════════

@dataclass
class DownloadCallbacks:
    """
    下载过程中的回调函数集合

    on_log: 带时间戳的诊断行 (CLI 绑定到 print, 管理器转发给订阅者)
    on_snapshot: 任务状态变化后的不可变快照
    """
    on_log: Callable[[str], None] = lambda msg: None
    on_snapshot: Callable[[TaskSnapshot], None] = lambda snap: None


def _with_diagnostics(message: str, diagnostics: List[str]) -> str:
    if not diagnostics:
        return message
    tail = "\n".join(diagnostics[-MAX_ERROR_TRACE_LINES:])
    return f"{message}\n[诊断片段]\n{tail}"


# ══════════════════════════════════════════════════════════════
# 下载引擎
# ══════════════════════════════════════════════════════════════

class DownloadEngine:

    def __init__(
        self,
        catalog,
        gateway: HttpGateway,
        repository,
        callbacks: Optional[DownloadCallbacks] = None,
        settings: Optional[AppSettings] = None,
        *,
        source_queue: Optional[SourceSerializationQueue] = None,
        search_engine=None,
    ):
        self.catalog = catalog
        self.gateway = gateway
        self.repository = repository
        self.callbacks = callbacks or DownloadCallbacks()
        self.settings = settings or AppSettings()
        self.source_queue = source_queue if source_queue is not None else SourceSerializationQueue()
        self.search_engine = search_engine

    # ── 入口 ──

    def run(self, task: DownloadTask, selected: Optional[SearchResult] = None,
            cancel: Optional[CancelToken] = None,
            callbacks: Optional[DownloadCallbacks] = None) -> DownloadTask:
        """
        执行一个下载任务, 结束时任务处于 Succeeded / Failed / Cancelled / Paused

        除非状态机迁移非法, 不会向调用方抛出异常。
        """
        selected = selected or task.source_result
        cancel = cancel or CancelToken()
        callbacks = callbacks or self.callbacks
        diagnostics: List[str] = []

        def trace(message: str):
            line = f"[{trace_timestamp()}] {message}"
            diagnostics.append(line)
            logger.info(line)
            callbacks.on_log(line)

        def publish():
            callbacks.on_snapshot(task.snapshot())

        try:
            trace(f"[*] [download-start] task={task.id} title={selected.title} "
                  f"author={selected.author} source={selected.source_id} mode={task.mode.name}")
            task.transition_to(DownloadTaskStatus.DOWNLOADING)
            publish()
            cancel.raise_if_cancelled()

            if not selected.url.strip():
                raise RuleError("当前搜索结果未包含书籍详情 URL, 无法下载。")
            rule = self.catalog.load(selected.source_id)
            if rule is None:
                raise RuleError(f"未找到书源 {selected.source_id} 对应规则文件。")
            if not rule.toc_supported:
                raise RuleError(f"书源 {selected.source_id} 缺少目录规则。")
            if not rule.chapter_supported:
                raise RuleError(f"书源 {selected.source_id} 缺少正文规则。")

            toc = self.fetch_toc(rule, selected.url, cancel, trace)
            if not toc:
                raise ParseError("目录解析为空, 请检查书源规则。")

            book = self._ensure_book(selected, len(toc))
            task.book_id = book.id
            self._sync_chapters(book, toc, selected.source_id, trace)

            work = self._select_work(task, book.id, len(toc))
            trace(f"[*] [work] book={book.id} total={len(toc)} todo={len(work)}")
            self._download_chapters(task, rule, book, work, len(toc), cancel, trace, publish)

            task.transition_to(DownloadTaskStatus.SUCCEEDED)
            trace(f"[DONE] [download-end] task={task.id} "
                  f"done={book.done_chapters}/{book.total_chapters}")

        except CancelledError as e:
            if e.reason == "pause":
                task.transition_to(DownloadTaskStatus.PAUSED)
                trace(f"[!] [download-paused] task={task.id}")
            else:
                task.transition_to(DownloadTaskStatus.CANCELLED)
                task.set_error(DownloadErrorKind.CANCELLED, str(e))
                trace(f"[!] [download-cancelled] task={task.id}")
        except IllegalTransitionError:
            raise
        except Exception as e:
            kind = classify(e)
            message = str(e) or type(e).__name__
            trace(f"[FAIL] [download-failed] task={task.id} kind={kind.name} error={message}")
            if task.status in (DownloadTaskStatus.QUEUED, DownloadTaskStatus.DOWNLOADING):
                task.transition_to(DownloadTaskStatus.FAILED)
            task.set_error(kind, _with_diagnostics(message, diagnostics))
            if kind is DownloadErrorKind.UNKNOWN:
                logger.exception("[FAIL] 下载任务异常 task=%s", task.id)
        publish()
        return task

    # ── 目录 ──

    def fetch_toc(self, rule, book_url: str, cancel: Optional[CancelToken] = None,
                  trace: Optional[Callable[[str], None]] = None) -> List[TocEntry]:
        trace = trace or logger.debug
        toc_url = build_toc_url(rule, book_url)
        trace(f"[*] [toc-fetch] url={toc_url}")
        html = self._fetch_text(rule, toc_url, cancel)
        if not html.strip():
            trace(f"[!] [toc-empty-html] url={toc_url}")
            return []

        entries = parse_toc(rule.toc, html, toc_url)
        if rule.toc.pagination and rule.toc.next_page:
            next_urls = extract_next_pages(html, toc_url, rule.toc.next_page, TOC_MAX_EXTRA_PAGES)
            trace(f"[*] [toc-pagination] nextPages={len(next_urls)}")
            for next_url in next_urls:
                page = self._fetch_text(rule, next_url, cancel)
                if page.strip():
                    entries.extend(parse_toc(rule.toc, page, next_url))

        toc = finalize_toc(rule.toc, entries)
        trace(f"[OK] [toc-parsed] items={len(toc)} desc={rule.toc.desc}")
        return toc

    def _fetch_text(self, rule, url: str, cancel: Optional[CancelToken]) -> str:
        """在书源锁内抓取一个页面"""
        return self.source_queue.run(
            rule.id, functools.partial(self.gateway.get_text, url, cancel=cancel), cancel=cancel)

    # ── 正文 ──

    def fetch_chapter_content(self, rule, chapter_url: str,
                              cancel: Optional[CancelToken] = None,
                              trace: Optional[Callable[[str], None]] = None) -> str:
        trace = trace or logger.debug
        html = self.gateway.get_text(chapter_url, cancel=cancel)
        if not html.strip():
            raise ParseError(f"章节页面为空: {chapter_url}")

        pages = [html]
        if rule.chapter.pagination and rule.chapter.next_page:
            next_urls = extract_next_pages(html, chapter_url, rule.chapter.next_page,
                                           CHAPTER_MAX_EXTRA_PAGES)
            trace(f"[*] [chapter-pagination] nextPages={len(next_urls)} url={chapter_url}")
            for next_url in next_urls:
                page = self.gateway.get_text(next_url, cancel=cancel)
                if page.strip():
                    pages.append(page)

        parts = []
        for page in pages:
            try:
                parts.append(extract_chapter_text(rule.chapter, page))
            except ParseError:
                # 续页没有正文时跳过, 首页为空由下方统一判断
                continue
        content = "\n".join(parts).strip()
        if not content:
            raise ParseError("正文内容为空")
        return content

    # ── 书架 / 章节同步 ──

    def _ensure_book(self, selected: SearchResult, total: int) -> BookEntity:
        book = self.repository.find_book(selected.title, selected.author)
        if book is None:
            book = BookEntity(title=selected.title, author=selected.author)
        book.source_id = selected.source_id
        book.toc_url = selected.url
        book.total_chapters = total
        book.done_chapters = self.repository.count_done_chapters(book.id)
        self.repository.upsert_book(book)
        return book

    def _sync_chapters(self, book: BookEntity, toc: List[TocEntry], source_id: int, trace):
        existing = {c.index_no: c for c in self.repository.get_chapters(book.id)}
        rows = []
        skipped = 0
        for index, entry in enumerate(toc):
            current = existing.get(index)
            if current is not None and current.status == ChapterStatus.DONE:
                skipped += 1
                continue
            rows.append(ChapterEntity(
                book_id=book.id, index_no=index, title=entry.title,
                source_id=source_id, source_url=entry.url,
            ))
        self.repository.replace_chapters(book.id, rows)
        trace(f"[*] [chapters-sync] book={book.id} done={skipped} pending={len(rows)}")

    def _select_work(self, task: DownloadTask, book_id: str, total: int) -> List[ChapterEntity]:
        todo = [c for c in self.repository.get_chapters(book_id)
                if c.status != ChapterStatus.DONE and c.index_no < total]
        if task.mode is DownloadMode.RANGE:
            start = max(0, task.range_start or 0)
            count = task.range_count if task.range_count and task.range_count > 0 else total
            end = start + count
            return [c for c in todo if start <= c.index_no < end]
        if task.mode is DownloadMode.LATEST_N:
            n = task.range_count if task.range_count and task.range_count > 0 else self.settings.latest_n
            threshold = max(0, total - n)
            return [c for c in todo if c.index_no >= threshold]
        return todo

    # ── 逐章下载 ──

    def _download_chapters(self, task, rule, book, work, total, cancel, trace, publish):
        for position, chapter in enumerate(work):
            cancel.raise_if_cancelled()
            trace(f"[*] [chapter-fetch-start] index={chapter.index_no + 1}/{total} "
                  f"title={chapter.title} url={chapter.source_url}")
            self.repository.update_chapter(book.id, chapter.index_no, ChapterStatus.DOWNLOADING)
            try:
                content = self.source_queue.run(
                    rule.id, self.fetch_chapter_content, rule, chapter.source_url, cancel, trace,
                    cancel=cancel)
            except CancelledError:
                self.repository.update_chapter(book.id, chapter.index_no, ChapterStatus.PENDING)
                raise
            except Exception as e:
                message = str(e) or type(e).__name__
                self.repository.update_chapter(
                    book.id, chapter.index_no, ChapterStatus.FAILED, error=message)
                trace(f"[FAIL] [chapter-failed] index={chapter.index_no + 1} "
                      f"kind={classify(e).name} error={message}")
            else:
                self.repository.update_chapter(
                    book.id, chapter.index_no, ChapterStatus.DONE, content=content)
                trace(f"[OK] [chapter-done] index={chapter.index_no + 1} chars={len(content)}")

            done = self.repository.count_done_chapters(book.id)
            book.done_chapters = done
            self.repository.upsert_book(book)
            task.update_progress(done * 100 // total if total else 0)
            task.update_chapter_progress(done, total, chapter.title)
            publish()

            if position < len(work) - 1:
                self._interval_delay(cancel)

    def _interval_delay(self, cancel: CancelToken):
        low = max(0, self.settings.min_interval_ms)
        high = max(low, self.settings.max_interval_ms)
        if high <= 0:
            return
        if cancel.wait(random.uniform(low, high) / 1000.0):
            cancel.raise_if_cancelled()

    # ══════════════════════════════════════════════════════════
    # 检查更新 / 换源 / 导出
    # ══════════════════════════════════════════════════════════

    def check_new_chapters(self, book: BookEntity, cancel: Optional[CancelToken] = None) -> int:
        """重新抓取目录, 把超出已有章节数的部分追加为 Pending, 返回新增章节数"""
        rule = self.catalog.load(book.source_id)
        if rule is None or not rule.toc_supported or not book.toc_url:
            return 0
        toc = self.fetch_toc(rule, book.toc_url, cancel)
        existing = self.repository.get_chapters(book.id)
        if len(toc) <= len(existing):
            return 0

        start = len(existing)
        rows = [
            ChapterEntity(book_id=book.id, index_no=start + i, title=entry.title,
                          source_id=book.source_id, source_url=entry.url)
            for i, entry in enumerate(toc[start:])
        ]
        self.repository.insert_chapters(book.id, rows)
        book.total_chapters = len(toc)
        book.done_chapters = self.repository.count_done_chapters(book.id)
        self.repository.upsert_book(book)
        logger.info("[OK] 《%s》新增 %d 章", book.title, len(rows))
        return len(rows)

    def fetch_chapter_from_source(self, book: BookEntity, chapter_title: str, source_id: int,
                                  cancel: Optional[CancelToken] = None) -> Tuple[bool, str, str]:
        """
        从另一个书源获取单章正文

        Returns:
            (是否成功, 正文, 说明)
        """
        rule = self.catalog.load(source_id)
        if rule is None:
            return False, "", f"书源 {source_id} 的规则文件不存在"
        if self.search_engine is None:
            return False, "", "换源功能不可用 (未注入搜索服务)"

        results = self.search_engine.search(book.title, source_id, cancel)
        if not results:
            return False, "", f"书源 {source_id} 未搜到《{book.title}》"

        def same(a, b):
            return (a or "").strip().lower() == (b or "").strip().lower()

        matched = next((r for r in results if same(r.title, book.title) and same(r.author, book.author)), None)
        if matched is None:
            matched = next((r for r in results if same(r.title, book.title)), None)
        if matched is None:
            return False, "", f"书源 {source_id} 未找到《{book.title}》(搜到 {len(results)} 本但均不匹配)"

        toc = self.fetch_toc(rule, matched.url, cancel)
        if not toc:
            return False, "", f"书源 {source_id} 目录为空"

        best, score = None, 0.0
        for entry in toc:
            value = title_similarity(entry.title, chapter_title)
            if value > score:
                best, score = entry, value
        if best is None or score < TITLE_MATCH_THRESHOLD:
            label = best.title if best else "-"
            return False, "", f"书源 {source_id} 未找到匹配章节「{chapter_title}」(最佳匹配: {label}, score={score:.2f})"

        try:
            content = self.source_queue.run(rule.id, self.fetch_chapter_content, rule, best.url, cancel,
                                           cancel=cancel)
        except CancelledError:
            raise
        except Exception as e:
            return False, "", f"书源 {source_id} 章节获取失败: {e}"
        return True, content, f"已从书源 {source_id} 获取「{best.title}」({len(content)} 字)"

    def export(self, book_id: str, fmt: Optional[str] = None, out_dir: Optional[str] = None) -> str:
        """把已完成章节导出到下载目录, 返回文件路径"""
        book = self.repository.get_book(book_id)
        if book is None:
            raise ValueError(f"书籍不存在: {book_id}")
        chapters = self.repository.get_done_chapter_contents(book_id)
        path = export_book(
            fmt or self.settings.export_format,
            out_dir or self.settings.download_path,
            book.title, book.author, book.source_id, chapters,
        )
        logger.info("[OK] 已导出《%s》%d 章 → %s", book.title, len(chapters), path)
        return path
