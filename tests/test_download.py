"""
Tests for readstorm.core.download (DownloadEngine end-to-end over fixture HTML)

Run: pytest tests/test_download.py -v
"""

import os
import threading
import time
import zipfile

import pytest
import requests

from conftest import chapter_html, toc_html
from readstorm.core.cancel import CancelToken
from readstorm.core.download import DownloadCallbacks, DownloadEngine
from readstorm.core.errors import IllegalTransitionError
from readstorm.core.models import BookEntity, ChapterStatus, DownloadErrorKind, DownloadMode, SearchResult
from readstorm.core.queue import SourceSerializationQueue
from readstorm.core.task import DownloadTask, DownloadTaskStatus

S = DownloadTaskStatus

BOOK_1001 = "https://test.local/book/1001.html"
BOOK_2001 = "https://test.local/book/2001.html"
BOOK_3001 = "https://test.local/book/3001.html"


def _selected(source_id, url, title="集成测试小说"):
    return SearchResult(title=title, author="测试作者", source_id=source_id,
                        source_name="集成测试书源", url=url)


def _read(path):
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


@pytest.fixture
def two_chapter_site(fake_session):
    fake_session.add(BOOK_1001, toc_html(("/chapter-1.html", "第一章 开始"),
                                         ("/chapter-2.html", "第二章 继续")))
    fake_session.add("https://test.local/chapter-1.html", chapter_html("第一章正文<br>广告词"))
    fake_session.add("https://test.local/chapter-2.html", chapter_html("第二章正文"))
    return fake_session


@pytest.fixture
def three_chapter_site(fake_session):
    fake_session.add(BOOK_2001, toc_html(("/chapter-1.html", "第一章 A"),
                                         ("/chapter-2.html", "第二章 B"),
                                         ("/chapter-3.html", "第三章 C")))
    fake_session.add("https://test.local/chapter-1.html", chapter_html("正文A"))
    fake_session.add("https://test.local/chapter-2.html", chapter_html("正文B"))
    fake_session.add("https://test.local/chapter-3.html", chapter_html("正文C"))
    return fake_session


# ─── Full book ─────────────────────────────────────────────────────────────

class TestFullBook:
    def test_downloads_and_exports_filtered_text(self, engine, repository, two_chapter_site):
        task = DownloadTask(source_result=_selected(501, BOOK_1001))
        engine.run(task)

        assert task.status is S.SUCCEEDED
        assert task.progress_percent == 100
        book = repository.get_book(task.book_id)
        assert book.done_chapters == book.total_chapters == 2

        text = _read(engine.export(task.book_id))
        assert "书名：集成测试小说" in text
        assert "第一章 开始" in text and "第一章正文" in text
        assert "第二章正文" in text
        assert "广告词" not in text

    def test_snapshots_and_log_lines_published(self, engine, two_chapter_site):
        snapshots, lines = [], []
        callbacks = DownloadCallbacks(on_log=lines.append, on_snapshot=snapshots.append)
        task = DownloadTask(source_result=_selected(501, BOOK_1001))
        engine.run(task, callbacks=callbacks)

        assert snapshots[0].status is S.DOWNLOADING
        assert snapshots[-1].status is S.SUCCEEDED
        progress = [s.current_chapter_index for s in snapshots]
        assert progress == sorted(progress)
        assert any("[download-start]" in line for line in lines)
        assert any("[toc-parsed] items=2" in line for line in lines)

    def test_repeat_run_does_not_refetch_done(self, engine, repository, two_chapter_site):
        engine.run(DownloadTask(source_result=_selected(501, BOOK_1001)))
        second = DownloadTask(source_result=_selected(501, BOOK_1001))
        engine.run(second)

        assert second.status is S.SUCCEEDED
        assert two_chapter_site.count("https://test.local/chapter-1.html") == 1
        assert two_chapter_site.count("https://test.local/chapter-2.html") == 1
        assert two_chapter_site.count(BOOK_1001) == 2
        assert len(repository.get_all_books()) == 1

    def test_duplicate_toc_urls_collapsed(self, engine, repository, fake_session):
        fake_session.add(BOOK_3001, toc_html(("/chapter-60.html", "第60章 虎豹骑VS雇佣兵2"),
                                             ("/chapter-60.html", "第60章 虎豹骑VS雇佣兵2"),
                                             ("/chapter-61.html", "第61章 新章节")))
        fake_session.add("https://test.local/chapter-60.html", chapter_html("第60章 正文"))
        fake_session.add("https://test.local/chapter-61.html", chapter_html("第61章 正文"))
        task = DownloadTask(source_result=_selected(503, BOOK_3001, "去重测试小说"))
        engine.run(task)

        assert task.status is S.SUCCEEDED
        text = _read(engine.export(task.book_id))
        assert text.count("第60章 虎豹骑VS雇佣兵2") == 1
        assert "第61章 新章节" in text

    def test_epub_export(self, engine, two_chapter_site):
        task = DownloadTask(source_result=_selected(501, BOOK_1001))
        engine.run(task)
        path = engine.export(task.book_id, "epub")
        assert path.endswith(".epub")
        with zipfile.ZipFile(path) as zf:
            names = zf.namelist()
            assert names[0] == "mimetype"
            assert zf.read("mimetype") == b"application/epub+zip"
            chapter = zf.read("EPUB/chap00001.xhtml").decode("utf-8")
        assert "第一章正文" in chapter and "广告词" not in chapter


# ─── Partial modes ─────────────────────────────────────────────────────────

class TestModes:
    def test_range_only_downloads_window(self, engine, repository, three_chapter_site):
        task = DownloadTask(source_result=_selected(502, BOOK_2001, "范围测试小说"),
                            mode=DownloadMode.RANGE, range_start=1, range_count=1,
                            is_auto_prefetch=True, auto_prefetch_reason="test-range")
        engine.run(task)

        assert task.status is S.SUCCEEDED
        text = _read(engine.export(task.book_id))
        assert "第二章 B" in text and "正文B" in text
        for absent in ("第一章 A", "正文A", "第三章 C", "正文C"):
            assert absent not in text
        statuses = [c.status for c in repository.get_chapters(task.book_id)]
        assert statuses == [ChapterStatus.PENDING, ChapterStatus.DONE, ChapterStatus.PENDING]

    def test_latest_n(self, engine, repository, three_chapter_site):
        task = DownloadTask(source_result=_selected(502, BOOK_2001), mode=DownloadMode.LATEST_N,
                            range_count=2)
        engine.run(task)
        done = [c.index_no for c in repository.get_chapters_by_status(task.book_id, ChapterStatus.DONE)]
        assert done == [1, 2]

    def test_latest_n_defaults_to_settings(self, engine, repository, three_chapter_site):
        engine.settings.latest_n = 1
        task = DownloadTask(source_result=_selected(502, BOOK_2001), mode=DownloadMode.LATEST_N)
        engine.run(task)
        done = [c.index_no for c in repository.get_chapters_by_status(task.book_id, ChapterStatus.DONE)]
        assert done == [2]


# ─── Failures ──────────────────────────────────────────────────────────────

class TestFailures:
    def test_chapter_failure_does_not_fail_task(self, engine, repository, fake_session):
        fake_session.add(BOOK_1001, toc_html(("/chapter-1.html", "第一章"), ("/missing.html", "第二章")))
        fake_session.add("https://test.local/chapter-1.html", chapter_html("正文"))
        task = DownloadTask(source_result=_selected(501, BOOK_1001))
        engine.run(task)

        assert task.status is S.SUCCEEDED
        chapters = repository.get_chapters(task.book_id)
        assert chapters[0].status is ChapterStatus.DONE
        assert chapters[1].status is ChapterStatus.FAILED
        assert chapters[1].error
        book = repository.get_book(task.book_id)
        assert (book.done_chapters, book.total_chapters) == (1, 2)

    def test_missing_detail_url(self, engine):
        task = DownloadTask(source_result=_selected(501, "  "))
        engine.run(task)
        assert task.status is S.FAILED
        assert task.error_kind is DownloadErrorKind.RULE

    def test_missing_rule(self, engine):
        task = DownloadTask(source_result=_selected(999, BOOK_1001))
        engine.run(task)
        assert task.status is S.FAILED
        assert task.error_kind is DownloadErrorKind.RULE
        assert "999" in task.error

    def test_empty_toc(self, engine):
        task = DownloadTask(source_result=_selected(501, "https://test.local/book/404.html"))
        engine.run(task)
        assert task.status is S.FAILED
        assert task.error_kind is DownloadErrorKind.PARSE

    def test_network_failure_carries_diagnostics(self, engine, fake_session):
        fake_session.add(BOOK_1001, requests.ConnectionError("refused"))
        task = DownloadTask(source_result=_selected(501, BOOK_1001))
        engine.run(task)
        assert task.status is S.FAILED
        assert task.error_kind is DownloadErrorKind.NETWORK
        assert "[诊断片段]" in task.error
        assert "[toc-fetch]" in task.error

    def test_illegal_transition_propagates(self, engine, two_chapter_site):
        task = DownloadTask(source_result=_selected(501, BOOK_1001))
        engine.run(task)
        with pytest.raises(IllegalTransitionError):
            engine.run(task)


# ─── Pause / cancel ────────────────────────────────────────────────────────

class TestPauseAndCancel:
    def _stop_after_first_chapter(self, token, reason):
        def on_snapshot(snap):
            if snap.current_chapter_index >= 1:
                token.cancel(reason)
        return DownloadCallbacks(on_snapshot=on_snapshot)

    def test_pause_then_resume(self, engine, repository, three_chapter_site):
        task = DownloadTask(source_result=_selected(502, BOOK_2001))
        token = CancelToken()
        engine.run(task, cancel=token, callbacks=self._stop_after_first_chapter(token, "pause"))

        assert task.status is S.PAUSED
        assert repository.count_done_chapters(task.book_id) == 1

        task.reset_for_resume()
        engine.run(task, cancel=CancelToken())
        assert task.status is S.SUCCEEDED
        assert repository.count_done_chapters(task.book_id) == 3
        assert three_chapter_site.count("https://test.local/chapter-1.html") == 1

    def test_cancel_mid_download(self, engine, repository, three_chapter_site):
        task = DownloadTask(source_result=_selected(502, BOOK_2001))
        token = CancelToken()
        engine.run(task, cancel=token, callbacks=self._stop_after_first_chapter(token, "cancel"))

        assert task.status is S.CANCELLED
        assert task.error_kind is DownloadErrorKind.CANCELLED
        statuses = [c.status for c in repository.get_chapters(task.book_id)]
        assert statuses == [ChapterStatus.DONE, ChapterStatus.PENDING, ChapterStatus.PENDING]

    def test_cancel_during_chapter_resets_it_to_pending(self, engine, repository, fake_session):
        token = CancelToken()

        def cancel_in_flight(method, url, **kwargs):
            token.cancel()
            raise requests.ConnectionError("aborted")

        fake_session.add(BOOK_2001, toc_html(("/chapter-1.html", "第一章 A")))
        fake_session.add("https://test.local/chapter-1.html", cancel_in_flight)
        task = DownloadTask(source_result=_selected(502, BOOK_2001))
        engine.run(task, cancel=token)

        assert task.status is S.CANCELLED
        assert repository.get_chapter(task.book_id, 0).status is ChapterStatus.PENDING

    def test_cancel_while_source_busy(self, catalog, gateway, repository, settings, three_chapter_site):
        queue = SourceSerializationQueue()
        release, holding = threading.Event(), threading.Event()

        def other_download():
            holding.set()
            release.wait(10)

        holder = threading.Thread(target=queue.run, args=(502, other_download))
        holder.start()
        assert holding.wait(5)
        try:
            engine = DownloadEngine(catalog, gateway, repository, settings=settings, source_queue=queue)
            task = DownloadTask(source_result=_selected(502, BOOK_2001))
            token = CancelToken()
            threading.Timer(0.3, token.cancel).start()
            started = time.monotonic()
            engine.run(task, cancel=token)
            assert time.monotonic() - started < 2
            assert task.status is S.CANCELLED
            assert three_chapter_site.calls == []
        finally:
            release.set()
            holder.join(5)


# ─── Update check / source switch ──────────────────────────────────────────

class FakeSearch:
    def __init__(self, results):
        self.results = results

    def search(self, keyword, source_id=None, cancel=None):
        return [r for r in self.results if r.source_id == source_id]


class TestBookMaintenance:
    def test_check_new_chapters(self, engine, repository, two_chapter_site):
        task = DownloadTask(source_result=_selected(501, BOOK_1001))
        engine.run(task)
        two_chapter_site.add(BOOK_1001, toc_html(("/chapter-1.html", "第一章 开始"),
                                                 ("/chapter-2.html", "第二章 继续"),
                                                 ("/chapter-3.html", "第三章 新")))
        book = repository.get_book(task.book_id)
        assert engine.check_new_chapters(book) == 1

        stored = repository.get_book(task.book_id)
        assert stored.total_chapters == 3 and stored.done_chapters == 2
        assert repository.get_chapter(task.book_id, 2).status is ChapterStatus.PENDING
        assert engine.check_new_chapters(stored) == 0

    def test_fetch_chapter_from_other_source(self, catalog, gateway, repository, settings,
                                             three_chapter_site):
        other = _selected(502, BOOK_2001, "换源小说")
        engine = DownloadEngine(catalog, gateway, repository, settings=settings,
                                search_engine=FakeSearch([other]))
        book = BookEntity(title="换源小说", author="测试作者", source_id=501)

        ok, content, message = engine.fetch_chapter_from_source(book, "第二章：B", 502)
        assert ok, message
        assert content == "正文B"

    def test_fetch_chapter_from_source_without_match(self, catalog, gateway, repository, settings,
                                                     three_chapter_site):
        engine = DownloadEngine(catalog, gateway, repository, settings=settings,
                                search_engine=FakeSearch([]))
        book = BookEntity(title="换源小说", author="测试作者", source_id=501)
        ok, content, message = engine.fetch_chapter_from_source(book, "第二章 B", 502)
        assert not ok and content == ""
        assert "未搜到" in message

    def test_export_writes_to_download_path(self, engine, settings, two_chapter_site):
        task = DownloadTask(source_result=_selected(501, BOOK_1001))
        engine.run(task)
        path = engine.export(task.book_id)
        assert os.path.dirname(path) == settings.download_path
        assert os.path.basename(path) == "集成测试小说(测试作者).txt"
