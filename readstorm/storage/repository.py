"""
书籍 + 章节仓库

BookRepository 定义下载引擎、预取规划器依赖的存储契约;
SqliteBookRepository 用标准库 sqlite3 实现 (WAL 模式)。

每次调用打开独立连接 (sqlite3.Row 作为 row_factory), 用完即关;
写操作由一把进程内锁串行化。时间戳以毫秒整数存储。
"""

import logging
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import closing, contextmanager
from typing import Iterable, List, Optional, Tuple

from readstorm.core.errors import StorageError
from readstorm.core.models import (
    BookEntity, ChapterEntity, ChapterStatus, ReadingBookmark, ReadingState, now_ms,
)

logger = logging.getLogger(__name__)


class BookRepository(ABC):
    """存储契约"""

    # ── 书籍 ──

    @abstractmethod
    def get_book(self, book_id: str) -> Optional[BookEntity]: ...

    @abstractmethod
    def get_all_books(self) -> List[BookEntity]: ...

    @abstractmethod
    def find_book(self, title: str, author: str) -> Optional[BookEntity]: ...

    @abstractmethod
    def upsert_book(self, book: BookEntity) -> None: ...

    @abstractmethod
    def delete_book(self, book_id: str) -> None: ...

    @abstractmethod
    def update_read_progress(self, book_id: str, chapter_index: int, chapter_title: str) -> None: ...

    # ── 章节 ──

    @abstractmethod
    def get_chapters(self, book_id: str) -> List[ChapterEntity]: ...

    @abstractmethod
    def get_chapter(self, book_id: str, index_no: int) -> Optional[ChapterEntity]: ...

    @abstractmethod
    def get_chapters_by_status(self, book_id: str, status: ChapterStatus) -> List[ChapterEntity]: ...

    @abstractmethod
    def insert_chapters(self, book_id: str, chapters: Iterable[ChapterEntity]) -> None:
        """插入新章节; (book_id, index_no) 已存在的行保持不变"""

    @abstractmethod
    def replace_chapters(self, book_id: str, chapters: Iterable[ChapterEntity]) -> None:
        """插入或重置为 Pending; 已 Done 的行保持不变"""

    @abstractmethod
    def update_chapter(self, book_id: str, index_no: int, status: ChapterStatus,
                       content: Optional[str] = None, error: Optional[str] = None) -> None: ...

    @abstractmethod
    def update_chapter_source(self, book_id: str, index_no: int, source_id: int,
                              source_url: str) -> None: ...

    @abstractmethod
    def count_done_chapters(self, book_id: str) -> int: ...

    @abstractmethod
    def get_done_chapter_contents(self, book_id: str) -> List[Tuple[int, str, str]]:
        """按 index_no 返回 (index_no, title, content)"""

    # ── 阅读状态 ──

    @abstractmethod
    def get_reading_state(self, book_id: str) -> Optional[ReadingState]: ...

    @abstractmethod
    def upsert_reading_state(self, state: ReadingState) -> None: ...

    @abstractmethod
    def get_reading_bookmarks(self, book_id: str) -> List[ReadingBookmark]: ...

    @abstractmethod
    def upsert_reading_bookmark(self, bookmark: ReadingBookmark) -> None: ...

    @abstractmethod
    def delete_reading_bookmark(self, book_id: str, chapter_index: int, page_index: int) -> None: ...

    # ── 维护 ──

    @abstractmethod
    def wal_checkpoint(self) -> Tuple[int, int, int]: ...


# ══════════════════════════════════════════════════════════════
# SQLite 实现
# ══════════════════════════════════════════════════════════════

SCHEMA = """
CREATE TABLE IF NOT EXISTS books (
    id                  TEXT PRIMARY KEY,
    title               TEXT NOT NULL,
    author              TEXT,
    source_id           INTEGER DEFAULT 0,
    toc_url             TEXT DEFAULT '',
    total_chapters      INTEGER DEFAULT 0,
    done_chapters       INTEGER DEFAULT 0,
    read_chapter_index  INTEGER DEFAULT 0,
    read_chapter_title  TEXT DEFAULT '',
    created_at          INTEGER NOT NULL,
    updated_at          INTEGER NOT NULL,
    read_at             INTEGER DEFAULT 0,
    cover_url           TEXT,
    cover_image         TEXT,
    cover_blob          BLOB,
    cover_rule          TEXT
);

CREATE TABLE IF NOT EXISTS chapters (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    book_id     TEXT NOT NULL REFERENCES books(id) ON DELETE CASCADE,
    index_no    INTEGER NOT NULL,
    title       TEXT DEFAULT '',
    content     TEXT,
    status      INTEGER DEFAULT 0,
    source_id   INTEGER DEFAULT 0,
    source_url  TEXT DEFAULT '',
    error       TEXT,
    updated_at  INTEGER NOT NULL,
    UNIQUE(book_id, index_no)
);

CREATE INDEX IF NOT EXISTS idx_chapters_book_id ON chapters(book_id);

CREATE TABLE IF NOT EXISTS reading_states (
    book_id             TEXT PRIMARY KEY,
    chapter_index       INTEGER DEFAULT 0,
    page_index          INTEGER DEFAULT 0,
    anchor_text         TEXT,
    layout_fingerprint  TEXT,
    updated_at          INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS reading_bookmarks (
    book_id         TEXT NOT NULL,
    chapter_index   INTEGER NOT NULL,
    page_index      INTEGER NOT NULL,
    chapter_title   TEXT DEFAULT '',
    preview_text    TEXT,
    anchor_text     TEXT,
    created_at      INTEGER NOT NULL,
    PRIMARY KEY (book_id, chapter_index, page_index)
);
"""


def _book_from_row(row: sqlite3.Row) -> BookEntity:
    return BookEntity(
        id=row["id"],
        title=row["title"],
        author=row["author"] or "",
        source_id=row["source_id"] or 0,
        toc_url=row["toc_url"] or "",
        total_chapters=row["total_chapters"] or 0,
        done_chapters=row["done_chapters"] or 0,
        read_chapter_index=row["read_chapter_index"] or 0,
        read_chapter_title=row["read_chapter_title"] or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        read_at=row["read_at"] or 0,
        cover_url=row["cover_url"],
        cover_image=row["cover_image"],
        cover_blob=row["cover_blob"],
        cover_rule=row["cover_rule"],
    )


def _chapter_from_row(row: sqlite3.Row) -> ChapterEntity:
    return ChapterEntity(
        id=row["id"],
        book_id=row["book_id"],
        index_no=row["index_no"],
        title=row["title"] or "",
        content=row["content"],
        status=ChapterStatus.from_value(row["status"]),
        source_id=row["source_id"] or 0,
        source_url=row["source_url"] or "",
        error=row["error"],
        updated_at=row["updated_at"],
    )


class SqliteBookRepository(BookRepository):

    def __init__(self, db_path: str):
        self.db_path = db_path
        directory = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(directory, exist_ok=True)
        self._write_lock = threading.Lock()
        self.init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _read(self):
        try:
            with closing(self._connect()) as conn:
                yield conn
        except sqlite3.Error as e:
            raise StorageError(f"数据库读取失败: {e}") from e

    @contextmanager
    def _write(self):
        with self._write_lock:
            try:
                with closing(self._connect()) as conn:
                    with conn:
                        yield conn
            except sqlite3.Error as e:
                raise StorageError(f"数据库写入失败: {e}") from e

    def init_db(self):
        """建表 (幂等), 开启 WAL"""
        with self._write() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.executescript(SCHEMA)

    # ── 书籍 ──

    def get_book(self, book_id):
        with self._read() as conn:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        return _book_from_row(row) if row else None

    def get_all_books(self):
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM books ORDER BY updated_at DESC").fetchall()
        return [_book_from_row(r) for r in rows]

    def find_book(self, title, author):
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM books WHERE title = ? AND author = ? LIMIT 1",
                (title, author),
            ).fetchone()
        return _book_from_row(row) if row else None

    def upsert_book(self, book):
        total = max(book.total_chapters, 0)
        book.done_chapters = min(max(book.done_chapters, 0), total)
        book.updated_at = now_ms()
        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO books (id, title, author, source_id, toc_url, total_chapters,
                    done_chapters, read_chapter_index, read_chapter_title, created_at,
                    updated_at, read_at, cover_url, cover_image, cover_blob, cover_rule)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    author = excluded.author,
                    source_id = excluded.source_id,
                    toc_url = excluded.toc_url,
                    total_chapters = excluded.total_chapters,
                    done_chapters = excluded.done_chapters,
                    read_chapter_index = excluded.read_chapter_index,
                    read_chapter_title = excluded.read_chapter_title,
                    updated_at = excluded.updated_at,
                    read_at = excluded.read_at,
                    cover_url = excluded.cover_url,
                    cover_image = excluded.cover_image,
                    cover_blob = excluded.cover_blob,
                    cover_rule = excluded.cover_rule
                """,
                (book.id, book.title, book.author, book.source_id, book.toc_url, total,
                 book.done_chapters, book.read_chapter_index, book.read_chapter_title,
                 book.created_at, book.updated_at, book.read_at, book.cover_url,
                 book.cover_image, book.cover_blob, book.cover_rule),
            )

    def delete_book(self, book_id):
        with self._write() as conn:
            conn.execute("DELETE FROM chapters WHERE book_id = ?", (book_id,))
            conn.execute("DELETE FROM reading_states WHERE book_id = ?", (book_id,))
            conn.execute("DELETE FROM reading_bookmarks WHERE book_id = ?", (book_id,))
            conn.execute("DELETE FROM books WHERE id = ?", (book_id,))

    def update_read_progress(self, book_id, chapter_index, chapter_title):
        now = now_ms()
        with self._write() as conn:
            conn.execute(
                "UPDATE books SET read_chapter_index = ?, read_chapter_title = ?, "
                "read_at = ?, updated_at = ? WHERE id = ?",
                (chapter_index, chapter_title, now, now, book_id),
            )

    # ── 章节 ──

    def get_chapters(self, book_id):
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM chapters WHERE book_id = ? ORDER BY index_no", (book_id,)
            ).fetchall()
        return [_chapter_from_row(r) for r in rows]

    def get_chapter(self, book_id, index_no):
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM chapters WHERE book_id = ? AND index_no = ?", (book_id, index_no)
            ).fetchone()
        return _chapter_from_row(row) if row else None

    def get_chapters_by_status(self, book_id, status):
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM chapters WHERE book_id = ? AND status = ? ORDER BY index_no",
                (book_id, int(status)),
            ).fetchall()
        return [_chapter_from_row(r) for r in rows]

    @staticmethod
    def _chapter_params(book_id, chapters):
        now = now_ms()
        return [
            (book_id, c.index_no, c.title, int(ChapterStatus.PENDING), c.source_id, c.source_url, now)
            for c in chapters
        ]

    def insert_chapters(self, book_id, chapters):
        params = self._chapter_params(book_id, chapters)
        if not params:
            return
        with self._write() as conn:
            conn.executemany(
                "INSERT OR IGNORE INTO chapters (book_id, index_no, title, status, source_id, "
                "source_url, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                params,
            )

    def replace_chapters(self, book_id, chapters):
        params = self._chapter_params(book_id, chapters)
        if not params:
            return
        with self._write() as conn:
            conn.executemany(
                """
                INSERT INTO chapters (book_id, index_no, title, status, source_id,
                    source_url, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(book_id, index_no) DO UPDATE SET
                    title = excluded.title,
                    status = excluded.status,
                    source_id = excluded.source_id,
                    source_url = excluded.source_url,
                    content = NULL,
                    error = NULL,
                    updated_at = excluded.updated_at
                WHERE chapters.status != {done}
                """.format(done=int(ChapterStatus.DONE)),
                params,
            )

    def update_chapter(self, book_id, index_no, status, content=None, error=None):
        with self._write() as conn:
            conn.execute(
                "UPDATE chapters SET status = ?, content = ?, error = ?, updated_at = ? "
                "WHERE book_id = ? AND index_no = ?",
                (int(status), content, error, now_ms(), book_id, index_no),
            )

    def update_chapter_source(self, book_id, index_no, source_id, source_url):
        with self._write() as conn:
            conn.execute(
                "UPDATE chapters SET source_id = ?, source_url = ?, updated_at = ? "
                "WHERE book_id = ? AND index_no = ?",
                (source_id, source_url, now_ms(), book_id, index_no),
            )

    def count_done_chapters(self, book_id):
        with self._read() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM chapters WHERE book_id = ? AND status = ?",
                (book_id, int(ChapterStatus.DONE)),
            ).fetchone()
        return row[0] if row else 0

    def get_done_chapter_contents(self, book_id):
        with self._read() as conn:
            rows = conn.execute(
                "SELECT index_no, title, content FROM chapters "
                "WHERE book_id = ? AND status = ? ORDER BY index_no",
                (book_id, int(ChapterStatus.DONE)),
            ).fetchall()
        return [(r["index_no"], r["title"] or "", r["content"] or "") for r in rows]

    # ── 阅读状态 ──

    def get_reading_state(self, book_id):
        with self._read() as conn:
            row = conn.execute("SELECT * FROM reading_states WHERE book_id = ?", (book_id,)).fetchone()
        if row is None:
            return None
        return ReadingState(
            book_id=row["book_id"],
            chapter_index=row["chapter_index"],
            page_index=row["page_index"],
            anchor_text=row["anchor_text"],
            layout_fingerprint=row["layout_fingerprint"],
            updated_at=row["updated_at"],
        )

    def upsert_reading_state(self, state):
        state.updated_at = now_ms()
        with self._write() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO reading_states (book_id, chapter_index, page_index, "
                "anchor_text, layout_fingerprint, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
                (state.book_id, state.chapter_index, state.page_index, state.anchor_text,
                 state.layout_fingerprint, state.updated_at),
            )

    def get_reading_bookmarks(self, book_id):
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM reading_bookmarks WHERE book_id = ? "
                "ORDER BY chapter_index, page_index",
                (book_id,),
            ).fetchall()
        return [
            ReadingBookmark(
                book_id=r["book_id"],
                chapter_index=r["chapter_index"],
                page_index=r["page_index"],
                chapter_title=r["chapter_title"] or "",
                preview_text=r["preview_text"],
                anchor_text=r["anchor_text"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def upsert_reading_bookmark(self, bookmark):
        with self._write() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO reading_bookmarks (book_id, chapter_index, page_index, "
                "chapter_title, preview_text, anchor_text, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (bookmark.book_id, bookmark.chapter_index, bookmark.page_index,
                 bookmark.chapter_title, bookmark.preview_text, bookmark.anchor_text,
                 bookmark.created_at),
            )

    def delete_reading_bookmark(self, book_id, chapter_index, page_index):
        with self._write() as conn:
            conn.execute(
                "DELETE FROM reading_bookmarks WHERE book_id = ? AND chapter_index = ? "
                "AND page_index = ?",
                (book_id, chapter_index, page_index),
            )

    # ── 维护 ──

    def wal_checkpoint(self):
        """把 WAL 合并回主库文件, 返回 (busy, log_frames, checkpointed_frames)"""
        with self._write_lock:
            try:
                with closing(self._connect()) as conn:
                    row = conn.execute("PRAGMA wal_checkpoint(TRUNCATE)").fetchone()
            except sqlite3.Error as e:
                raise StorageError(f"WAL checkpoint 失败: {e}") from e
        result = (row[0], row[1], row[2]) if row else (0, 0, 0)
        logger.info("[*] WAL checkpoint: busy=%d log=%d checkpointed=%d", *result)
        return result
