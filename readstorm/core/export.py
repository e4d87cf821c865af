"""
导出 — TXT / EPUB

EPUB 由 ebooklib 生成: 每章一个 xhtml, 附 NCX + Nav 目录。
"""

import html
import os
import uuid
from typing import Sequence, Tuple

from ebooklib import epub

from .utils import sanitize_filename

# (index_no, title, content)
ChapterText = Tuple[int, str, str]

SUPPORTED_FORMATS = ("txt", "epub")


def output_file_name(title: str, author: str, ext: str) -> str:
    return sanitize_filename(f"{title}({author}).{ext}")


def export_txt(out_dir: str, title: str, author: str, source_id: int,
               chapters: Sequence[ChapterText]) -> str:
    os.makedirs(out_dir, exist_ok=True)
    path = os.path.join(out_dir, output_file_name(title, author, "txt"))
    with open(path, "w", encoding="utf-8") as f:
        f.write(f"书名：{title}\n")
        f.write(f"作者：{author}\n")
        f.write(f"书源：{source_id}\n\n")
        for _, chapter_title, content in chapters:
            f.write(f"{chapter_title}\n\n{content}\n\n")
    return path


def _chapter_body(title: str, content: str) -> str:
    paragraphs = "".join(
        f"<p>{html.escape(line.strip())}</p>" for line in content.split("\n") if line.strip()
    )
    return (
        '<html><head><meta charset="utf-8"/></head><body>'
        f"<h2>{html.escape(title)}</h2>{paragraphs}"
        "</body></html>"
    )


def export_epub(out_dir: str, title: str, author: str, source_id: int,
                chapters: Sequence[ChapterText]) -> str:
    os.makedirs(out_dir, exist_ok=True)
    path = os.path.join(out_dir, output_file_name(title, author, "epub"))

    book = epub.EpubBook()
    book.set_identifier(f"urn:uuid:{uuid.uuid4()}")
    book.set_title(title)
    book.set_language("zh")
    book.add_author(author)
    book.add_metadata("DC", "source", str(source_id))

    items = []
    for position, (_, chapter_title, content) in enumerate(chapters, 1):
        item = epub.EpubHtml(title=chapter_title,
                             file_name=f"chap{position:05d}.xhtml",
                             lang="zh")
        item.content = _chapter_body(chapter_title, content)
        book.add_item(item)
        items.append(item)

    book.toc = items
    book.add_item(epub.EpubNcx())
    book.add_item(epub.EpubNav())
    book.spine = ["nav"] + items

    epub.write_epub(path, book, {})
    return path


def export_book(fmt: str, out_dir: str, title: str, author: str, source_id: int,
                chapters: Sequence[ChapterText]) -> str:
    fmt = (fmt or "txt").lower()
    if fmt == "epub":
        return export_epub(out_dir, title, author, source_id, chapters)
    if fmt == "txt":
        return export_txt(out_dir, title, author, source_id, chapters)
    raise ValueError(f"不支持的导出格式: {fmt}")
