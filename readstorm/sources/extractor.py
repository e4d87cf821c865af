"""
规则驱动的页面解析 — lxml.html + cssselect

- 搜索结果行 → SearchResult
- 分页链接 (下一页)
- 目录 → TocEntry 列表
- 正文 → 纯文本
"""

import logging
import re
from typing import List, Optional

import lxml.html
from cssselect import SelectorError
from lxml import etree

from readstorm.core.errors import ParseError, RuleError
from readstorm.core.models import SearchResult, TocEntry
from .rule import ChapterSection, RuleSchema, TocSection, resolve_url, substitute_keyword

logger = logging.getLogger(__name__)

UNKNOWN_AUTHOR = "未知作者"
NO_LATEST_CHAPTER = "/"

# 分页上限 (首页之外的额外页数)
SEARCH_DEFAULT_LIMIT_PAGE = 3
TOC_MAX_EXTRA_PAGES = 2
CHAPTER_MAX_EXTRA_PAGES = 5

_BLOCK_TAGS = ("p", "div", "br", "li", "h1", "h2", "h3", "h4", "h5", "h6", "tr")


# ══════════════════════════════════════════════════════════════
# 基础
# ══════════════════════════════════════════════════════════════

def parse_html(html: str):
    """解析 HTML 为 lxml 文档; 空文本或无法解析返回 None"""
    if not html or not html.strip():
        return None
    try:
        return lxml.html.document_fromstring(html)
    except ValueError:
        # 带 <?xml encoding=...?> 声明的 str 不能直接解析
        return lxml.html.document_fromstring(html.encode("utf-8"))
    except etree.ParserError:
        return None


def select(node, selector: str) -> list:
    if node is None or not selector:
        return []
    try:
        return node.cssselect(selector)
    except SelectorError as e:
        raise RuleError(f"选择器无效: {selector!r} ({e})") from e


def select_first(node, selector: str):
    found = select(node, selector)
    return found[0] if found else None


def clean_text(text: Optional[str]) -> str:
    """压缩空白为单个空格"""
    return " ".join((text or "").split())


def node_text(node) -> str:
    return clean_text(node.text_content()) if node is not None else ""


def _node_href(node) -> str:
    href = (node.get("href") or "").strip()
    if href:
        return href
    for link in node.iterdescendants("a"):
        href = (link.get("href") or "").strip()
        if href:
            return href
    return ""


# ══════════════════════════════════════════════════════════════
# 搜索
# ══════════════════════════════════════════════════════════════

def parse_search_rows(rule: RuleSchema, html: str, page_url: str) -> List[SearchResult]:
    search = rule.search
    if search is None or not search.result or not search.book_name:
        return []
    doc = parse_html(html)
    if doc is None:
        return []

    results = []
    for row in select(doc, search.result):
        book_node = select_first(row, search.book_name)
        if book_node is None:
            continue
        title = node_text(book_node)
        if not title:
            continue

        author = UNKNOWN_AUTHOR
        if search.author:
            author = node_text(select_first(row, search.author)) or UNKNOWN_AUTHOR
        latest = NO_LATEST_CHAPTER
        if search.latest_chapter:
            latest = node_text(select_first(row, search.latest_chapter)) or NO_LATEST_CHAPTER

        results.append(SearchResult(
            title=title,
            author=author,
            source_id=rule.id,
            source_name=rule.name,
            url=resolve_url(page_url, _node_href(book_node)),
            latest_chapter=latest,
        ))
    return results


def search_extra_page_limit(limit_page: int) -> int:
    """搜索分页: limitPage <= 1 时按默认 3 页计, 额外页数 = limitPage - 1"""
    limit = limit_page if limit_page > 1 else SEARCH_DEFAULT_LIMIT_PAGE
    return max(0, limit - 1)


# ══════════════════════════════════════════════════════════════
# 分页
# ══════════════════════════════════════════════════════════════

def extract_next_pages(html: str, page_url: str, selector: str, max_pages: int,
                       keyword: Optional[str] = None) -> List[str]:
    """
    提取后续分页地址

    依次读取匹配元素的 href / value; 去重 (忽略大小写), 排除当前页, 最多 max_pages 个。
    """
    if not selector or max_pages <= 0:
        return []
    doc = parse_html(html)
    if doc is None:
        return []

    urls: List[str] = []
    seen = {page_url.lower()} if page_url else set()
    for node in select(doc, selector):
        if len(urls) >= max_pages:
            break
        href = (node.get("href") or "").strip() or (node.get("value") or "").strip()
        if not href:
            continue
        if keyword is not None:
            href = substitute_keyword(href, keyword)
        absolute = resolve_url(page_url, href)
        if not absolute or absolute.lower() in seen:
            continue
        seen.add(absolute.lower())
        urls.append(absolute)
    return urls


# ══════════════════════════════════════════════════════════════
# 目录
# ══════════════════════════════════════════════════════════════

def parse_toc(toc: TocSection, html: str, page_url: str) -> List[TocEntry]:
    doc = parse_html(html)
    if doc is None or not toc.item:
        return []

    entries = []
    for node in select(doc, toc.item):
        title = node_text(node)
        url = resolve_url(page_url, _node_href(node))
        if not title or not url:
            continue
        entries.append(TocEntry(title=title, url=url))

    if 0 < toc.offset < len(entries):
        entries = entries[toc.offset:]
    return entries


def finalize_toc(toc: TocSection, entries: List[TocEntry]) -> List[TocEntry]:
    """跨页按 URL 去重; desc 时反转, 保证存储顺序为从旧到新"""
    seen = set()
    unique = []
    for entry in entries:
        if entry.url in seen:
            continue
        seen.add(entry.url)
        unique.append(entry)
    if toc.desc:
        unique.reverse()
    return unique


# ══════════════════════════════════════════════════════════════
# 正文
# ══════════════════════════════════════════════════════════════

def _element_lines(element) -> List[str]:
    """把元素转为文本行: <br> 与块级元素视为换行"""
    for node in element.iter(*_BLOCK_TAGS):
        if node is element:
            continue
        node.tail = "\n" + (node.tail or "")
        if node.tag != "br":
            node.text = "\n" + (node.text or "")
    lines = []
    for line in element.text_content().split("\n"):
        line = clean_text(line)
        if line:
            lines.append(line)
    return lines


def apply_text_filters(text: str, filter_txt: str) -> str:
    """删除 || 分隔的每个字面量"""
    for phrase in (filter_txt or "").split("||"):
        if phrase:
            text = text.replace(phrase, "")
    return text


def extract_chapter_text(chapter: ChapterSection, html: str) -> str:
    """
    从章节页提取正文

    取 content 的第一个匹配; 删除 filterTag 命中的子元素;
    有 paragraphTag 时按段落拼接, 否则整块文本按 <br>/<p> 分行;
    最后删除 filterTxt 中的广告词。结果为空抛出 ParseError。
    """
    doc = parse_html(html)
    content = select_first(doc, chapter.content) if doc is not None else None
    if content is None:
        raise ParseError(f"正文选择器未命中: {chapter.content}")

    if chapter.filter_tag:
        for bad in select(content, chapter.filter_tag):
            if bad is not content:
                bad.drop_tree()

    if chapter.paragraph_tag:
        paragraphs = [node_text(p) for p in select(content, chapter.paragraph_tag)
                      if p is not content]
        lines = [p for p in paragraphs if p]
    else:
        lines = _element_lines(content)

    text = apply_text_filters("\n".join(lines), chapter.filter_txt)
    text = re.sub(r"\n{3,}", "\n\n", text).strip()
    text = "\n".join(line.strip() for line in text.split("\n"))
    if not text.strip():
        raise ParseError("正文内容为空")
    return text.strip()
