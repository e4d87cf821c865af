"""
书源规则 — rule-<id>.json 的结构化表示

规则 JSON 的键为 camelCase (bookName / latestChapter / nextPage ...),
读取时不区分大小写, 未知键忽略, 缺失键取默认值。
所有选择器字段在读取时经过 normalize_selector。
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote, urljoin, urlparse

from readstorm.core.errors import RuleError

_JS_MARKER = re.compile(r"@js:.*$", re.IGNORECASE | re.DOTALL)


def normalize_selector(selector: Optional[str]) -> str:
    """去掉末尾的 @js: 脚本标记并去空白; 空值返回空字符串"""
    if selector is None:
        return ""
    text = str(selector)
    if not text.strip():
        return ""
    return _JS_MARKER.sub("", text).strip()


# ══════════════════════════════════════════════════════════════
# 字段读取 (键名不区分大小写)
# ══════════════════════════════════════════════════════════════

def _lower_keys(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        return {}
    return {str(k).lower(): v for k, v in data.items()}


def _text(d: Dict[str, Any], key: str, default: str = "") -> str:
    value = d.get(key.lower())
    return default if value is None else str(value)


def _selector(d: Dict[str, Any], key: str) -> str:
    return normalize_selector(d.get(key.lower()))


def _flag(d: Dict[str, Any], key: str) -> bool:
    value = d.get(key.lower())
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _number(d: Dict[str, Any], key: str, default: int) -> int:
    try:
        return int(d.get(key.lower(), default))
    except (TypeError, ValueError):
        return default


# ══════════════════════════════════════════════════════════════
# 规则各部分
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SearchSection:
    url: str = ""
    method: str = "get"
    data: str = "{}"
    cookies: str = ""
    result: str = ""
    book_name: str = ""
    author: str = ""
    category: str = ""
    word_count: str = ""
    status: str = ""
    latest_chapter: str = ""
    last_update_time: str = ""
    pagination: bool = False
    next_page: str = ""
    limit_page: int = 3

    @property
    def is_post(self) -> bool:
        return self.method.strip().lower() == "post"

    @classmethod
    def from_dict(cls, raw: Any) -> "SearchSection":
        d = _lower_keys(raw)
        return cls(
            url=_text(d, "url").strip(),
            method=_text(d, "method", "get").strip() or "get",
            data=_text(d, "data", "{}"),
            cookies=_text(d, "cookies").strip(),
            result=_selector(d, "result"),
            book_name=_selector(d, "bookName"),
            author=_selector(d, "author"),
            category=_selector(d, "category"),
            word_count=_selector(d, "wordCount"),
            status=_selector(d, "status"),
            latest_chapter=_selector(d, "latestChapter"),
            last_update_time=_selector(d, "lastUpdateTime"),
            pagination=_flag(d, "pagination"),
            next_page=_selector(d, "nextPage"),
            limit_page=_number(d, "limitPage", 3),
        )


@dataclass(frozen=True)
class BookSection:
    book_name: str = ""
    author: str = ""
    intro: str = ""
    category: str = ""
    cover_url: str = ""
    latest_chapter: str = ""
    last_update_time: str = ""
    status: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> "BookSection":
        d = _lower_keys(raw)
        return cls(
            book_name=_selector(d, "bookName"),
            author=_selector(d, "author"),
            intro=_selector(d, "intro"),
            category=_selector(d, "category"),
            cover_url=_selector(d, "coverUrl"),
            latest_chapter=_selector(d, "latestChapter"),
            last_update_time=_selector(d, "lastUpdateTime"),
            status=_selector(d, "status"),
        )


@dataclass(frozen=True)
class TocSection:
    url: str = ""
    item: str = ""
    offset: int = 0
    desc: bool = False
    pagination: bool = False
    next_page: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> "TocSection":
        d = _lower_keys(raw)
        return cls(
            url=_text(d, "url").strip(),
            item=_selector(d, "item"),
            offset=_number(d, "offset", 0),
            desc=_flag(d, "desc"),
            pagination=_flag(d, "pagination"),
            next_page=_selector(d, "nextPage"),
        )


@dataclass(frozen=True)
class ChapterSection:
    title: str = ""
    content: str = ""
    paragraph_tag_closed: bool = False
    paragraph_tag: str = ""
    filter_txt: str = ""
    filter_tag: str = ""
    pagination: bool = False
    next_page: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> "ChapterSection":
        d = _lower_keys(raw)
        return cls(
            title=_selector(d, "title"),
            content=_selector(d, "content"),
            paragraph_tag_closed=_flag(d, "paragraphTagClosed"),
            paragraph_tag=_selector(d, "paragraphTag"),
            filter_txt=_text(d, "filterTxt"),
            filter_tag=_selector(d, "filterTag"),
            pagination=_flag(d, "pagination"),
            next_page=_selector(d, "nextPage"),
        )


# ══════════════════════════════════════════════════════════════
# 完整规则
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RuleSchema:
    id: int
    url: str = ""
    name: str = ""
    comment: str = ""
    type: str = "html"
    language: str = "zh_CN"
    search: Optional[SearchSection] = None
    book: Optional[BookSection] = None
    toc: Optional[TocSection] = None
    chapter: Optional[ChapterSection] = None

    @property
    def file_name(self) -> str:
        return f"rule-{self.id}.json"

    @property
    def display_name(self) -> str:
        return self.name or f"书源 {self.id}"

    @property
    def search_supported(self) -> bool:
        return bool(self.search and self.search.result and self.search.book_name)

    @property
    def toc_supported(self) -> bool:
        return bool(self.toc and self.toc.item)

    @property
    def chapter_supported(self) -> bool:
        return bool(self.chapter and self.chapter.content)

    @classmethod
    def from_dict(cls, data: Any) -> "RuleSchema":
        if not isinstance(data, dict):
            raise RuleError("规则文件格式错误: 顶层必须是 JSON 对象")
        d = _lower_keys(data)
        rule_id = _number(d, "id", 0)
        if rule_id <= 0:
            raise RuleError(f"规则 id 无效: {d.get('id')!r}")

        def section(key, factory):
            raw = d.get(key)
            return factory.from_dict(raw) if isinstance(raw, dict) else None

        return cls(
            id=rule_id,
            url=_text(d, "url").strip(),
            name=_text(d, "name").strip(),
            comment=_text(d, "comment"),
            type=_text(d, "type", "html").strip() or "html",
            language=_text(d, "language", "zh_CN").strip() or "zh_CN",
            search=section("search", SearchSection),
            book=section("book", BookSection),
            toc=section("toc", TocSection),
            chapter=section("chapter", ChapterSection),
        )


def load_rule_file(path: str) -> RuleSchema:
    """读取并解析一个规则文件; 格式错误抛出 RuleError"""
    try:
        with open(path, "r", encoding="utf-8-sig") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise RuleError(f"规则文件 JSON 格式错误: {path} ({e})") from e
    return RuleSchema.from_dict(data)


# ══════════════════════════════════════════════════════════════
# 请求构造
# ══════════════════════════════════════════════════════════════

def substitute_keyword(template: str, keyword: str, encode: bool = True) -> str:
    """把模板中的每个 %s 替换为关键字 (URL 中做百分号编码)"""
    value = quote(keyword, safe="", encoding="utf-8") if encode else keyword
    return (template or "").replace("%s", value)


def build_form_data(template: Optional[str], keyword: str) -> Dict[str, str]:
    """
    解析宽松格式的表单模板, 例如 {searchkey:"%s", type:'articlename'}

    引号会被去掉, %s 替换为原始关键字 (由 requests 负责表单编码)。
    """
    if not template or not template.strip():
        return {}
    body = template.strip()
    if body.startswith("{") and body.endswith("}"):
        body = body[1:-1]
    result: Dict[str, str] = {}
    for pair in body.split(","):
        pair = pair.strip()
        idx = pair.find(":")
        if idx <= 0 or idx >= len(pair) - 1:
            continue
        key = pair[:idx].strip().strip("\"' ")
        value = pair[idx + 1:].strip().strip("\"' ")
        if key:
            result[key] = value.replace("%s", keyword)
    return result


def parse_cookie_header(cookies: Optional[str]) -> Dict[str, str]:
    """a=1; b=2 → {"a": "1", "b": "2"}"""
    result: Dict[str, str] = {}
    for part in (cookies or "").split(";"):
        name, sep, value = part.strip().partition("=")
        if sep and name.strip():
            result[name.strip()] = value.strip()
    return result


def resolve_url(page_url: Optional[str], href: Optional[str]) -> str:
    """把页面中提取到的链接解析为绝对地址; javascript: 和空值返回空字符串"""
    if not href or not href.strip():
        return ""
    href = href.strip()
    if href.lower().startswith(("javascript:", "#", "mailto:")):
        return ""
    if href.lower().startswith(("http://", "https://")):
        return href
    if not page_url:
        return href
    resolved = urljoin(page_url, href)
    return resolved if urlparse(resolved).scheme in ("http", "https") else ""


_LAST_DIGITS = re.compile(r"(\d+)(?!.*\d)")


def build_toc_url(rule: RuleSchema, book_url: str) -> str:
    """
    目录地址: toc.url 含 %s 时用书籍地址路径中最后一段数字替换, 否则就是书籍地址
    """
    template = rule.toc.url if rule.toc else ""
    if not template or "%s" not in template:
        return book_url
    path = urlparse(book_url).path or book_url
    match = _LAST_DIGITS.search(path)
    if not match:
        return book_url
    return resolve_url(rule.url or book_url, template.replace("%s", match.group(1)))
