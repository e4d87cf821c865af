"""
书源体检 — 快速探活 + 单书源诊断

每次对书源的请求都经 SourceSerializationQueue, 与搜索 / 下载共用同一把书源锁。
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import List, Optional

from readstorm.core.cancel import CancelToken
from readstorm.core.errors import ReadStormError, RuleError
from readstorm.core.models import BookSourceRule, SourceDiagnosticResult, SourceHealthResult
from readstorm.core.network import HttpGateway
from readstorm.core.queue import SourceSerializationQueue
from .extractor import (
    extract_chapter_text, finalize_toc, parse_html, parse_search_rows, parse_toc, select,
)
from .rule import build_form_data, build_toc_url, parse_cookie_header, substitute_keyword

logger = logging.getLogger(__name__)

PING_KEYWORD = "测试"


# ══════════════════════════════════════════════════════════════
# 快速探活
# ══════════════════════════════════════════════════════════════

class FastSourceHealthCheck:
    """对每个书源发一次搜索请求 (无搜索规则时 GET 首页), 单源 3 秒 (含等锁时间)"""

    def __init__(self, catalog, gateway: HttpGateway, *, timeout: float = 3.0, max_workers: int = 8,
                 source_queue: Optional[SourceSerializationQueue] = None):
        self.catalog = catalog
        self.gateway = gateway
        self.timeout = timeout
        self.max_workers = max(1, max_workers)
        self.source_queue = source_queue if source_queue is not None else SourceSerializationQueue()

    def check_all(self, sources: Optional[List[BookSourceRule]] = None,
                  cancel: Optional[CancelToken] = None) -> List[SourceHealthResult]:
        sources = [s for s in (sources if sources is not None else self.catalog.all())
                   if s.id > 0 and s.url.strip()]
        if not sources:
            return []
        parent = cancel or CancelToken()
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(sources)),
                                thread_name_prefix="health") as pool:
            return list(pool.map(lambda s: self.ping(s, parent), sources))

    def ping(self, source: BookSourceRule, parent: Optional[CancelToken] = None) -> SourceHealthResult:
        token = (parent or CancelToken()).linked(self.timeout)
        started = time.monotonic()

        def send():
            method, url, data, cookies = self._ping_request(source)
            resp = self.gateway.request(method, url, data=data, cookies=cookies,
                                        timeout=self.timeout, cancel=token)
            resp.close()
            return resp.status_code

        try:
            status = self.source_queue.run(source.id, send, cancel=token)
            reachable = 200 <= status < 400
        except Exception as e:
            logger.debug("[!] 探活失败 source=%s: %s", source.id, e)
            reachable = False
        elapsed = int((time.monotonic() - started) * 1000)
        return SourceHealthResult(source_id=source.id, reachable=reachable, elapsed_ms=elapsed)

    def _ping_request(self, source: BookSourceRule):
        rule = self.catalog.load(source.id)
        search = rule.search if rule else None
        if search is None or not search.url:
            return "GET", source.url, None, None
        url = substitute_keyword(search.url, PING_KEYWORD)
        cookies = parse_cookie_header(search.cookies) or None
        if search.is_post:
            return "POST", url, build_form_data(search.data, PING_KEYWORD), cookies
        return "GET", url, None, cookies


# ══════════════════════════════════════════════════════════════
# 单书源诊断
# ══════════════════════════════════════════════════════════════

class SourceDiagnostic:
    """
    逐项检查一个书源: 规则完整性、HTTP 连通性、搜索命中数,
    以及 (搜索有结果时) 目录条数和首章正文长度。整体最多 8 秒。
    """

    HTTP_TIMEOUT = 5.0
    TOTAL_TIMEOUT = 8.0

    def __init__(self, catalog, gateway: HttpGateway,
                 source_queue: Optional[SourceSerializationQueue] = None):
        self.catalog = catalog
        self.gateway = gateway
        self.source_queue = source_queue if source_queue is not None else SourceSerializationQueue()

    def diagnose(self, source_id: int, keyword: str = PING_KEYWORD,
                 cancel: Optional[CancelToken] = None) -> SourceDiagnosticResult:
        token = (cancel or CancelToken()).linked(self.TOTAL_TIMEOUT)
        result = SourceDiagnosticResult(source_id=source_id)

        def log(message: str):
            result.lines.append(f"[{datetime.now().strftime('%H:%M:%S.%f')[:-3]}] {message}")

        try:
            log(f"开始诊断书源 {source_id}")
            try:
                rule = self.catalog.load(source_id)
            except RuleError as e:
                result.summary = f"规则文件无法解析: {e}"
                log(result.summary)
                return result
            if rule is None:
                result.summary = f"未找到书源 {source_id} 的规则文件。"
                log(result.summary)
                return result

            result.source_name = rule.display_name
            result.base_url = rule.url
            result.search_rule_found = bool(rule.search and rule.search.url)
            log(f"搜索规则: {'已配置' if result.search_rule_found else '缺失'}")
            result.toc_rule_found = rule.toc_supported
            result.toc_selector = rule.toc.item if rule.toc else ""
            log(f"目录规则: {'已配置' if result.toc_rule_found else '缺失'}, selector='{result.toc_selector}'")
            result.chapter_rule_found = rule.chapter_supported
            result.chapter_content_selector = rule.chapter.content if rule.chapter else ""
            log(f"章节规则: {'已配置' if result.chapter_rule_found else '缺失'}, "
                f"selector='{result.chapter_content_selector}'")

            if rule.url:
                self._check_connectivity(rule, result, token, log)
            if result.search_rule_found and keyword.strip():
                self._check_search(rule, keyword.strip(), result, token, log)

            result.summary = "书源状态正常" if result.is_healthy else "书源存在配置或连通问题"
            log(f"诊断结论: {result.summary}")
        except ReadStormError as e:
            result.summary = f"诊断异常: {e}"
            log(result.summary)
        return result

    def _get_text(self, rule, url, token, **kwargs) -> str:
        """在书源锁内请求一个页面"""
        return self.source_queue.run(
            rule.id, lambda: self.gateway.get_text(url, timeout=self.HTTP_TIMEOUT, cancel=token, **kwargs),
            cancel=token)

    def _check_connectivity(self, rule, result, token, log):
        def head():
            resp = self.gateway.request("HEAD", rule.url, timeout=self.HTTP_TIMEOUT, cancel=token)
            resp.close()
            return resp

        try:
            resp = self.source_queue.run(rule.id, head, cancel=token)
            result.http_status_code = resp.status_code
            result.http_status_message = resp.reason or ""
            log(f"HTTP 连通性: {result.http_status_code} {result.http_status_message}")
        except Exception as e:
            result.http_status_code = 0
            result.http_status_message = f"{type(e).__name__}: {e}"
            log(f"HTTP 连通性检测失败: {result.http_status_message}")

    def _check_search(self, rule, keyword, result, token, log):
        search = rule.search
        url = substitute_keyword(search.url, keyword)
        cookies = parse_cookie_header(search.cookies) or None
        log(f"尝试搜索: {url}")
        try:
            if search.is_post:
                html = self._get_text(rule, url, token, method="POST",
                                      data=build_form_data(search.data, keyword),
                                      cookies=cookies, profile="search")
            else:
                html = self._get_text(rule, url, token, cookies=cookies, profile="search")
            if not html:
                log("搜索请求无有效响应")
                return
            if not search.result:
                log("搜索结果 selector 为空, 无法解析。")
                return
            result.search_result_count = len(select(parse_html(html), search.result))
            log(f"搜索结果 selector '{search.result}' 命中: {result.search_result_count} 条")

            rows = parse_search_rows(rule, html, url)
            if rows and rows[0].url and rule.toc_supported:
                self._check_toc(rule, rows[0].url, result, token, log)
        except Exception as e:
            log(f"搜索测试异常: {e}")

    def _check_toc(self, rule, book_url, result, token, log):
        toc_url = build_toc_url(rule, book_url)
        html = self._get_text(rule, toc_url, token)
        entries = finalize_toc(rule.toc, parse_toc(rule.toc, html, toc_url))
        result.toc_item_count = len(entries)
        log(f"目录 selector '{rule.toc.item}' 解析: {len(entries)} 章")
        if not entries or not rule.chapter_supported:
            return
        chapter_html = self._get_text(rule, entries[0].url, token)
        text = extract_chapter_text(rule.chapter, chapter_html)
        result.sample_chapter_text = text[:200]
        log(f"首章正文: {len(text)} 字")
