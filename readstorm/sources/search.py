"""
书籍搜索 — 单书源规则搜索 + 多书源并发聚合

单书源失败只会返回空列表, 不会影响聚合结果。
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, List, Optional

from readstorm.core.cancel import CancelToken
from readstorm.core.errors import CancelledError, classify
from readstorm.core.models import SearchResult
from readstorm.core.network import HttpGateway
from readstorm.core.queue import SourceSerializationQueue
from .extractor import extract_next_pages, parse_search_rows, search_extra_page_limit
from .rule import RuleSchema, build_form_data, parse_cookie_header, substitute_keyword

logger = logging.getLogger(__name__)

MAX_RESULTS_PER_SOURCE = 50
MAX_RESULTS_HYBRID = 100


def dedupe_results(results: Iterable[SearchResult], limit: int) -> List[SearchResult]:
    """按 书名|作者 去重, 保留首次出现的顺序"""
    seen = set()
    unique = []
    for item in results:
        key = item.dedup_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
        if len(unique) >= limit:
            break
    return unique


class RuleSearchEngine:
    """在单个书源上按规则搜索"""

    def __init__(self, catalog, gateway: HttpGateway, timeout: Optional[float] = None):
        self.catalog = catalog
        self.gateway = gateway
        self.timeout = timeout

    def search(self, keyword: str, source_id: int,
               cancel: Optional[CancelToken] = None) -> List[SearchResult]:
        keyword = (keyword or "").strip()
        if not keyword or not source_id or source_id <= 0:
            return []
        try:
            rule = self.catalog.load(source_id)
            if rule is None or not rule.search_supported:
                return []
            results = []
            for html, page_url in self._fetch_pages(rule, keyword, cancel):
                results.extend(parse_search_rows(rule, html, page_url))
            unique = dedupe_results(results, MAX_RESULTS_PER_SOURCE)
            logger.debug("[search] source=%s keyword=%s rows=%d unique=%d",
                         source_id, keyword, len(results), len(unique))
            return unique
        except CancelledError:
            raise
        except Exception as e:
            logger.warning("[search] source=%s kind=%s error=%s",
                           source_id, classify(e).name, e)
            return []

    def _fetch_pages(self, rule: RuleSchema, keyword: str,
                     cancel: Optional[CancelToken]):
        search = rule.search
        template = search.url or rule.url
        if not template:
            return []
        url = substitute_keyword(template, keyword)
        cookies = parse_cookie_header(search.cookies) or None

        if search.is_post:
            html = self.gateway.get_text(
                url, method="POST", data=build_form_data(search.data, keyword),
                cookies=cookies, timeout=self.timeout, profile="search", cancel=cancel)
        else:
            html = self.gateway.get_text(
                url, cookies=cookies, timeout=self.timeout, profile="search", cancel=cancel)
        if not html.strip():
            return []

        pages = [(html, url)]
        if search.pagination and search.next_page:
            next_urls = extract_next_pages(
                html, url, search.next_page,
                search_extra_page_limit(search.limit_page), keyword=keyword)
            for next_url in next_urls:
                next_html = self.gateway.get_text(
                    next_url, cookies=cookies, timeout=self.timeout,
                    profile="search", cancel=cancel)
                if next_html.strip():
                    pages.append((next_html, next_url))
        return pages


class HybridSearchEngine:
    """
    聚合搜索

    指定书源时直接走单书源搜索; 否则在所有可搜索书源上并发搜索,
    每个书源有独立的截止时间, 同一书源的请求经 SourceSerializationQueue 串行。
    """

    def __init__(
        self,
        catalog,
        single: RuleSearchEngine,
        source_queue: Optional[SourceSerializationQueue] = None,
        *,
        max_concurrent: int = 5,
        per_source_timeout: float = 12.0,
    ):
        self.catalog = catalog
        self.single = single
        self.source_queue = source_queue if source_queue is not None else SourceSerializationQueue()
        self.max_concurrent = max(1, max_concurrent)
        self.per_source_timeout = per_source_timeout

    def search(self, keyword: str, source_id: Optional[int] = None,
               cancel: Optional[CancelToken] = None) -> List[SearchResult]:
        if source_id is not None and source_id > 0:
            return self._search_single(keyword, source_id, cancel)

        if not (keyword or "").strip():
            return []
        rules = self.catalog.searchable()
        if not rules:
            return []

        parent = cancel or CancelToken()
        workers = min(self.max_concurrent, len(rules))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="search") as pool:
            futures = [pool.submit(self._search_one, keyword, rule, parent) for rule in rules]
            batches = [f.result() for f in futures]

        if cancel is not None:
            cancel.raise_if_cancelled()

        merged = [item for batch in batches for item in batch]
        results = dedupe_results(merged, MAX_RESULTS_HYBRID)
        logger.info("[*] 聚合搜索 \"%s\": %d 个书源, %d 条结果", keyword, len(rules), len(results))
        return results

    def _search_single(self, keyword, source_id, cancel):
        try:
            return self.source_queue.run(source_id, self.single.search, keyword, source_id, cancel,
                                         cancel=cancel)
        except CancelledError:
            if cancel is not None and cancel.cancelled:
                raise
            return []

    def _search_one(self, keyword: str, rule: RuleSchema, parent: CancelToken) -> List[SearchResult]:
        # 截止时间从该书源真正开始执行时计算
        token = parent.linked(self.per_source_timeout)
        try:
            return self.source_queue.run(rule.id, self.single.search, keyword, rule.id, token,
                                         cancel=token)
        except CancelledError as e:
            logger.info("[!] 书源 %s (%s) 搜索中止: %s", rule.id, rule.display_name, e.reason)
            return []
        except Exception as e:
            logger.warning("[!] 书源 %s (%s) 搜索失败: %s", rule.id, rule.display_name, e)
            return []
