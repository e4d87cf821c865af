#!/usr/bin/env python3
"""
readstorm — 命令行接口

用法:
    readstorm sources
    readstorm search "诡秘之主"
    readstorm search "诡秘之主" --source 3
    readstorm download --keyword "诡秘之主" --pick 1
    readstorm download --url "https://www.example.com/book/1001.html" --title 书名 --author 作者
    readstorm download ... --mode range --start 100 --count 50
    readstorm check
    readstorm diagnose 3 --keyword 测试
    readstorm export BOOK_ID --format epub
    readstorm plan BOOK_ID 12
    readstorm checkpoint
"""

import argparse
import logging
import os
import sys
import time

from readstorm.core.config import AppSettings, NetworkConfig, load_settings
from readstorm.core.download import DownloadCallbacks, DownloadEngine
from readstorm.core.models import DownloadMode, SearchResult
from readstorm.core.network import HttpGateway, detect_system_proxy
from readstorm.core.prefetch import ReaderAutoDownloadPlanner, ReaderAutoPrefetchPolicy
from readstorm.core.queue import SourceSerializationQueue
from readstorm.core.task import DownloadTaskStatus
from readstorm.core.utils import fix_windows_encoding, setup_logging
from readstorm.sources import RuleCatalog
from readstorm.sources.extractor import UNKNOWN_AUTHOR
from readstorm.sources.health import FastSourceHealthCheck, SourceDiagnostic
from readstorm.sources.search import HybridSearchEngine, RuleSearchEngine
from readstorm.storage import SqliteBookRepository
from readstorm.workers import DownloadManager

_MODES = {
    "full": DownloadMode.FULL_BOOK,
    "range": DownloadMode.RANGE,
    "latest": DownloadMode.LATEST_N,
}


class Services:
    """按配置组装各组件"""

    def __init__(self, settings: AppSettings):
        self.settings = settings
        self.catalog = RuleCatalog(settings.all_rule_dirs)
        self.gateway = HttpGateway(settings.network, timeout=settings.request_timeout)
        self.source_queue = SourceSerializationQueue()
        self.single_search = RuleSearchEngine(self.catalog, self.gateway)
        self.search = HybridSearchEngine(
            self.catalog, self.single_search, self.source_queue,
            max_concurrent=settings.max_concurrent_sources,
            per_source_timeout=settings.per_source_timeout,
        )
        self._repository = None

    @property
    def repository(self) -> SqliteBookRepository:
        if self._repository is None:
            self._repository = SqliteBookRepository(self.settings.db_path)
        return self._repository

    def engine(self, callbacks=None) -> DownloadEngine:
        return DownloadEngine(
            self.catalog, self.gateway, self.repository, callbacks, self.settings,
            source_queue=self.source_queue, search_engine=self.search,
        )


# ══════════════════════════════════════════════════════════════
# 子命令
# ══════════════════════════════════════════════════════════════

def cmd_sources(services: Services, args) -> int:
    rules = services.catalog.all()
    if not rules:
        print("[!] 没有可用书源")
        return 1
    for rule in rules:
        flag = "搜索" if rule.search_supported else "    "
        print(f"  [{rule.id:>3}] {flag}  {rule.name}  {rule.url}")
    print(f"[*] 共 {len(rules)} 个书源")
    return 0


def _print_results(results):
    for i, r in enumerate(results, 1):
        print(f"  {i:>3}. 《{r.title}》 {r.author}  [{r.source_id} {r.source_name}]  最新: {r.latest_chapter}")
        print(f"       {r.url}")


def cmd_search(services: Services, args) -> int:
    print(f"[*] 搜索: {args.keyword}")
    started = time.monotonic()
    results = services.search.search(args.keyword, args.source)
    _print_results(results)
    print(f"[*] {len(results)} 条结果, 用时 {time.monotonic() - started:.1f}s")
    return 0 if results else 1


def _resolve_target(services: Services, args):
    if args.keyword:
        results = services.search.search(args.keyword, args.source)
        if not results:
            print(f"[FAIL] 未搜索到: {args.keyword}")
            return None
        if not 1 <= args.pick <= len(results):
            _print_results(results)
            print(f"[FAIL] --pick 超出范围 (1..{len(results)})")
            return None
        return results[args.pick - 1]

    if not args.url or not args.title:
        print("[FAIL] 需要 --keyword, 或同时提供 --url 与 --title")
        return None
    source_id = args.source
    if not source_id:
        rule = services.catalog.find_source(args.url)
        if rule is None:
            print(f"[FAIL] 无法识别的 URL: {args.url}, 请用 --source 指定书源")
            return None
        source_id = rule.id
    rule = services.catalog.load(source_id)
    return SearchResult(
        title=args.title,
        author=args.author or UNKNOWN_AUTHOR,
        source_id=source_id,
        source_name=rule.name if rule else "",
        url=args.url,
    )


def cmd_download(services: Services, args) -> int:
    selected = _resolve_target(services, args)
    if selected is None:
        return 1

    print("=" * 60)
    print(f"  《{selected.title}》 {selected.author}  [书源 {selected.source_id}]")
    print("=" * 60)

    engine = services.engine(DownloadCallbacks(on_log=print))
    manager = DownloadManager(engine, workers=1)
    manager.subscribe(lambda snap: print(
        f"[*] {snap.status.value} {snap.progress_percent}% {snap.chapter_progress_display}"))
    task = manager.enqueue(
        selected, _MODES[args.mode],
        range_start=(args.start - 1) if args.start else None,
        range_count=args.count,
    )
    try:
        snapshot = manager.wait(task.id)
    except KeyboardInterrupt:
        print("[!] 正在停止...")
        manager.cancel(task.id)
        snapshot = manager.wait(task.id)
    finally:
        manager.shutdown(wait=True)

    if snapshot.status is not DownloadTaskStatus.SUCCEEDED:
        print(f"[FAIL] {snapshot.status.value}: {snapshot.error or ''}")
        return 1

    if args.export:
        path = engine.export(snapshot.book_id, args.export)
        print(f"[OK] 已导出: {path}")
    print(f"[DONE] book_id={snapshot.book_id}")
    return 0


def cmd_check(services: Services, args) -> int:
    checker = FastSourceHealthCheck(services.catalog, services.gateway,
                                    source_queue=services.source_queue)
    results = checker.check_all()
    ok = 0
    for r in results:
        ok += r.reachable
        print(f"  [{r.source_id:>3}] {'OK  ' if r.reachable else 'FAIL'}  {r.elapsed_ms} ms")
    print(f"[*] 可用 {ok}/{len(results)}")
    return 0


def cmd_diagnose(services: Services, args) -> int:
    diagnostic = SourceDiagnostic(services.catalog, services.gateway, services.source_queue)
    result = diagnostic.diagnose(args.source_id, args.keyword)
    for line in result.lines:
        print(line)
    return 0 if result.is_healthy else 1


def cmd_export(services: Services, args) -> int:
    path = services.engine().export(args.book_id, args.format, args.output)
    print(f"[OK] 已导出: {path}")
    return 0


def cmd_plan(services: Services, args) -> int:
    planner = ReaderAutoDownloadPlanner(services.repository)
    plan = planner.build_plan(args.book_id, args.anchor,
                              services.settings.prefetch_batch_size,
                              services.settings.prefetch_low_watermark)
    queue = ReaderAutoPrefetchPolicy.should_queue_window(plan, args.trigger)
    print(f"  窗口: 从第 {plan.window_start_index + 1} 章起 {plan.window_take_count} 章")
    print(f"  锚点后连续已下载: {plan.consecutive_done_after_anchor}")
    print(f"  缺口: {plan.first_gap_index + 1 if plan.has_gap else '无'}")
    print(f"  下发窗口任务: {'是' if queue else '否'} (trigger={args.trigger})")
    if queue and args.queue:
        manager = DownloadManager(services.engine(DownloadCallbacks(on_log=print)), workers=1)
        tasks = manager.request_prefetch(args.book_id, args.anchor, args.trigger)
        for task in tasks:
            manager.wait(task.id)
        manager.shutdown()
    return 0


def cmd_checkpoint(services: Services, args) -> int:
    busy, log_frames, done = services.repository.wal_checkpoint()
    print(f"[OK] WAL checkpoint: busy={busy} log={log_frames} checkpointed={done}")
    return 0


# ══════════════════════════════════════════════════════════════
# 入口
# ══════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="readstorm",
        description="规则驱动的网络小说搜索与下载",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default=None, help="配置文件路径 (默认: <工作目录>/appsettings.json)")
    parser.add_argument("--proxy", default=None, help="代理地址 (auto = 自动检测, none = 直连)")
    parser.add_argument("--rules", action="append", default=[], help="额外规则目录 (可多次指定)")
    parser.add_argument("--db", default=None, help="数据库路径")
    parser.add_argument("-o", "--output", default=None, help="下载 / 导出目录")
    parser.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("sources", help="列出书源")

    p = sub.add_parser("search", help="搜索书籍")
    p.add_argument("keyword")
    p.add_argument("--source", type=int, default=None, help="只搜索指定书源")

    p = sub.add_parser("download", help="下载书籍")
    p.add_argument("--keyword", default=None, help="先搜索再下载")
    p.add_argument("--pick", type=int, default=1, help="选择第 N 条搜索结果 (默认: 1)")
    p.add_argument("--url", default=None, help="书籍详情 / 目录页 URL")
    p.add_argument("--title", default=None)
    p.add_argument("--author", default=None)
    p.add_argument("--source", type=int, default=None, help="书源 id")
    p.add_argument("--mode", choices=sorted(_MODES), default="full")
    p.add_argument("--start", type=int, default=None, help="区间起始章节 (从 1 开始)")
    p.add_argument("--count", type=int, default=None, help="区间章节数 / 最新 N 章")
    p.add_argument("--export", choices=["txt", "epub"], default=None, help="完成后导出")

    sub.add_parser("check", help="书源快速探活")

    p = sub.add_parser("diagnose", help="诊断单个书源")
    p.add_argument("source_id", type=int)
    p.add_argument("--keyword", default="测试")

    p = sub.add_parser("export", help="导出已下载章节")
    p.add_argument("book_id")
    p.add_argument("--format", choices=["txt", "epub"], default=None)

    p = sub.add_parser("plan", help="查看阅读预取规划")
    p.add_argument("book_id")
    p.add_argument("anchor", type=int, help="当前阅读章节 (从 0 开始)")
    p.add_argument("--trigger", default="open", help="触发原因 (open / jump / force-current ...)")
    p.add_argument("--queue", action="store_true", help="按规划下发预取任务并等待完成")

    sub.add_parser("checkpoint", help="合并 SQLite WAL 日志")
    return parser


def apply_overrides(settings: AppSettings, args) -> AppSettings:
    if args.proxy:
        if args.proxy.lower() == "auto":
            detected = detect_system_proxy()
            if detected:
                print(f"[*] 自动检测到代理: {detected}")
            else:
                print("[!] 未检测到系统代理, 将使用直连")
            settings = settings.with_network(NetworkConfig.from_url(detected))
        elif args.proxy.lower() == "none":
            settings = settings.with_network(NetworkConfig(proxy_enabled=False))
        else:
            settings = settings.with_network(NetworkConfig.from_url(args.proxy))
    if args.rules:
        settings.rule_dirs = [os.path.abspath(d) for d in args.rules] + settings.rule_dirs
    if args.db:
        settings.db_path = os.path.abspath(args.db)
    if args.output:
        settings.download_path = os.path.abspath(args.output)
    return settings


COMMANDS = {
    "sources": cmd_sources,
    "search": cmd_search,
    "download": cmd_download,
    "check": cmd_check,
    "diagnose": cmd_diagnose,
    "export": cmd_export,
    "plan": cmd_plan,
    "checkpoint": cmd_checkpoint,
}


def main(argv=None) -> int:
    fix_windows_encoding()
    args = build_parser().parse_args(argv)

    settings = apply_overrides(load_settings(args.config), args)
    setup_logging(
        logging.DEBUG if args.verbose else logging.WARNING,
        os.path.join(settings.logs_dir, "readstorm-download.log"),
    )
    services = Services(settings)
    try:
        return COMMANDS[args.command](services, args)
    finally:
        services.gateway.close()


if __name__ == "__main__":
    sys.exit(main())
