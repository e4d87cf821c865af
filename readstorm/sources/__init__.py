"""
sources — 书源规则目录

每个书源是一个 rule-<id>.json 文件, 通过 CSS 选择器描述
搜索 / 目录 / 正文的页面结构。添加新书源只需:
  1. 在用户规则目录 (<work_dir>/rules) 下放入 rule-<id>.json
  2. 与内置规则同 id 时, 用户规则优先
"""

import glob
import logging
import os
import threading
from typing import Dict, List, Optional
from urllib.parse import urlparse

from readstorm.core.errors import RuleError
from readstorm.core.models import BookSourceRule
from .rule import RuleSchema, load_rule_file

logger = logging.getLogger(__name__)

BUNDLED_RULES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "rules")


def _is_placeholder(rule: RuleSchema, path: str) -> bool:
    """模板 / 示例 / 不可用规则不出现在书源列表中"""
    name = os.path.basename(path).lower()
    if "template" in name or "unavailable" in name:
        return True
    if "示例" in rule.name:
        return True
    return "example-source" in rule.url.lower()


class RuleCatalog:
    """
    按优先级排列的规则目录集合

    rule_dirs 中靠前的目录优先; 内置目录总是排在最后。
    """

    def __init__(self, rule_dirs: Optional[List[str]] = None, include_bundled: bool = True):
        dirs = [os.path.abspath(d) for d in (rule_dirs or [])]
        if include_bundled and BUNDLED_RULES_DIR not in dirs:
            dirs.append(BUNDLED_RULES_DIR)
        self._dirs = dirs
        self._cache: Dict[int, RuleSchema] = {}
        self._lock = threading.Lock()

    @property
    def directories(self) -> List[str]:
        return list(self._dirs)

    def find_rule_file(self, source_id: int) -> Optional[str]:
        for directory in self._dirs:
            path = os.path.join(directory, f"rule-{source_id}.json")
            if os.path.isfile(path):
                return path
        return None

    def load(self, source_id: int) -> Optional[RuleSchema]:
        """加载规则; 没有对应文件返回 None, 文件损坏抛出 RuleError"""
        if source_id is None or source_id <= 0:
            return None
        with self._lock:
            cached = self._cache.get(source_id)
        if cached is not None:
            return cached

        path = self.find_rule_file(source_id)
        if path is None:
            return None
        rule = load_rule_file(path)
        with self._lock:
            self._cache[source_id] = rule
        return rule

    def all(self) -> List[BookSourceRule]:
        """列出所有可用书源, 按 id 排序"""
        result: Dict[int, BookSourceRule] = {}
        # 低优先级目录先读, 高优先级覆盖
        for directory in reversed(self._dirs):
            for path in sorted(glob.glob(os.path.join(directory, "rule-*.json"))):
                try:
                    rule = load_rule_file(path)
                except (RuleError, OSError) as e:
                    logger.debug("[!] 跳过规则文件 %s: %s", path, e)
                    continue
                if _is_placeholder(rule, path):
                    continue
                result[rule.id] = BookSourceRule(
                    id=rule.id,
                    name=rule.name or f"Rule-{rule.id}",
                    url=rule.url,
                    search_supported=rule.search_supported,
                )
        return [result[k] for k in sorted(result)]

    def searchable(self) -> List[RuleSchema]:
        rules = []
        for item in self.all():
            if not item.search_supported:
                continue
            try:
                rule = self.load(item.id)
            except RuleError as e:
                logger.warning("[!] 书源 %s 规则加载失败: %s", item.id, e)
                continue
            if rule is not None:
                rules.append(rule)
        return rules

    def find_source(self, url: str) -> Optional[RuleSchema]:
        """根据书籍地址的域名匹配书源"""
        host = (urlparse(url).hostname or "").lower()
        if not host:
            return None
        for item in self.all():
            rule_host = (urlparse(item.url).hostname or "").lower()
            if rule_host and (host == rule_host or host.endswith("." + rule_host)
                              or rule_host.endswith("." + host)):
                return self.load(item.id)
        return None

    def reload(self):
        with self._lock:
            self._cache.clear()

