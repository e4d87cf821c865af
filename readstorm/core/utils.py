"""
通用工具函数
"""

import logging
import os
import re
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Optional


# ══════════════════════════════════════════════════════════════
# 文件名处理
# ══════════════════════════════════════════════════════════════

def sanitize_filename(name: str) -> str:
    """清理文件名中的非法字符 (Windows 兼容)"""
    name = re.sub(r'[<>:"/\\|?*\r\n\t]', '_', name)
    name = name.strip('. ')
    return name or "untitled"


# ══════════════════════════════════════════════════════════════
# 时间 / 文本
# ══════════════════════════════════════════════════════════════

def trace_timestamp() -> str:
    """诊断行时间戳, 精确到毫秒"""
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


def normalize_title(title: str) -> str:
    """章节标题归一化: 去空白、去常见标点, 用于跨书源匹配"""
    return re.sub(r"[\s　·:：,，.。!！?？\-—_()（）\[\]【】]", "", title or "").lower()


def title_similarity(a: str, b: str) -> float:
    """基于最长公共子序列的相似度 (0..1)"""
    a, b = normalize_title(a), normalize_title(b)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    if a in b or b in a:
        return 0.9
    prev = [0] * (len(b) + 1)
    for ch in a:
        cur = [0] * (len(b) + 1)
        for j, other in enumerate(b, 1):
            cur[j] = prev[j - 1] + 1 if ch == other else max(prev[j], cur[j - 1])
        prev = cur
    return prev[-1] / max(len(a), len(b))


# ══════════════════════════════════════════════════════════════
# 日志
# ══════════════════════════════════════════════════════════════

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None):
    """
    配置 readstorm 日志: 控制台 + 可选滚动文件

    Args:
        level: 控制台日志级别
        log_file: 文件路径 (例如 <work_dir>/logs/readstorm-download.log)
    """
    root = logging.getLogger("readstorm")
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(console)

    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=2 * 1024 * 1024, backupCount=3, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)
    return root


# ══════════════════════════════════════════════════════════════
# Windows 控制台编码修复
# ══════════════════════════════════════════════════════════════

def fix_windows_encoding():
    """修复 Windows 控制台的 UTF-8 编码问题"""
    if sys.platform == "win32":
        for name in ("stdout", "stderr"):
            stream = getattr(sys, name)
            if getattr(stream, "encoding", "").lower() != "utf-8" and hasattr(stream, "reconfigure"):
                stream.reconfigure(encoding="utf-8", errors="replace")
