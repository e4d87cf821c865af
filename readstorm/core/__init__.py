"""
core - 核心基础设施模块

提供数据模型、异常、取消令牌、配置、网络、工具函数等公共组件,
被书源规则、下载引擎、存储层和 CLI 共享。
"""

from .cancel import CancelToken
from .config import AppSettings, NetworkConfig, load_settings, save_settings
from .errors import (
    CancelledError, IllegalTransitionError, NetworkError, ParseError,
    ReadStormError, RuleError, StorageError, classify,
)
from .models import (
    BookEntity, ChapterEntity, ChapterStatus, DownloadErrorKind, DownloadMode,
    SearchResult, TocEntry,
)
from .network import HttpGateway, build_session, detect_system_proxy
from .utils import sanitize_filename

__all__ = [
    "CancelToken",
    "AppSettings", "NetworkConfig", "load_settings", "save_settings",
    "CancelledError", "IllegalTransitionError", "NetworkError", "ParseError",
    "ReadStormError", "RuleError", "StorageError", "classify",
    "BookEntity", "ChapterEntity", "ChapterStatus", "DownloadErrorKind", "DownloadMode",
    "SearchResult", "TocEntry",
    "HttpGateway", "build_session", "detect_system_proxy",
    "sanitize_filename",
]
