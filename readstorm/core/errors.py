"""
异常体系 — 下载 / 搜索 / 存储共用

每类异常携带一个 DownloadErrorKind, 供任务状态和章节错误记录使用。
"""

import json
import sqlite3

import requests

from .models import DownloadErrorKind


class ReadStormError(Exception):
    """所有业务异常的基类"""
    kind = DownloadErrorKind.UNKNOWN


class NetworkError(ReadStormError):
    kind = DownloadErrorKind.NETWORK


class RuleError(ReadStormError):
    """书源规则缺失、格式错误或不支持当前操作"""
    kind = DownloadErrorKind.RULE


class ParseError(ReadStormError):
    """页面结构与规则不匹配 (目录为空 / 正文为空)"""
    kind = DownloadErrorKind.PARSE


class StorageError(ReadStormError):
    kind = DownloadErrorKind.IO


class CancelledError(ReadStormError):
    """
    协作式取消

    reason:
        "cancel"  用户取消
        "pause"   用户暂停 (任务进入 Paused, 可恢复)
        "timeout" 截止时间已到
    """
    kind = DownloadErrorKind.CANCELLED

    def __init__(self, message: str = "任务已取消", reason: str = "cancel"):
        super().__init__(message)
        self.reason = reason


class IllegalTransitionError(RuntimeError):
    """任务状态机收到不允许的迁移"""

    def __init__(self, current, target):
        super().__init__(f"非法状态迁移: {current.value} -> {target.value}")
        self.current = current
        self.target = target


def classify(exc: BaseException) -> DownloadErrorKind:
    """把任意异常归类为 DownloadErrorKind"""
    if isinstance(exc, ReadStormError):
        return exc.kind
    # requests 的异常继承自 IOError, 必须先判断
    if isinstance(exc, requests.RequestException):
        return DownloadErrorKind.NETWORK
    if isinstance(exc, json.JSONDecodeError):
        return DownloadErrorKind.RULE
    if isinstance(exc, (sqlite3.Error, OSError)):
        return DownloadErrorKind.IO
    return DownloadErrorKind.UNKNOWN
