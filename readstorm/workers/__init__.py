"""
workers — 后台下载任务调度
"""

from .manager import DownloadManager

__all__ = ["DownloadManager"]
