"""
readstorm — 规则驱动的网络小说搜索与下载

书源以 JSON 规则描述 (CSS 选择器), 搜索结果可整本 / 区间 / 最新 N 章下载,
章节逐条落入 SQLite 书架, 支持断点续传、阅读预取和 TXT / EPUB 导出。
"""

__version__ = "0.1.0"
