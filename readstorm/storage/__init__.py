"""
storage — 书架 / 章节 / 阅读进度持久化
"""

from .repository import BookRepository, SqliteBookRepository

__all__ = ["BookRepository", "SqliteBookRepository"]
