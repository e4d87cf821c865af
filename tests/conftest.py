"""
共享测试夹具

网络由 FakeSession 替代 (注入 HttpGateway 的 session_factory), 不访问真实站点;
数据库放在 tmp_path 下。
"""

import json
import threading
from pathlib import Path

import pytest

from readstorm.core.config import AppSettings
from readstorm.core.download import DownloadEngine
from readstorm.core.network import HttpGateway
from readstorm.sources import RuleCatalog
from readstorm.storage import SqliteBookRepository


# ─── Fake HTTP ─────────────────────────────────────────────────────────────

class FakeResponse:
    def __init__(self, status_code=200, text="", encoding="utf-8", reason=None):
        self.status_code = status_code
        self.text = text
        self.content = text.encode("utf-8")
        self.encoding = encoding
        self.apparent_encoding = "utf-8"
        self.reason = reason or ("OK" if status_code < 400 else "Error")
        self.closed = False

    def close(self):
        self.closed = True


class FakeSession:
    """
    按 URL 返回预设响应

    路由值可以是:
        str                 → 200 + HTML
        FakeResponse        → 原样返回
        Exception 实例      → 抛出
        list                → 依次取用, 最后一项重复
        callable            → fn(method, url, **kwargs) 的返回值
    未登记的 URL 返回 404。
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self._lock = threading.Lock()

    def add(self, url, value):
        self.routes[url] = value
        return self

    def count(self, url):
        return sum(1 for _, called, _ in self.calls if called == url)

    def request(self, method, url, **kwargs):
        with self._lock:
            self.calls.append((method, url, kwargs))
            value = self.routes.get(url)
            if isinstance(value, list):
                value = value.pop(0) if len(value) > 1 else value[0]
        if value is None:
            return FakeResponse(404, "not found", reason="Not Found")
        if callable(value) and not isinstance(value, FakeResponse):
            value = value(method, url, **kwargs)
        if isinstance(value, BaseException):
            raise value
        if isinstance(value, str):
            return FakeResponse(200, value)
        return value

    def close(self):
        pass


# ─── Rule helpers ──────────────────────────────────────────────────────────

def write_rule(directory, data):
    path = Path(directory) / f"rule-{data['id']}.json"
    path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
    return path


def toc_rule(rule_id, **chapter):
    return {
        "id": rule_id,
        "url": "https://test.local/",
        "name": "集成测试书源",
        "toc": {"item": "#toc a", "offset": 0, "desc": False},
        "chapter": {"content": "#content", **chapter},
    }


def toc_html(*links):
    anchors = "\n".join(f"<a href='{href}'>{title}</a>" for href, title in links)
    return f"<html><body><div id='toc'>\n{anchors}\n</div></body></html>"


def chapter_html(body):
    return f"<html><body><div id='content'>{body}</div></body></html>"


# ─── Fixtures ──────────────────────────────────────────────────────────────

@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def gateway(fake_session, sleeps):
    return HttpGateway(
        session_factory=lambda **kwargs: fake_session,
        sleep=sleeps.append,
    )


@pytest.fixture
def rules_dir(tmp_path):
    directory = tmp_path / "rules"
    directory.mkdir()
    write_rule(directory, toc_rule(501, filterTxt="广告词"))
    write_rule(directory, toc_rule(502))
    write_rule(directory, toc_rule(503))
    return directory


@pytest.fixture
def catalog(rules_dir):
    return RuleCatalog([str(rules_dir)], include_bundled=False)


@pytest.fixture
def repository(tmp_path):
    return SqliteBookRepository(str(tmp_path / "data" / "readstorm.db"))


@pytest.fixture
def settings(tmp_path):
    return AppSettings(
        work_dir=str(tmp_path),
        download_path=str(tmp_path / "downloads"),
        min_interval_ms=0,
        max_interval_ms=0,
    )


@pytest.fixture
def engine(catalog, gateway, repository, settings):
    return DownloadEngine(catalog, gateway, repository, settings=settings)
