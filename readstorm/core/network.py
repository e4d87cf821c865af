"""
网络基础设施 — Session 构建、代理、带退避重试的 HttpGateway

所有书源规则的请求 (搜索 / 目录 / 正文 / 体检) 都经过 HttpGateway,
重试策略、请求身份 (profile)、代理都在这里统一管理。
"""

import logging
import os
import socket
import ssl
import threading
import time
from typing import Callable, Dict, Optional

import requests
import urllib3
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .cancel import CancelToken
from .config import NetworkConfig

logger = logging.getLogger(__name__)

# 宽松 TLS 模式下关闭未验证警告
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


def detect_system_proxy() -> Optional[str]:
    """
    自动检测系统代理

    检测顺序:
    1. Windows 注册表
    2. 环境变量 (HTTPS_PROXY / HTTP_PROXY)
    3. 本地常见端口探测 (7890 / 7891 / 7897)
    """
    try:
        import winreg
        with winreg.OpenKey(
            winreg.HKEY_CURRENT_USER,
            r"Software\Microsoft\Windows\CurrentVersion\Internet Settings",
        ) as key:
            enable, _ = winreg.QueryValueEx(key, "ProxyEnable")
            if enable:
                server, _ = winreg.QueryValueEx(key, "ProxyServer")
                if server:
                    if "=" in server:
                        for part in server.split(";"):
                            if part.strip().startswith("http="):
                                server = part.strip()[5:]
                                break
                    if not server.startswith(("http://", "https://")):
                        server = "http://" + server
                    return server
    except (ImportError, OSError):
        pass

    for var in ("HTTPS_PROXY", "HTTP_PROXY", "https_proxy", "http_proxy"):
        val = os.environ.get(var)
        if val:
            return val

    for port in (7890, 7891, 7897):
        try:
            s = socket.create_connection(("127.0.0.1", port), timeout=0.5)
            s.close()
            return f"http://127.0.0.1:{port}"
        except OSError:
            continue

    return None


# ══════════════════════════════════════════════════════════════
# TLS 适配器 — 解决部分书站 SSL 握手失败
# ══════════════════════════════════════════════════════════════

class _TLSAdapter(HTTPAdapter):
    """自定义 TLS 适配器, 降低安全级别以兼容非标 SSL 服务器"""

    def init_poolmanager(self, *args, **kwargs):
        ctx = ssl.create_default_context()
        ctx.set_ciphers("DEFAULT:@SECLEVEL=1")
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        kwargs["ssl_context"] = ctx
        return super().init_poolmanager(*args, **kwargs)


# ══════════════════════════════════════════════════════════════
# Session 构建
# ══════════════════════════════════════════════════════════════

DEFAULT_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

SEARCH_UA = "ReadStorm/0.1 Mozilla/5.0"

# 请求身份: default 用于目录/正文, search 用于搜索 (更轻的请求头)
PROFILES: Dict[str, Dict[str, str]] = {
    "default": {
        "User-Agent": DEFAULT_UA,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
    },
    "search": {
        "User-Agent": SEARCH_UA,
    },
}


def build_session(
    *,
    profile: str = "default",
    network: Optional[NetworkConfig] = None,
    lenient_tls: bool = False,
) -> requests.Session:
    """
    构建 Session: 请求身份头 + 代理, 关闭 urllib3 层重试

    Args:
        profile: 请求身份 ("default" / "search")
        network: 代理配置 (None 表示直连)
        lenient_tls: 是否使用宽松 TLS 适配器
    """
    session = requests.Session()

    # 重试由 HttpGateway 负责, 连接池层不再重试
    retry = Retry(total=0, read=False)
    adapter = _TLSAdapter(max_retries=retry) if lenient_tls else HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    if lenient_tls:
        session.verify = False

    session.headers.update(PROFILES.get(profile, PROFILES["default"]))

    proxy = network.proxy_url if network else None
    if proxy:
        session.proxies = {"http": proxy, "https": proxy}

    return session


# ══════════════════════════════════════════════════════════════
# HttpGateway
# ══════════════════════════════════════════════════════════════

SessionFactory = Callable[..., requests.Session]


class HttpGateway:
    """
    统一 HTTP 出口

    - 最多 3 次尝试; 传输异常 / 超时 / 5xx 触发重试, 退避 300ms 起翻倍
    - 非 5xx 响应 (含 4xx) 立即返回
    - 传输异常耗尽后抛出最后一次异常; 持续 5xx 返回最后一次响应
    - cancel 令牌在每次尝试前检查, 退避等待可被取消
    - 代理配置在调用时读取, configure() 可随时替换
    """

    MAX_ATTEMPTS = 3
    INITIAL_DELAY = 0.3
    DEFAULT_TIMEOUT = 15.0

    def __init__(
        self,
        network: Optional[NetworkConfig] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        lenient_tls: bool = False,
        session_factory: Optional[SessionFactory] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self._network = network or NetworkConfig()
        self.timeout = timeout
        self.lenient_tls = lenient_tls
        self._session_factory = session_factory or build_session
        self._sleep = sleep or time.sleep
        self._local = threading.local()

    # ── 配置 ──

    @property
    def network(self) -> NetworkConfig:
        return self._network

    def configure(self, network: NetworkConfig):
        """替换代理配置, 之后的请求立即生效"""
        self._network = network
        logger.info("[*] 网络配置已更新: proxy=%s", network.proxy_url or "直连")

    def _session(self, profile: str) -> requests.Session:
        # requests.Session 不保证线程安全, 每个线程按 (profile, 代理) 缓存一个
        cache = getattr(self._local, "sessions", None)
        if cache is None:
            cache = self._local.sessions = {}
        key = (profile, self._network.proxy_url)
        session = cache.get(key)
        if session is None:
            session = self._session_factory(
                profile=profile, network=self._network, lenient_tls=self.lenient_tls)
            cache[key] = session
        return session

    def _effective_timeout(self, timeout: Optional[float],
                           cancel: Optional[CancelToken]) -> float:
        value = timeout or self.timeout
        if cancel is not None:
            left = cancel.remaining()
            if left is not None:
                value = min(value, max(left, 0.1))
        return value

    def _backoff(self, delay: float, cancel: Optional[CancelToken]):
        if cancel is None:
            self._sleep(delay)
        elif cancel.wait(delay):
            cancel.raise_if_cancelled()

    # ── 请求 ──

    def request(
        self,
        method: str,
        url: str,
        *,
        data=None,
        headers: Optional[Dict[str, str]] = None,
        cookies: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        profile: str = "default",
        cancel: Optional[CancelToken] = None,
    ) -> requests.Response:
        delay = self.INITIAL_DELAY
        last_error: Optional[Exception] = None

        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            if cancel is not None:
                cancel.raise_if_cancelled()
            session = self._session(profile)
            try:
                resp = session.request(
                    method.upper(), url,
                    data=data, headers=headers, cookies=cookies,
                    timeout=self._effective_timeout(timeout, cancel),
                )
            except requests.RequestException as e:
                last_error = e
                if cancel is not None and cancel.cancelled:
                    cancel.raise_if_cancelled()
                logger.debug("[!] 请求失败 (%d/%d) %s %s: %s",
                             attempt, self.MAX_ATTEMPTS, method, url, e)
                if attempt < self.MAX_ATTEMPTS:
                    self._backoff(delay, cancel)
                    delay *= 2
                continue

            if resp.status_code >= 500 and attempt < self.MAX_ATTEMPTS:
                logger.debug("[!] HTTP %d (%d/%d) %s %s, 稍后重试",
                             resp.status_code, attempt, self.MAX_ATTEMPTS, method, url)
                resp.close()
                self._backoff(delay, cancel)
                delay *= 2
                continue
            return resp

        raise last_error

    def get_text(
        self,
        url: str,
        *,
        method: str = "GET",
        data=None,
        headers: Optional[Dict[str, str]] = None,
        cookies: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        profile: str = "default",
        cancel: Optional[CancelToken] = None,
    ) -> str:
        """请求页面并解码为文本; 非 2xx 返回空字符串"""
        resp = self.request(method, url, data=data, headers=headers, cookies=cookies,
                            timeout=timeout, profile=profile, cancel=cancel)
        if not 200 <= resp.status_code < 300:
            logger.debug("[!] HTTP %d: %s", resp.status_code, url)
            return ""
        # 未声明 charset 时 requests 默认 ISO-8859-1, 中文站多为 GBK/UTF-8
        if not resp.encoding or resp.encoding.lower() == "iso-8859-1":
            resp.encoding = resp.apparent_encoding or "utf-8"
        return resp.text

    def close(self):
        cache = getattr(self._local, "sessions", None) or {}
        for session in cache.values():
            session.close()
        cache.clear()
