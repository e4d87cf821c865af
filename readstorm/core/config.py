"""
应用配置 — 工作目录 / 下载目录 / 抓取间隔 / 代理 / 并发参数

配置以 JSON 存放在工作目录下的 appsettings.json,
缺失字段使用默认值; 环境变量 READSTORM_HOME 可覆盖默认工作目录。
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from typing import List, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

SETTINGS_FILE = "appsettings.json"
DB_FILE = "readstorm.db"


def default_work_dir() -> str:
    env = os.environ.get("READSTORM_HOME", "").strip()
    if env:
        return os.path.abspath(os.path.expanduser(env))
    return os.path.join(os.path.expanduser("~"), ".readstorm")


# ══════════════════════════════════════════════════════════════
# 网络配置 (显式传入 HttpGateway, 不使用全局变量)
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class NetworkConfig:
    proxy_enabled: bool = False
    proxy_host: str = "127.0.0.1"
    proxy_port: int = 7890

    @property
    def proxy_url(self) -> Optional[str]:
        if not self.proxy_enabled or not self.proxy_host.strip():
            return None
        host = self.proxy_host.strip()
        if "://" in host:
            return f"{host}:{self.proxy_port}"
        return f"http://{host}:{self.proxy_port}"

    @classmethod
    def from_url(cls, proxy: Optional[str]) -> "NetworkConfig":
        """解析 http://127.0.0.1:7890 形式的代理地址; 空值表示不使用代理"""
        if not proxy or not proxy.strip():
            return cls(proxy_enabled=False)
        text = proxy.strip()
        if "://" not in text:
            text = "http://" + text
        parsed = urlparse(text)
        host = parsed.hostname or "127.0.0.1"
        if parsed.scheme not in ("http", "https"):
            host = f"{parsed.scheme}://{host}"
        return cls(proxy_enabled=True, proxy_host=host,
                   proxy_port=parsed.port or 7890)


# ══════════════════════════════════════════════════════════════
# 应用配置
# ══════════════════════════════════════════════════════════════

@dataclass
class AppSettings:
    work_dir: str = field(default_factory=default_work_dir)
    download_path: str = ""
    export_format: str = "txt"
    min_interval_ms: int = 200
    max_interval_ms: int = 400
    network: NetworkConfig = field(default_factory=NetworkConfig)
    max_concurrent_sources: int = 5
    per_source_timeout: float = 12.0
    request_timeout: float = 15.0
    prefetch_batch_size: int = 10
    prefetch_low_watermark: int = 3
    latest_n: int = 20
    download_workers: int = 2
    rule_dirs: List[str] = field(default_factory=list)
    db_path: str = ""

    def __post_init__(self):
        if not self.download_path:
            self.download_path = os.path.join(self.work_dir, "downloads")
        if not self.db_path:
            self.db_path = os.path.join(self.work_dir, DB_FILE)
        if self.max_interval_ms < self.min_interval_ms:
            self.max_interval_ms = self.min_interval_ms
        self.export_format = (self.export_format or "txt").lower()

    @property
    def logs_dir(self) -> str:
        return os.path.join(self.work_dir, "logs")

    @property
    def user_rules_dir(self) -> str:
        return os.path.join(self.work_dir, "rules")

    @property
    def all_rule_dirs(self) -> List[str]:
        """用户规则目录 (按优先级), 不含内置目录"""
        dirs = list(self.rule_dirs)
        if self.user_rules_dir not in dirs:
            dirs.append(self.user_rules_dir)
        return dirs

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AppSettings":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        net = kwargs.pop("network", None)
        if isinstance(net, dict):
            net_known = {f.name for f in fields(NetworkConfig)}
            kwargs["network"] = NetworkConfig(
                **{k: v for k, v in net.items() if k in net_known})
        elif isinstance(net, NetworkConfig):
            kwargs["network"] = net
        return cls(**kwargs)

    def with_network(self, network: NetworkConfig) -> "AppSettings":
        return replace(self, network=network)


def settings_path(work_dir: Optional[str] = None) -> str:
    return os.path.join(work_dir or default_work_dir(), SETTINGS_FILE)


def load_settings(path: Optional[str] = None) -> AppSettings:
    """读取配置; 文件不存在或损坏时返回默认配置"""
    path = path or settings_path()
    if not os.path.isfile(path):
        return AppSettings()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("[!] 配置文件读取失败, 使用默认值: %s (%s)", path, e)
        return AppSettings()
    if not isinstance(data, dict):
        return AppSettings()
    return AppSettings.from_dict(data)


def save_settings(settings: AppSettings, path: Optional[str] = None) -> str:
    path = path or settings_path(settings.work_dir)
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(settings.to_dict(), f, ensure_ascii=False, indent=2)
    return path
