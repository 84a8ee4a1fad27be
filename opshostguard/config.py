"""
编排引擎配置加载模块。

定义所有配置数据类，并从 YAML 文件加载配置。
凭据和上报 token 支持环境变量覆盖（OPSHOSTGUARD_PASSWORD 等，可放在 .env 中），
时间间隔支持简写（如 '30s'、'2m'、'1h'）。

配置对象只构造一次，显式传入各个编排器，不使用全局可变状态。
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

from opshostguard.errors import ConfigurationError
from opshostguard.models import RetryPolicy

UPDATE_STRATEGIES = ("native", "extended")
WINRM_TRANSPORTS = ("ntlm", "kerberos", "credssp", "basic", "ssl", "plaintext")


class EnvOverrides(BaseSettings):
    """从环境变量 / .env 读取的敏感配置，优先级高于 YAML。"""
    model_config = SettingsConfigDict(
        env_prefix="OPSHOSTGUARD_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    username: Optional[str] = None
    password: Optional[str] = None
    server_token: Optional[str] = None


@dataclass
class GroupsConfig:
    """主机组与 MAC 组配置文件路径（JSON）。"""
    groups_file: str = "groups.json"
    macs_file: str = "macs.json"


@dataclass
class ProbeConfig:
    """就绪探测配置。"""
    management_port: int = 135  # RPC endpoint mapper
    ping_timeout: int = 1       # 单次 ping 超时（秒）
    connect_timeout: float = 2.0
    use_dns: bool = True        # 解析全部 IPv4 地址逐一测试


@dataclass
class WakeConfig:
    """网络唤醒配置。"""
    broadcast_address: str = "255.255.255.255"
    port: int = 9
    wait_interval: int = 120  # 发送后到复查的等待（秒）
    max_attempts: int = 1
    backoff: float = 1.0

    @property
    def retry(self) -> RetryPolicy:
        return RetryPolicy(
            wait_interval=self.wait_interval, max_attempts=self.max_attempts, backoff=self.backoff
        )


@dataclass
class ShutdownConfig:
    """远程关机配置。"""
    wait_interval: int = 60
    max_attempts: int = 1
    backoff: float = 1.0
    reprobe: bool = False  # 关机前是否对刚唤醒的主机重新探测

    @property
    def retry(self) -> RetryPolicy:
        return RetryPolicy(
            wait_interval=self.wait_interval, max_attempts=self.max_attempts, backoff=self.backoff
        )


@dataclass
class UpdateConfig:
    """补丁更新配置。"""
    strategy: str = "native"  # native / extended
    force: bool = False       # 忽略活动会话强制更新
    verify_days: Optional[int] = None


@dataclass
class LoadConfig:
    """负载采集阈值。"""
    cpu_threshold: float = 80.0
    ram_threshold: float = 80.0
    event_window_hours: int = 24


@dataclass
class CredentialConfig:
    """远程凭据。密码建议通过 OPSHOSTGUARD_PASSWORD 提供。"""
    username: str = ""
    password: str = ""


@dataclass
class RemoteConfig:
    """WinRM 远程执行配置。"""
    transport: str = "ntlm"
    port: int = 5985
    use_ssl: bool = False
    operation_timeout: int = 60
    read_timeout: int = 90
    dry_run: bool = False  # 只记录不执行远程命令


@dataclass
class ConcurrencyConfig:
    """每阶段并发工作者数量，1 即顺序处理。"""
    workers: int = 1


@dataclass
class ServerConfig:
    """结果上报服务端配置，url 为空时不上报。"""
    url: str = ""
    token: str = ""


@dataclass
class OrchestratorConfig:
    """主配置，聚合所有子配置。"""
    groups: GroupsConfig = field(default_factory=GroupsConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    wake: WakeConfig = field(default_factory=WakeConfig)
    shutdown: ShutdownConfig = field(default_factory=ShutdownConfig)
    updates: UpdateConfig = field(default_factory=UpdateConfig)
    load: LoadConfig = field(default_factory=LoadConfig)
    credentials: CredentialConfig = field(default_factory=CredentialConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _parse_interval(val) -> int:
    """解析时间间隔，支持 '30s'、'2m'、'1h' 等简写格式。"""
    if isinstance(val, bool):
        raise ConfigurationError(f"Invalid interval: {val!r}")
    if isinstance(val, int):
        return val
    s = str(val).strip().lower()
    try:
        if s.endswith("s"):
            return int(s[:-1])
        if s.endswith("m"):
            return int(s[:-1]) * 60
        if s.endswith("h"):
            return int(s[:-1]) * 3600
        return int(s)
    except ValueError:
        raise ConfigurationError(f"Invalid interval: {val!r}") from None


_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0"}


def _parse_bool(val, name: str) -> bool:
    """解析开关项。加引号的 "false" 按字面值处理，而不是当作非空字符串。"""
    if isinstance(val, bool):
        return val
    s = str(val).strip().lower()
    if s in _TRUE_STRINGS:
        return True
    if s in _FALSE_STRINGS:
        return False
    raise ConfigurationError(f"Invalid boolean for '{name}': {val!r}")


def _section(data: dict, name: str) -> dict:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Config section '{name}' must be a mapping")
    return value


def _resolve_path(base: Path, value: str) -> str:
    """相对路径以配置文件所在目录为基准。"""
    p = Path(value)
    if not p.is_absolute():
        p = base / p
    return str(p)


def load_config(path: str) -> OrchestratorConfig:
    """从 YAML 文件加载编排配置。

    Args:
        path: 配置文件路径。

    Returns:
        解析后的 OrchestratorConfig 实例。

    Raises:
        ConfigurationError: 配置文件不存在或内容无效时抛出。
    """
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    try:
        with open(p) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}", str(e)) from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config root must be a mapping: {path}")

    cfg = OrchestratorConfig()
    base = p.parent

    # 主机组文件，相对路径以配置文件目录为基准
    g = _section(data, "groups")
    cfg.groups.groups_file = _resolve_path(base, g.get("groups_file", cfg.groups.groups_file))
    cfg.groups.macs_file = _resolve_path(base, g.get("macs_file", cfg.groups.macs_file))

    pr = _section(data, "probe")
    cfg.probe.management_port = int(pr.get("management_port", cfg.probe.management_port))
    cfg.probe.ping_timeout = _parse_interval(pr.get("ping_timeout", cfg.probe.ping_timeout))
    cfg.probe.connect_timeout = float(pr.get("connect_timeout", cfg.probe.connect_timeout))
    cfg.probe.use_dns = _parse_bool(pr.get("use_dns", cfg.probe.use_dns), "probe.use_dns")

    w = _section(data, "wake")
    cfg.wake.broadcast_address = w.get("broadcast_address", cfg.wake.broadcast_address)
    cfg.wake.port = int(w.get("port", cfg.wake.port))
    cfg.wake.wait_interval = _parse_interval(w.get("wait_interval", cfg.wake.wait_interval))
    cfg.wake.max_attempts = int(w.get("max_attempts", cfg.wake.max_attempts))
    cfg.wake.backoff = float(w.get("backoff", cfg.wake.backoff))

    s = _section(data, "shutdown")
    cfg.shutdown.wait_interval = _parse_interval(s.get("wait_interval", cfg.shutdown.wait_interval))
    cfg.shutdown.max_attempts = int(s.get("max_attempts", cfg.shutdown.max_attempts))
    cfg.shutdown.backoff = float(s.get("backoff", cfg.shutdown.backoff))
    cfg.shutdown.reprobe = _parse_bool(s.get("reprobe", cfg.shutdown.reprobe), "shutdown.reprobe")

    u = _section(data, "updates")
    cfg.updates.strategy = str(u.get("strategy", cfg.updates.strategy)).lower()
    cfg.updates.force = _parse_bool(u.get("force", cfg.updates.force), "updates.force")
    verify_days = u.get("verify_days")
    cfg.updates.verify_days = int(verify_days) if verify_days is not None else None

    ld = _section(data, "load")
    cfg.load.cpu_threshold = float(ld.get("cpu_threshold", cfg.load.cpu_threshold))
    cfg.load.ram_threshold = float(ld.get("ram_threshold", cfg.load.ram_threshold))
    cfg.load.event_window_hours = int(ld.get("event_window_hours", cfg.load.event_window_hours))

    r = _section(data, "remote")
    cfg.remote.transport = str(r.get("transport", cfg.remote.transport)).lower()
    cfg.remote.port = int(r.get("port", cfg.remote.port))
    cfg.remote.use_ssl = _parse_bool(r.get("use_ssl", cfg.remote.use_ssl), "remote.use_ssl")
    cfg.remote.operation_timeout = _parse_interval(r.get("operation_timeout", cfg.remote.operation_timeout))
    cfg.remote.read_timeout = _parse_interval(r.get("read_timeout", cfg.remote.read_timeout))
    cfg.remote.dry_run = _parse_bool(r.get("dry_run", cfg.remote.dry_run), "remote.dry_run")

    c = _section(data, "concurrency")
    cfg.concurrency.workers = int(c.get("workers", cfg.concurrency.workers))

    srv = _section(data, "server")
    cfg.server.url = str(srv.get("url", "")).rstrip("/")
    cfg.server.token = srv.get("token", "")

    cred = _section(data, "credentials")
    cfg.credentials.username = cred.get("username", "")
    cfg.credentials.password = cred.get("password", "")

    # 环境变量优先于配置文件
    env = EnvOverrides()
    if env.username:
        cfg.credentials.username = env.username
    if env.password:
        cfg.credentials.password = env.password
    if env.server_token:
        cfg.server.token = env.server_token

    validate_config(cfg)
    return cfg


def validate_config(cfg: OrchestratorConfig) -> None:
    """校验取值范围，任何错误都在触碰主机之前终止运行。"""
    if cfg.updates.strategy not in UPDATE_STRATEGIES:
        raise ConfigurationError(
            f"Unknown update strategy: {cfg.updates.strategy}",
            f"expected one of {', '.join(UPDATE_STRATEGIES)}",
        )
    if cfg.remote.transport not in WINRM_TRANSPORTS:
        raise ConfigurationError(f"Unknown WinRM transport: {cfg.remote.transport}")
    if not 0 < cfg.probe.management_port < 65536:
        raise ConfigurationError(f"Invalid management port: {cfg.probe.management_port}")
    if cfg.concurrency.workers < 1:
        raise ConfigurationError("concurrency.workers must be >= 1")
    if cfg.wake.max_attempts < 1 or cfg.shutdown.max_attempts < 1:
        raise ConfigurationError("max_attempts must be >= 1")
    if cfg.updates.verify_days is not None and cfg.updates.verify_days < 1:
        raise ConfigurationError("updates.verify_days must be >= 1")


def default_config_path() -> str:
    return os.environ.get("OPSHOSTGUARD_CONFIG", "/etc/opshostguard/config.yaml")
