"""
生命周期引擎的 Pydantic 数据模型。

探测结果、唤醒/关机/更新的单机结果、单机汇总记录与机群统计。
汇总记录和统计是交给报表导出层和仪表盘的唯一数据契约。
"""
from __future__ import annotations

import enum
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

UTC = timezone.utc

_MAC_HEX_RE = re.compile(r"^[0-9A-Fa-f]{12}$")


def host_key(name: str) -> str:
    """主机名比较键：Windows 主机名不区分大小写。"""
    return name.strip().lower()


def normalize_mac(value: str) -> str:
    """接受 AA:BB:..、AA-BB-..、AABB.CCDD.EEFF 和 12 位十六进制，统一为 AA:BB:CC:DD:EE:FF。"""
    raw = re.sub(r"[:\-.\s]", "", value.strip())
    if not _MAC_HEX_RE.match(raw):
        raise ValueError(f"Invalid MAC address: {value!r}")
    raw = raw.upper()
    return ":".join(raw[i:i + 2] for i in range(0, 12, 2))


def _now() -> datetime:
    return datetime.now(UTC)


class ProbeClass(str, enum.Enum):
    """就绪探测分类。mgmt-only 按构造不会出现。"""
    UP = "up"
    PING_ONLY = "ping-only"
    UNREACHABLE = "unreachable"


class WakeStatus(str, enum.Enum):
    UNKNOWN = "Unknown"
    ALREADY_UP = "AlreadyUp"
    PENDING_VERIFICATION = "PendingVerification"
    SUCCESS = "Success"
    FAILED = "Failed"


class ShutdownStatus(str, enum.Enum):
    SUCCESS = "Success"
    WARNING = "Warning"
    STILL_ACTIVE = "StillActive"
    UNKNOWN = "Unknown"
    SKIPPED = "Skipped"
    FAILED = "Failed"


# 计入“关机失败”的状态
SHUTDOWN_FAILURE_STATUSES = frozenset(
    {ShutdownStatus.STILL_ACTIVE, ShutdownStatus.FAILED, ShutdownStatus.UNKNOWN}
)


class UpdateStatus(str, enum.Enum):
    INSTALLED = "Installed"
    FAILED = "Failed"
    SKIPPED = "Skipped"


class FleetStatus(str, enum.Enum):
    SUCCESS = "Success"
    PARTIAL_FAILURES = "Partial Failures"


class HostIdentity(BaseModel):
    """主机身份：网络名，以及唤醒所需的 MAC 地址。加载后不可变。"""
    model_config = ConfigDict(frozen=True)

    name: str
    mac: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Host name must not be empty")
        return v

    @field_validator("mac")
    @classmethod
    def _normalize_mac(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return normalize_mac(v)

    @property
    def key(self) -> str:
        return host_key(self.name)


class HostGroup(BaseModel):
    """命名、有序的主机集合。ephemeral 组由显式主机列表或单台主机临时构造。"""
    name: str
    hosts: list[HostIdentity] = Field(default_factory=list)
    ephemeral: bool = False

    @field_validator("hosts")
    @classmethod
    def _dedupe(cls, hosts: list[HostIdentity]) -> list[HostIdentity]:
        seen: set[str] = set()
        unique = []
        for h in hosts:
            if h.key in seen:
                continue
            seen.add(h.key)
            unique.append(h)
        return unique

    @property
    def host_names(self) -> list[str]:
        return [h.name for h in self.hosts]

    def __len__(self) -> int:
        return len(self.hosts)


class ProbeResult(BaseModel):
    """单次探测结果。每次调用重新生成，跨周期不缓存。"""
    host: str
    ping_reachable: bool = False
    management_port_reachable: bool = False
    resolved_addresses: list[str] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=_now)

    @property
    def classification(self) -> ProbeClass:
        return classify(self.ping_reachable, self.management_port_reachable)

    @property
    def is_up(self) -> bool:
        return self.classification == ProbeClass.UP


def classify(ping: bool, mgmt: bool) -> ProbeClass:
    """ping 不通时不论管理端口结果一律视为 unreachable。"""
    if not ping:
        return ProbeClass.UNREACHABLE
    return ProbeClass.UP if mgmt else ProbeClass.PING_ONLY


class RetryPolicy(BaseModel):
    """“等待后复查”参数。max_attempts=1 即发送一次、复查一次。"""
    wait_interval: float = Field(default=120.0, ge=0)
    max_attempts: int = Field(default=1, ge=1)
    backoff: float = Field(default=1.0, ge=1.0)

    def delay(self, attempt: int) -> float:
        return self.wait_interval * (self.backoff ** attempt)


class WakeResult(BaseModel):
    host: str
    status: WakeStatus = WakeStatus.UNKNOWN
    mac: Optional[str] = None
    message: str = ""
    probe: Optional[ProbeResult] = None  # 决定最终状态的那次探测
    timestamp: datetime = Field(default_factory=_now)

    @property
    def succeeded(self) -> bool:
        return self.status in (WakeStatus.ALREADY_UP, WakeStatus.SUCCESS)


class ShutdownResult(BaseModel):
    host: str
    status: ShutdownStatus
    reason: Optional[str] = None
    message: str = ""
    probe: Optional[ProbeResult] = None
    timestamp: datetime = Field(default_factory=_now)

    @property
    def failed(self) -> bool:
        return self.status in SHUTDOWN_FAILURE_STATUSES


class SessionState(BaseModel):
    host: str
    active: bool = False
    users: list[str] = Field(default_factory=list)


class UpdateEntry(BaseModel):
    """一次更新动作，或核查时找到的一条历史更新。"""
    host: str
    update_title: str
    status: UpdateStatus
    timestamp: datetime = Field(default_factory=_now)
    kb: Optional[str] = None


class LoadSample(BaseModel):
    host: str
    cpu_percent: float = 0.0
    ram_percent: float = 0.0
    disk_percent: list[float] = Field(default_factory=list)
    critical_events: int = 0
    error_events: int = 0
    high_load: bool = False
    boot_time: Optional[datetime] = None
    timestamp: datetime = Field(default_factory=_now)

    @computed_field
    @property
    def uptime_seconds(self) -> Optional[int]:
        """采样时刻距上次启动的秒数，启动时间未知时为 None。"""
        if self.boot_time is None:
            return None
        return max(0, int((self.timestamp - self.boot_time).total_seconds()))


class InventorySnapshot(BaseModel):
    host: str
    cpu_model: Optional[str] = None
    cpu_cores: Optional[int] = None
    ram_capacity_gb: Optional[int] = None
    network_adapter: Optional[str] = None
    mac_adapter: Optional[str] = None
    motherboard: Optional[str] = None
    bios_version: Optional[str] = None
    bios_release_date: Optional[datetime] = None
    os_caption: Optional[str] = None
    os_build_number: Optional[str] = None
    gpu_model: Optional[str] = None
    gpu_driver_version: Optional[str] = None
    collected_at: datetime = Field(default_factory=_now)


class HostLifecycleRecord(BaseModel):
    """单机汇总记录。每次运行每个主机名恰好一条，后续阶段只做充实。"""
    host: str
    wake: Optional[WakeResult] = None
    shutdown: Optional[ShutdownResult] = None
    session: Optional[SessionState] = None
    updates_applied: list[UpdateEntry] = Field(default_factory=list)
    updates_verified: list[UpdateEntry] = Field(default_factory=list)
    load: Optional[LoadSample] = None
    inventory: Optional[InventorySnapshot] = None
    # 更新阶段之后查询；None 表示未查询或查询失败
    pending_reboot: Optional[bool] = None

    @computed_field
    @property
    def failed_wake(self) -> bool:
        return self.wake is not None and self.wake.status == WakeStatus.FAILED

    @computed_field
    @property
    def failed_shutdown(self) -> bool:
        return self.shutdown is not None and self.shutdown.failed

    @computed_field
    @property
    def failed(self) -> bool:
        return self.failed_wake or self.failed_shutdown

    @computed_field
    @property
    def high_load(self) -> bool:
        return self.load is not None and self.load.high_load

    @computed_field
    @property
    def has_critical_events(self) -> bool:
        return self.load is not None and self.load.critical_events > 0

    @computed_field
    @property
    def session_active(self) -> bool:
        return self.session is not None and self.session.active


def _percentage(count: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(count / total * 100, 2)


class FleetSummary(BaseModel):
    """机群统计。每次运行从最终记录集一次性计算，不做增量维护。"""
    total_hosts: int = 0
    failed_wake_count: int = 0
    failed_shutdown_count: int = 0
    failed_hosts_count: int = 0
    failed_percentage: float = 0.0
    high_load_count: int = 0
    high_load_percentage: float = 0.0
    critical_event_hosts_count: int = 0
    critical_error_percentage: float = 0.0
    active_session_count: int = 0
    active_session_percentage: float = 0.0
    pending_reboot_count: int = 0
    total_updates_installed: int = 0
    total_updates_verified: int = 0
    total_critical_events: int = 0
    total_error_events: int = 0
    overall_status: FleetStatus = FleetStatus.SUCCESS
    execution_start: Optional[datetime] = None
    execution_end: Optional[datetime] = None
    duration: Optional[timedelta] = None

    @classmethod
    def from_records(
        cls,
        records: list[HostLifecycleRecord],
        started_at: Optional[datetime] = None,
        finished_at: Optional[datetime] = None,
    ) -> "FleetSummary":
        total = len(records)
        failed_wake = sum(1 for r in records if r.failed_wake)
        failed_shutdown = sum(1 for r in records if r.failed_shutdown)
        failed_hosts = sum(1 for r in records if r.failed)
        high_load = sum(1 for r in records if r.high_load)
        critical_hosts = sum(1 for r in records if r.has_critical_events)
        active_sessions = sum(1 for r in records if r.session_active)
        pending_reboot = sum(1 for r in records if r.pending_reboot)
        installed = sum(
            1 for r in records for u in r.updates_applied if u.status == UpdateStatus.INSTALLED
        )
        verified = sum(
            1 for r in records for u in r.updates_verified if u.status == UpdateStatus.INSTALLED
        )
        critical_events = sum(r.load.critical_events for r in records if r.load)
        error_events = sum(r.load.error_events for r in records if r.load)

        status = (
            FleetStatus.SUCCESS
            if failed_hosts == 0 and critical_hosts == 0
            else FleetStatus.PARTIAL_FAILURES
        )
        duration = None
        if started_at and finished_at:
            duration = finished_at - started_at

        return cls(
            total_hosts=total,
            failed_wake_count=failed_wake,
            failed_shutdown_count=failed_shutdown,
            failed_hosts_count=failed_hosts,
            failed_percentage=_percentage(failed_hosts, total),
            high_load_count=high_load,
            high_load_percentage=_percentage(high_load, total),
            critical_event_hosts_count=critical_hosts,
            critical_error_percentage=_percentage(critical_hosts, total),
            active_session_count=active_sessions,
            active_session_percentage=_percentage(active_sessions, total),
            pending_reboot_count=pending_reboot,
            total_updates_installed=installed,
            total_updates_verified=verified,
            total_critical_events=critical_events,
            total_error_events=error_events,
            overall_status=status,
            execution_start=started_at,
            execution_end=finished_at,
            duration=duration,
        )
