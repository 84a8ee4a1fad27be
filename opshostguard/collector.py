"""
负载与硬件清单采集模块。

远程主机通过 CIM 查询 CPU、内存、固定磁盘使用率，以及系统日志中
最近一段时间的严重/错误事件数；本机使用 psutil 直接采集。
硬件清单（CPU、内存、主板、BIOS、系统版本、显卡）按需采集。

单台主机采集失败只记录日志，该主机不出现在本阶段的输出中。
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

import psutil

from opshostguard.concurrency import gather_bounded
from opshostguard.config import LoadConfig
from opshostguard.errors import RemoteExecutionError
from opshostguard.models import InventorySnapshot, LoadSample
from opshostguard.remote import HostDispatcher
from opshostguard.updates.base import parse_timestamp

logger = logging.getLogger(__name__)

EVENTS_SCRIPT = r"""
$since = (Get-Date).AddHours(-__HOURS__)
$critical = @(Get-WinEvent -FilterHashtable @{LogName='System'; Level=1; StartTime=$since} -ErrorAction SilentlyContinue).Count
$errors = @(Get-WinEvent -FilterHashtable @{LogName='System'; Level=2; StartTime=$since} -ErrorAction SilentlyContinue).Count
"""

LOAD_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
$cpu = (Get-CimInstance Win32_Processor | Measure-Object -Property LoadPercentage -Average).Average
$os = Get-CimInstance Win32_OperatingSystem
$ram = [math]::Round((1 - $os.FreePhysicalMemory / $os.TotalVisibleMemorySize) * 100, 2)
$disks = @(Get-CimInstance Win32_LogicalDisk -Filter "DriveType=3" | Where-Object { $_.Size -gt 0 } |
    ForEach-Object { [math]::Round((1 - $_.FreeSpace / $_.Size) * 100, 2) })
$ErrorActionPreference = 'Continue'
""" + EVENTS_SCRIPT + r"""
$boot = $os.LastBootUpTime.ToUniversalTime().ToString('o')
[pscustomobject]@{ Cpu = $cpu; Ram = $ram; Disks = $disks; Boot = $boot; Critical = $critical; Errors = $errors } |
    ConvertTo-Json -Compress|
    ConvertTo-Json -Compress
"""

LOCAL_EVENTS_SCRIPT = EVENTS_SCRIPT + r"""
[pscustomobject]@{ Critical = $critical; Errors = $errors } | ConvertTo-Json -Compress
"""

INVENTORY_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
$cpu = Get-CimInstance Win32_Processor | Select-Object -First 1
$cs = Get-CimInstance Win32_ComputerSystem
$nic = Get-CimInstance Win32_NetworkAdapterConfiguration -Filter "IPEnabled=True" | Select-Object -First 1
$board = Get-CimInstance Win32_BaseBoard
$bios = Get-CimInstance Win32_BIOS
$os = Get-CimInstance Win32_OperatingSystem
$gpu = Get-CimInstance Win32_VideoController | Select-Object -First 1
[pscustomobject]@{
    CpuModel         = $cpu.Name
    CpuCores         = $cpu.NumberOfCores
    RamGB            = [math]::Round($cs.TotalPhysicalMemory / 1GB)
    NetworkAdapter   = $nic.Description
    MacAdapter       = $nic.MACAddress
    Motherboard      = "$($board.Manufacturer) $($board.Product)".Trim()
    BiosVersion      = $bios.SMBIOSBIOSVersion
    BiosReleaseDate  = $(if ($bios.ReleaseDate) { $bios.ReleaseDate.ToUniversalTime().ToString('o') })
    OsCaption        = $os.Caption
    OsBuildNumber    = $os.BuildNumber
    GpuModel         = $gpu.Name
    GpuDriverVersion = $gpu.DriverVersion
} | ConvertTo-Json -Compress
"""


def _parse_object(host: str, stdout: str) -> dict:
    try:
        data = json.loads(stdout.strip() or "{}")
    except json.JSONDecodeError as e:
        raise RemoteExecutionError(host, f"Invalid JSON from collector on {host}", str(e)) from e
    if not isinstance(data, dict):
        raise RemoteExecutionError(host, f"Unexpected collector output on {host}")
    return data


def _as_datetime(value) -> Optional[datetime]:
    if not value:
        return None
    return parse_timestamp(value)


def _as_float_list(value) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        value = [value]
    return [round(float(v), 2) for v in value if v is not None]


def collect_local_load() -> dict:
    """使用 psutil 采集本机 CPU、内存、磁盘使用率和启动时间。

    cpu_percent 会阻塞 1 秒采样，调用方应放到线程池中执行。
    """
    cpu_percent = psutil.cpu_percent(interval=1)
    mem = psutil.virtual_memory()

    disks = []
    for part in psutil.disk_partitions(all=False):
        try:
            disks.append(round(psutil.disk_usage(part.mountpoint).percent, 2))
        except Exception:
            # 光驱、未就绪的可移动盘
            continue

    return {
        "cpu_percent": round(cpu_percent, 2),
        "ram_percent": round(mem.percent, 2),
        "disk_percent": disks,
        "boot_time": datetime.fromtimestamp(psutil.boot_time(), tz=timezone.utc),
    }


class LoadCollector:
    """采集负载样本并按阈值标记高负载。"""

    def __init__(self, dispatcher: HostDispatcher, config: Optional[LoadConfig] = None, workers: int = 1):
        self.dispatcher = dispatcher
        self.config = config or LoadConfig()
        self.workers = workers

    def is_high_load(self, cpu_percent: float, ram_percent: float) -> bool:
        return cpu_percent >= self.config.cpu_threshold or ram_percent >= self.config.ram_threshold

    def _script(self, template: str) -> str:
        return template.replace("__HOURS__", str(int(self.config.event_window_hours)))

    async def _local_events(self, host: str) -> dict:
        try:
            result = await self.dispatcher.local.run(host, self._script(LOCAL_EVENTS_SCRIPT))
            if not result.executed:
                return {}
            return _parse_object(host, result.raise_for_status().stdout)
        except RemoteExecutionError as e:
            logger.debug("Event log query failed on local host %s: %s", host, e)
            return {}

    async def collect(self, host: str) -> Optional[LoadSample]:
        if self.dispatcher.is_local(host):
            data = await asyncio.get_running_loop().run_in_executor(None, collect_local_load)
            events = await self._local_events(host)
            critical = int(events.get("Critical") or 0)
            errors = int(events.get("Errors") or 0)
        else:
            result = await self.dispatcher.run(host, self._script(LOAD_SCRIPT))
            if not result.executed:
                return None
            raw = _parse_object(host, result.raise_for_status().stdout)
            data = {
                "cpu_percent": round(float(raw.get("Cpu") or 0), 2),
                "ram_percent": round(float(raw.get("Ram") or 0), 2),
                "disk_percent": _as_float_list(raw.get("Disks")),
                "boot_time": _as_datetime(raw.get("Boot")),
            }
            critical = int(raw.get("Critical") or 0)
            errors = int(raw.get("Errors") or 0)

        sample = LoadSample(
            host=host,
            critical_events=critical,
            error_events=errors,
            high_load=self.is_high_load(data["cpu_percent"], data["ram_percent"]),
            **data,
        )
        if sample.high_load:
            logger.warning(
                "High load on %s: cpu=%s%% ram=%s%%", host, sample.cpu_percent, sample.ram_percent
            )
        return sample

    async def _safe_collect(self, host: str) -> Optional[LoadSample]:
        try:
            return await self.collect(host)
        except (RemoteExecutionError, ValueError, TypeError) as e:
            logger.warning("Load collection failed on %s: %s", host, e)
            return None

    async def collect_many(self, hosts: Iterable[str]) -> Dict[str, LoadSample]:
        samples = await gather_bounded(hosts, self._safe_collect, self.workers)
        return {s.host: s for s in samples if s is not None}


class InventoryCollector:
    """采集硬件清单快照。"""

    def __init__(self, dispatcher: HostDispatcher, workers: int = 1):
        self.dispatcher = dispatcher
        self.workers = workers

    async def collect(self, host: str) -> Optional[InventorySnapshot]:
        result = await self.dispatcher.run(host, INVENTORY_SCRIPT)
        if not result.executed:
            return None
        raw = _parse_object(host, result.raise_for_status().stdout)
        return InventorySnapshot(
            host=host,
            cpu_model=raw.get("CpuModel"),
            cpu_cores=raw.get("CpuCores"),
            ram_capacity_gb=raw.get("RamGB"),
            network_adapter=raw.get("NetworkAdapter"),
            mac_adapter=raw.get("MacAdapter"),
            motherboard=raw.get("Motherboard") or None,
            bios_version=raw.get("BiosVersion"),
            bios_release_date=_as_datetime(raw.get("BiosReleaseDate")),
            os_caption=raw.get("OsCaption"),
            os_build_number=str(raw["OsBuildNumber"]) if raw.get("OsBuildNumber") else None,
            gpu_model=raw.get("GpuModel"),
            gpu_driver_version=raw.get("GpuDriverVersion"),
        )

    async def _safe_collect(self, host: str) -> Optional[InventorySnapshot]:
        try:
            return await self.collect(host)
        except (RemoteExecutionError, ValueError, TypeError) as e:
            logger.warning("Inventory collection failed on %s: %s", host, e)
            return None

    async def collect_many(self, hosts: Iterable[str]) -> Dict[str, InventorySnapshot]:
        snapshots = await gather_bounded(hosts, self._safe_collect, self.workers)
        return {s.host: s for s in snapshots if s is not None}
