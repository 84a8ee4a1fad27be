"""
结果汇总模块。

把唤醒、关机、会话、负载、更新、重启状态、核查和硬件清单各阶段的单机输出合并为
每台主机一条 HostLifecycleRecord，并计算机群统计 FleetSummary。

- 以唤醒结果为初始集合（每个周期都从唤醒开始），保持其顺序
- 后续阶段按主机名（不区分大小写）查找并充实同一条记录
- 后续阶段出现初始集合之外的主机时直接补建记录，不报错、不丢数据
- 统计在最后从最终记录集一次性计算，不做增量维护
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from opshostguard.models import (
    FleetSummary,
    HostLifecycleRecord,
    InventorySnapshot,
    LoadSample,
    SessionState,
    ShutdownResult,
    UpdateEntry,
    WakeResult,
    host_key,
)

logger = logging.getLogger(__name__)


class ResultAggregator:
    """主机记录表的唯一写入者。"""

    def __init__(self) -> None:
        self._records: Dict[str, HostLifecycleRecord] = {}

    def _record(self, host: str, stage: str) -> HostLifecycleRecord:
        key = host_key(host)
        record = self._records.get(key)
        if record is None:
            if self._records and stage != "wake":
                logger.debug("Host %s first seen in %s stage, creating record", host, stage)
            record = HostLifecycleRecord(host=host)
            self._records[key] = record
        return record

    def add_wake(self, results: Mapping[str, WakeResult]) -> None:
        for host, result in results.items():
            self._record(host, "wake").wake = result

    def add_shutdown(self, results: Mapping[str, ShutdownResult]) -> None:
        for host, result in results.items():
            self._record(host, "shutdown").shutdown = result

    def add_sessions(self, results: Mapping[str, SessionState]) -> None:
        for host, state in results.items():
            self._record(host, "session").session = state

    def add_load(self, results: Mapping[str, LoadSample]) -> None:
        for host, sample in results.items():
            self._record(host, "load").load = sample

    def add_updates(self, entries: Iterable[UpdateEntry]) -> None:
        for entry in entries:
            self._record(entry.host, "update").updates_applied.append(entry)

    def add_verified(self, entries: Iterable[UpdateEntry]) -> None:
        for entry in entries:
            self._record(entry.host, "verify").updates_verified.append(entry)

    def add_inventory(self, snapshots: Mapping[str, InventorySnapshot]) -> None:
        for host, snapshot in snapshots.items():
            self._record(host, "inventory").inventory = snapshot

    def add_reboot(self, results: Mapping[str, bool]) -> None:
        for host, pending in results.items():
            self._record(host, "reboot").pending_reboot = pending

    @property
    def records(self) -> List[HostLifecycleRecord]:
        return list(self._records.values())

    def summarize(
        self, started_at: Optional[datetime] = None, finished_at: Optional[datetime] = None
    ) -> FleetSummary:
        return FleetSummary.from_records(self.records, started_at, finished_at)

    def aggregate(
        self,
        wake_results: Optional[Mapping[str, WakeResult]] = None,
        shutdown_results: Optional[Mapping[str, ShutdownResult]] = None,
        session_results: Optional[Mapping[str, SessionState]] = None,
        load_results: Optional[Mapping[str, LoadSample]] = None,
        update_entries: Optional[Iterable[UpdateEntry]] = None,
        verify_entries: Optional[Iterable[UpdateEntry]] = None,
        inventory: Optional[Mapping[str, InventorySnapshot]] = None,
        reboot_status: Optional[Mapping[str, bool]] = None,
        started_at: Optional[datetime] = None,
        finished_at: Optional[datetime] = None,
    ) -> Tuple[List[HostLifecycleRecord], FleetSummary]:
        """合并所有阶段输出，返回 (记录列表, 机群统计)。"""
        self._records = {}
        self.add_wake(wake_results or {})
        self.add_shutdown(shutdown_results or {})
        self.add_sessions(session_results or {})
        self.add_load(load_results or {})
        self.add_updates(update_entries or [])
        self.add_verified(verify_entries or [])
        self.add_inventory(inventory or {})
        self.add_reboot(reboot_status or {})

        records = self.records
        summary = self.summarize(started_at, finished_at)
        logger.info(
            "Aggregated %d host(s): %d failed, status=%s",
            summary.total_hosts, summary.failed_hosts_count, summary.overall_status.value,
        )
        return records, summary
