"""
机群管理周期：按阶段顺序驱动各编排器并汇总结果。

唤醒（含复查）→ 会话/负载采样 → 更新（含重启状态）→ 核查 → 硬件清单 → 关机 → 汇总

配置错误（主机组不存在、缺少凭据）在触碰任何主机之前终止运行；
单台主机的错误只体现为结果中的状态字段。
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from opshostguard.aggregator import ResultAggregator
from opshostguard.collector import InventoryCollector, LoadCollector
from opshostguard.concurrency import gather_bounded
from opshostguard.config import OrchestratorConfig
from opshostguard.errors import RemoteExecutionError
from opshostguard.groups import GroupConfigProvider, JsonGroupConfigProvider
from opshostguard.models import (
    FleetSummary,
    HostLifecycleRecord,
    ProbeResult,
    SessionState,
    WakeResult,
    WakeStatus,
)
from opshostguard.probe import ReadinessProbe
from opshostguard.remote import (
    CredentialProvider,
    HostDispatcher,
    LocalExecutor,
    StaticCredentialProvider,
    WinRMExecutor,
)
from opshostguard.sessions import QuserSessionInspector, SessionInspector
from opshostguard.shutdown import ShutdownOrchestrator
from opshostguard.updates import ProviderRegistry, UpdateOrchestrator
from opshostguard.wake import WakeOrchestrator

logger = logging.getLogger(__name__)


class CycleReport(BaseModel):
    """一次运行的输出：交给报表导出层和仪表盘的数据契约。"""
    group: str
    records: List[HostLifecycleRecord] = Field(default_factory=list)
    summary: FleetSummary = Field(default_factory=FleetSummary)


def shutdown_snapshot(wake_results: Dict[str, WakeResult]) -> Dict[str, ProbeResult]:
    """关机阶段使用的探测快照。

    本周期刚唤醒的主机（Success）不进入快照，关机闸门会以 "unverified" 排除它们；
    已在线和唤醒失败的主机沿用唤醒阶段的探测结果。
    """
    return {
        host: result.probe
        for host, result in wake_results.items()
        if result.probe is not None and result.status != WakeStatus.SUCCESS
    }


class FleetCycle:
    """一次完整的机群生命周期运行。"""

    def __init__(
        self,
        config: OrchestratorConfig,
        groups: GroupConfigProvider,
        credentials: CredentialProvider,
        dispatcher: HostDispatcher,
        probe: ReadinessProbe,
        sessions: SessionInspector,
        wake: WakeOrchestrator,
        shutdown: ShutdownOrchestrator,
        updates: UpdateOrchestrator,
        load: Optional[LoadCollector] = None,
        inventory: Optional[InventoryCollector] = None,
        providers: Optional[ProviderRegistry] = None,
    ) -> None:
        self.config = config
        self.groups = groups
        self.credentials = credentials
        self.dispatcher = dispatcher
        self.probe = probe
        self.sessions = sessions
        self.wake = wake
        self.shutdown = shutdown
        self.updates = updates
        self.load = load
        self.inventory = inventory
        self.providers = providers or ProviderRegistry()

    @classmethod
    def from_config(
        cls, config: OrchestratorConfig, groups: Optional[GroupConfigProvider] = None
    ) -> "FleetCycle":
        """由配置装配全部组件。"""
        groups = groups or JsonGroupConfigProvider(config.groups.groups_file, config.groups.macs_file)
        workers = config.concurrency.workers
        dispatcher = HostDispatcher(
            remote=WinRMExecutor(config.remote),
            local=LocalExecutor(timeout=config.remote.read_timeout * 10, dry_run=config.remote.dry_run),
        )
        probe = ReadinessProbe(config.probe, workers=workers)
        sessions = QuserSessionInspector(dispatcher)
        return cls(
            config=config,
            groups=groups,
            credentials=StaticCredentialProvider(config.credentials),
            dispatcher=dispatcher,
            probe=probe,
            sessions=sessions,
            wake=WakeOrchestrator.from_config(config.wake, probe, groups, workers),
            shutdown=ShutdownOrchestrator.from_config(
                config.shutdown, probe, sessions, dispatcher, groups, workers
            ),
            updates=UpdateOrchestrator(dispatcher, sessions, workers),
            load=LoadCollector(dispatcher, config.load, workers),
            inventory=InventoryCollector(dispatcher, workers),
        )

    def prepare(self) -> None:
        """获取凭据。缺失即为配置错误，必须在触碰主机之前抛出。"""
        self.dispatcher.credential = self.credentials.get_credential()

    async def _safe_session(self, host: str) -> Optional[SessionState]:
        try:
            return await self.sessions.query(host)
        except RemoteExecutionError as e:
            logger.warning("Session query failed on %s: %s", host, e)
            return None

    async def sample_sessions(self, hosts: Iterable[str]) -> Dict[str, SessionState]:
        states = await gather_bounded(hosts, self._safe_session, self.config.concurrency.workers)
        return {s.host: s for s in states if s is not None}

    async def run(
        self,
        group: Optional[str] = None,
        hosts: Optional[Iterable[str]] = None,
        host: Optional[str] = None,
        *,
        apply_updates: bool = False,
        force: Optional[bool] = None,
        verify_days: Optional[int] = None,
        shutdown: bool = True,
        inventory: bool = False,
    ) -> CycleReport:
        started_at = datetime.now(timezone.utc)
        target = self.groups.select(group, hosts, host)
        self.prepare()
        force = self.config.updates.force if force is None else force
        verify_days = verify_days if verify_days is not None else self.config.updates.verify_days
        provider = self.providers.get(self.config.updates.strategy)

        logger.info("Starting fleet cycle for '%s' (%d host(s))", target.name, len(target))

        wake_results = await self.wake.wake_batch(target)
        up_hosts = [h for h, r in wake_results.items() if r.succeeded]
        logger.info("%d of %d host(s) up after wake", len(up_hosts), len(target))

        session_results = await self.sample_sessions(up_hosts)
        load_results = await self.load.collect_many(up_hosts) if self.load else {}

        update_entries = []
        reboot_results = {}
        if apply_updates:
            update_entries = await self.updates.apply(up_hosts, provider, force=force)
            reboot_results = await self.updates.reboot_status(up_hosts, provider)
        verify_entries = []
        if verify_days:
            verify_entries = await self.updates.verify(up_hosts, provider, verify_days)

        inventory_results = {}
        if inventory and self.inventory:
            inventory_results = await self.inventory.collect_many(up_hosts)

        shutdown_results = {}
        if shutdown:
            probes = None if self.config.shutdown.reprobe else shutdown_snapshot(wake_results)
            shutdown_results = await self.shutdown.shutdown(target.host_names, probes)

        records, summary = ResultAggregator().aggregate(
            wake_results,
            shutdown_results,
            session_results,
            load_results,
            update_entries,
            verify_entries,
            inventory_results,
            reboot_results,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )
        return CycleReport(group=target.name, records=records, summary=summary)
