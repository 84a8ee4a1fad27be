"""
远程关机编排模块。

前置条件（逐台检查）：没有活动交互会话，且探测结果为 up。
不满足的主机被排除并记录原因（"active session" / "unreachable" / "unverified"）。

单机状态机：Candidate → ShutdownIssued →（等待）→ Verify → Success | Warning | StillActive | Unknown

每台主机每次运行只关机一次、验证一次，不自动重试。
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from opshostguard.concurrency import gather_bounded
from opshostguard.config import ShutdownConfig
from opshostguard.errors import RemoteExecutionError
from opshostguard.groups import GroupConfigProvider
from opshostguard.models import ProbeResult, RetryPolicy, ShutdownResult, ShutdownStatus
from opshostguard.probe import ReadinessProbe
from opshostguard.remote import HostDispatcher
from opshostguard.sessions import SessionInspector

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]

REASON_ACTIVE_SESSION = "active session"
REASON_UNREACHABLE = "unreachable"
REASON_UNVERIFIED = "unverified"
REASON_LOCAL_HOST = "orchestrator host"

SHUTDOWN_SCRIPT = "Stop-Computer -Force -ErrorAction Stop"

_MESSAGES = {
    ShutdownStatus.SUCCESS: "Host is fully down",
    ShutdownStatus.WARNING: "Responds to ping but not management - likely still shutting down or firewalled",
    ShutdownStatus.STILL_ACTIVE: "Shutdown did not take effect",
    ShutdownStatus.UNKNOWN: "Management port open without ping response",
}


def classify_shutdown(ping: bool, mgmt: bool) -> ShutdownStatus:
    """关机验证分类，四种输入组合全覆盖。"""
    if not ping and not mgmt:
        return ShutdownStatus.SUCCESS
    if ping and not mgmt:
        return ShutdownStatus.WARNING
    if ping and mgmt:
        return ShutdownStatus.STILL_ACTIVE
    return ShutdownStatus.UNKNOWN


class ShutdownOrchestrator:
    """在无人使用的主机上发出强制关机并确认其已下线。"""

    def __init__(
        self,
        probe: ReadinessProbe,
        sessions: SessionInspector,
        dispatcher: HostDispatcher,
        retry: Optional[RetryPolicy] = None,
        groups: Optional[GroupConfigProvider] = None,
        workers: int = 1,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.probe = probe
        self.sessions = sessions
        self.dispatcher = dispatcher
        self.retry = retry or RetryPolicy(wait_interval=60)
        self.groups = groups
        self.workers = workers
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: ShutdownConfig,
        probe: ReadinessProbe,
        sessions: SessionInspector,
        dispatcher: HostDispatcher,
        groups: Optional[GroupConfigProvider] = None,
        workers: int = 1,
    ) -> "ShutdownOrchestrator":
        return cls(probe, sessions, dispatcher, config.retry, groups, workers)

    async def _gate(
        self, host: str, probes: Optional[Mapping[str, ProbeResult]]
    ) -> Optional[ShutdownResult]:
        """返回 None 表示可以关机，否则返回带排除原因的 Skipped 结果。"""
        if self.dispatcher.is_local(host):
            logger.warning("Refusing to shut down the orchestrating host %s", host)
            return ShutdownResult(host=host, status=ShutdownStatus.SKIPPED, reason=REASON_LOCAL_HOST)

        # 先看可达性，避免对离线主机发起注定超时的会话查询
        if probes is not None:
            probe = probes.get(host)
            if probe is None:
                logger.info("Skipping shutdown of %s: no verified probe", host)
                return ShutdownResult(host=host, status=ShutdownStatus.SKIPPED, reason=REASON_UNVERIFIED)
        else:
            probe = await self.probe.probe(host)

        if not probe.is_up:
            logger.info("Skipping shutdown of %s: %s", host, probe.classification.value)
            return ShutdownResult(
                host=host, status=ShutdownStatus.SKIPPED, reason=REASON_UNREACHABLE, probe=probe
            )

        try:
            if await self.sessions.has_active_session(host):
                logger.info("Skipping shutdown of %s: active session", host)
                return ShutdownResult(
                    host=host, status=ShutdownStatus.SKIPPED, reason=REASON_ACTIVE_SESSION, probe=probe
                )
        except RemoteExecutionError as e:
            logger.warning("Session query failed on %s: %s", host, e)
            return ShutdownResult(
                host=host,
                status=ShutdownStatus.SKIPPED,
                reason=REASON_UNREACHABLE,
                message=str(e),
                probe=probe,
            )
        return None

    async def select_candidates(
        self, hosts: Iterable[str], probes: Optional[Mapping[str, ProbeResult]] = None
    ) -> Tuple[List[str], Dict[str, ShutdownResult]]:
        """筛选关机候选。probes 为显式传入的探测快照，缺省时现场探测。"""
        hosts = list(hosts)
        gates = await gather_bounded(hosts, lambda h: self._gate(h, probes), self.workers)
        candidates = []
        excluded: Dict[str, ShutdownResult] = {}
        for host, skipped in zip(hosts, gates):
            if skipped is None:
                candidates.append(host)
            else:
                excluded[host] = skipped
        return candidates, excluded

    async def _issue(self, host: str) -> Optional[ShutdownResult]:
        try:
            result = await self.dispatcher.run(host, SHUTDOWN_SCRIPT)
            result.raise_for_status()
        except RemoteExecutionError as e:
            logger.error("Shutdown command failed on %s: %s", host, e)
            return ShutdownResult(host=host, status=ShutdownStatus.FAILED, message=str(e))
        logger.info("Shutdown issued to %s", host)
        return None

    async def _verify(self, issued: List[str]) -> Dict[str, ShutdownResult]:
        verified: Dict[str, ShutdownResult] = {}
        pending = list(issued)
        for attempt in range(self.retry.max_attempts):
            if not pending:
                break
            delay = self.retry.delay(attempt)
            logger.info("Waiting %ss before verifying shutdown of %d host(s)", delay, len(pending))
            await self._sleep(delay)

            probes = await self.probe.probe_many(pending, use_dns=False)
            pending = []
            for probe in probes:
                status = classify_shutdown(probe.ping_reachable, probe.management_port_reachable)
                verified[probe.host] = ShutdownResult(
                    host=probe.host, status=status, message=_MESSAGES[status], probe=probe
                )
                if status != ShutdownStatus.SUCCESS:
                    pending.append(probe.host)

        for host, result in verified.items():
            if result.status == ShutdownStatus.SUCCESS:
                logger.info("%s shut down successfully", host)
            elif result.status == ShutdownStatus.STILL_ACTIVE:
                logger.error("%s is still active after shutdown", host)
            else:
                logger.warning("%s shutdown unconfirmed: %s", host, result.message)
        return verified

    async def shutdown(
        self, hosts: Iterable[str], probes: Optional[Mapping[str, ProbeResult]] = None
    ) -> Dict[str, ShutdownResult]:
        hosts = list(hosts)
        candidates, results = await self.select_candidates(hosts, probes)
        logger.info("Shutdown candidates: %d of %d host(s)", len(candidates), len(hosts))

        failures = await gather_bounded(candidates, self._issue, self.workers)
        issued = []
        for host, failure in zip(candidates, failures):
            if failure is None:
                issued.append(host)
            else:
                results[host] = failure

        results.update(await self._verify(issued))
        return {h: results[h] for h in hosts}

    def _require_groups(self) -> GroupConfigProvider:
        if self.groups is None:
            raise RuntimeError("ShutdownOrchestrator has no group configuration provider")
        return self.groups

    async def shutdown_group(self, name: str) -> Dict[str, ShutdownResult]:
        return await self.shutdown(self._require_groups().group(name).host_names)

    async def shutdown_hosts(self, hosts: Iterable[str]) -> Dict[str, ShutdownResult]:
        return await self.shutdown(self._require_groups().ephemeral_group(hosts).host_names)

    async def shutdown_host(self, host: str) -> Dict[str, ShutdownResult]:
        return await self.shutdown_hosts([host])
