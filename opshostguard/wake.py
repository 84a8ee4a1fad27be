"""
网络唤醒编排模块。

单机状态机：Unknown → AlreadyUp | PacketSent → PendingVerification → Success | Failed

- 已在线的主机不发送唤醒包（幂等）
- 其余主机发送一个广播魔术包后进入 PendingVerification
- 整批处理完后等待一个配置的间隔，对所有待验证主机各复查一次
"""
import asyncio
import logging
import socket
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from opshostguard.concurrency import gather_bounded
from opshostguard.config import WakeConfig
from opshostguard.groups import GroupConfigProvider
from opshostguard.models import (
    HostGroup,
    HostIdentity,
    RetryPolicy,
    WakeResult,
    WakeStatus,
    normalize_mac,
)
from opshostguard.probe import ReadinessProbe

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


def build_magic_packet(mac: str) -> bytes:
    """魔术包：6 个 0xFF 后接 16 次重复的 MAC 地址。"""
    mac_bytes = bytes.fromhex(normalize_mac(mac).replace(":", ""))
    return b"\xff" * 6 + mac_bytes * 16


class MagicPacketSender:
    """通过 UDP 广播发送唤醒帧。"""

    def __init__(self, broadcast_address: str = "255.255.255.255", port: int = 9):
        self.broadcast_address = broadcast_address
        self.port = port

    def send(self, mac: str) -> None:
        packet = build_magic_packet(mac)
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.sendto(packet, (self.broadcast_address, self.port))
        finally:
            sock.close()


class WakeOrchestrator:
    """唤醒主机并在一个等待间隔后确认其上线。"""

    def __init__(
        self,
        probe: ReadinessProbe,
        sender: Optional[MagicPacketSender] = None,
        retry: Optional[RetryPolicy] = None,
        groups: Optional[GroupConfigProvider] = None,
        workers: int = 1,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.probe = probe
        self.sender = sender or MagicPacketSender()
        self.retry = retry or RetryPolicy()
        self.groups = groups
        self.workers = workers
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: WakeConfig,
        probe: ReadinessProbe,
        groups: Optional[GroupConfigProvider] = None,
        workers: int = 1,
    ) -> "WakeOrchestrator":
        return cls(
            probe=probe,
            sender=MagicPacketSender(config.broadcast_address, config.port),
            retry=config.retry,
            groups=groups,
            workers=workers,
        )

    async def wake_one(self, identity: HostIdentity) -> WakeResult:
        """先探测后决定：已在线直接返回 AlreadyUp，不产生任何网络发送。"""
        host = identity.name
        probe = await self.probe.probe(host)
        if probe.is_up:
            logger.info("%s is already up, no wake packet sent", host)
            return WakeResult(host=host, status=WakeStatus.ALREADY_UP, mac=identity.mac, probe=probe)

        if not identity.mac:
            logger.warning("No MAC address known for %s, cannot wake", host)
            return WakeResult(
                host=host, status=WakeStatus.FAILED, probe=probe, message="No MAC address configured"
            )

        try:
            self.sender.send(identity.mac)
        except (OSError, ValueError) as e:
            logger.warning("Failed to send wake packet to %s (%s): %s", host, identity.mac, e)
            return WakeResult(
                host=host,
                status=WakeStatus.FAILED,
                mac=identity.mac,
                probe=probe,
                message=f"Wake packet not sent: {e}",
            )

        logger.info("Wake packet sent to %s (%s)", host, identity.mac)
        return WakeResult(
            host=host, status=WakeStatus.PENDING_VERIFICATION, mac=identity.mac, probe=probe
        )

    async def verify_pending(self, results: Dict[str, WakeResult]) -> Dict[str, WakeResult]:
        """等待后复查所有 PendingVerification 主机，解析为 Success 或 Failed。"""
        pending = [h for h, r in results.items() if r.status == WakeStatus.PENDING_VERIFICATION]
        for attempt in range(self.retry.max_attempts):
            if not pending:
                break
            delay = self.retry.delay(attempt)
            logger.info("Waiting %ss before verifying %d woken host(s)", delay, len(pending))
            await self._sleep(delay)

            probes = await self.probe.probe_many(pending)
            still_pending = []
            for probe in probes:
                if probe.is_up:
                    results[probe.host] = results[probe.host].model_copy(
                        update={"status": WakeStatus.SUCCESS, "probe": probe}
                    )
                    logger.info("%s is up after wake", probe.host)
                else:
                    results[probe.host] = results[probe.host].model_copy(update={"probe": probe})
                    still_pending.append(probe.host)
            pending = still_pending

        for host in pending:
            probe = results[host].probe
            results[host] = results[host].model_copy(
                update={
                    "status": WakeStatus.FAILED,
                    "message": f"Not up after wake ({probe.classification.value})" if probe else "",
                }
            )
            logger.warning("%s failed to wake", host)
        return results

    async def wake_batch(self, group: HostGroup) -> Dict[str, WakeResult]:
        logger.info("Waking %d host(s) in group '%s'", len(group), group.name)
        outcomes: List[WakeResult] = await gather_bounded(group.hosts, self.wake_one, self.workers)
        results = {r.host: r for r in outcomes}
        return await self.verify_pending(results)

    def _require_groups(self) -> GroupConfigProvider:
        if self.groups is None:
            raise RuntimeError("WakeOrchestrator has no group configuration provider")
        return self.groups

    async def wake_group(self, name: str) -> Dict[str, WakeResult]:
        return await self.wake_batch(self._require_groups().group(name))

    async def wake_hosts(self, hosts: Iterable[str]) -> Dict[str, WakeResult]:
        return await self.wake_batch(self._require_groups().ephemeral_group(hosts))

    async def wake_host(self, host: str) -> Dict[str, WakeResult]:
        return await self.wake_hosts([host])
