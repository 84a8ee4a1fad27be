"""
主机就绪探测模块。

两步探测：
1. ICMP ping（单次、固定超时），不通则直接返回，不再尝试管理端口
2. 管理端口 TCP 连接（默认 135，RPC endpoint mapper），可解析全部 IPv4 地址逐一测试

任何网络异常都只视为该步骤的否定结果，记录日志后继续，不会中断调用方的主机循环。
"""
import asyncio
import logging
import platform
import socket
from typing import Iterable, List, Optional, Tuple

from opshostguard.concurrency import gather_bounded
from opshostguard.config import ProbeConfig
from opshostguard.models import ProbeClass, ProbeResult, classify

logger = logging.getLogger(__name__)

__all__ = ["ReadinessProbe", "ProbeClass", "classify", "ping_command"]


def ping_command(host: str, timeout: int, system: Optional[str] = None) -> List[str]:
    """构造单次 ping 命令行，兼容 Windows / Linux / macOS。"""
    system = (system or platform.system()).lower()
    if system == "windows":
        return ["ping", "-n", "1", "-w", str(timeout * 1000), host]
    if system == "darwin":
        return ["ping", "-c", "1", "-t", str(timeout), host]
    return ["ping", "-c", "1", "-W", str(timeout), host]


def _tcp_connect(host: str, port: int, timeout: float):
    """同步 TCP 连接（供线程池调用）。"""
    sock = socket.create_connection((host, port), timeout=timeout)
    sock.close()


def _resolve_ipv4(host: str, port: int) -> List[str]:
    """解析主机名的全部 IPv4 地址，保持解析顺序并去重。"""
    infos = socket.getaddrinfo(host, port, socket.AF_INET, socket.SOCK_STREAM)
    addresses = []
    for info in infos:
        addr = info[4][0]
        if addr not in addresses:
            addresses.append(addr)
    return addresses


class ReadinessProbe:
    """判断主机是否在线且可远程管理。"""

    def __init__(self, config: Optional[ProbeConfig] = None, workers: int = 1):
        self.config = config or ProbeConfig()
        self.workers = workers

    async def ping(self, host: str) -> bool:
        cmd = ping_command(host, self.config.ping_timeout)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            try:
                returncode = await asyncio.wait_for(proc.wait(), timeout=self.config.ping_timeout + 2)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                logger.debug("Ping to %s timed out", host)
                return False
        except Exception as e:
            logger.warning("Ping to %s failed: %s", host, e)
            return False
        return returncode == 0

    async def _connect(self, target: str) -> bool:
        port = self.config.management_port
        timeout = self.config.connect_timeout
        try:
            loop = asyncio.get_running_loop()
            await asyncio.wait_for(
                loop.run_in_executor(None, _tcp_connect, target, port, timeout),
                timeout=timeout + 1,
            )
            return True
        except Exception as e:
            logger.warning("Management port %s:%d not reachable: %s", target, port, e)
            return False

    async def resolve(self, host: str) -> List[str]:
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, _resolve_ipv4, host, self.config.management_port)
        except Exception as e:
            logger.warning("DNS resolution failed for %s: %s", host, e)
            return []

    async def check_management_port(self, host: str, use_dns: bool) -> Tuple[bool, List[str]]:
        """测试管理端口。use_dns 时逐个地址尝试，第一个成功即返回；全部失败才算失败。"""
        if not use_dns:
            return await self._connect(host), []

        addresses = await self.resolve(host)
        for addr in addresses:
            if await self._connect(addr):
                logger.debug("Management port reachable on %s via %s", host, addr)
                return True, addresses
        if addresses:
            logger.debug("Management port closed on all %d address(es) of %s", len(addresses), host)
        return False, addresses

    async def probe(self, host: str, use_dns: Optional[bool] = None) -> ProbeResult:
        if use_dns is None:
            use_dns = self.config.use_dns

        if not await self.ping(host):
            result = ProbeResult(host=host, ping_reachable=False, management_port_reachable=False)
        else:
            mgmt, addresses = await self.check_management_port(host, use_dns)
            result = ProbeResult(
                host=host,
                ping_reachable=True,
                management_port_reachable=mgmt,
                resolved_addresses=addresses,
            )
        logger.debug("Probe %s: %s", host, result.classification.value)
        return result

    async def probe_many(self, hosts: Iterable[str], use_dns: Optional[bool] = None) -> List[ProbeResult]:
        return await gather_bounded(hosts, lambda h: self.probe(h, use_dns), self.workers)
