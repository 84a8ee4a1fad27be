"""
OpsHostGuard 测试基础配置

提供脚本化的探测器、会话检测器、远程执行器和唤醒包发送器等假对象，
所有测试都不接触真实网络，不依赖 Windows 主机。
"""
from typing import Dict, List, Optional, Union

import pytest

from opshostguard.errors import RemoteExecutionError
from opshostguard.models import ProbeResult, SessionState, host_key
from opshostguard.remote import Credential, HostDispatcher, RemoteExecutor, RemoteResult
from opshostguard.sessions import SessionInspector

UP = (True, True)
PING_ONLY = (True, False)
DOWN = (False, False)
MGMT_ONLY = (False, True)


class FakeProbe:
    """按主机脚本化的探测器。

    每台主机给一个 (ping, mgmt) 元组序列，每次探测消费一个；
    序列用完后重复最后一个。记录所有探测调用。
    """

    def __init__(self, script: Optional[Dict[str, Union[tuple, List[tuple]]]] = None):
        self.script = {}
        for host, seq in (script or {}).items():
            self.script[host_key(host)] = list(seq) if isinstance(seq, list) else [seq]
        self.calls: List[str] = []
        self.workers = 1

    def _next(self, host: str) -> tuple:
        seq = self.script.get(host_key(host), [DOWN])
        value = seq.pop(0) if len(seq) > 1 else seq[0]
        return value

    async def probe(self, host: str, use_dns=None) -> ProbeResult:
        self.calls.append(host)
        ping, mgmt = self._next(host)
        return ProbeResult(host=host, ping_reachable=ping, management_port_reachable=mgmt)

    async def probe_many(self, hosts, use_dns=None) -> List[ProbeResult]:
        return [await self.probe(h, use_dns) for h in hosts]


class FakeSessionInspector(SessionInspector):
    """脚本化的会话检测器，active 为有活动会话的主机集合。"""

    def __init__(self, active=(), failing=()):
        self.active = {host_key(h) for h in active}
        self.failing = {host_key(h) for h in failing}
        self.calls: List[str] = []

    async def query(self, host: str) -> SessionState:
        self.calls.append(host)
        if host_key(host) in self.failing:
            raise RemoteExecutionError(host, f"quser failed on {host}")
        active = host_key(host) in self.active
        return SessionState(host=host, active=active, users=["student"] if active else [])


class FakeExecutor(RemoteExecutor):
    """记录下发的脚本，按 (主机 → 结果) 返回预设输出。

    responses 的值可以是 RemoteResult、stdout 字符串、异常，或它们的列表（按调用顺序消费）。
    """

    def __init__(self, responses=None, dry_run: bool = False):
        super().__init__(dry_run=dry_run)
        self.responses = {host_key(h): v for h, v in (responses or {}).items()}
        self.calls: List[tuple] = []

    async def _run(self, host: str, script: str, credential: Optional[Credential]) -> RemoteResult:
        self.calls.append((host, script, credential))
        value = self.responses.get(host_key(host), "")
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if isinstance(value, Exception):
            raise value
        if isinstance(value, RemoteResult):
            return value.model_copy(update={"command": script})
        return RemoteResult(host=host, command=script, stdout=value)

    def scripts_for(self, host: str) -> List[str]:
        return [s for h, s, _ in self.calls if host_key(h) == host_key(host)]


class RecordingSender:
    """记录唤醒包发送，不触碰网络。"""

    def __init__(self, fail_for=()):
        self.sent: List[str] = []
        self.fail_for = set(fail_for)

    def send(self, mac: str) -> None:
        if mac in self.fail_for:
            raise OSError("Network is unreachable")
        self.sent.append(mac)


async def no_sleep(delay: float) -> None:
    no_sleep.delays.append(delay)


no_sleep.delays = []


@pytest.fixture
def sleeps():
    """记录编排器请求的等待时长。"""
    no_sleep.delays = []
    return no_sleep


@pytest.fixture
def credential():
    return Credential(username="LAB\\svc-ops", password="secret")


@pytest.fixture
def remote_executor():
    return FakeExecutor()


@pytest.fixture
def local_executor():
    return FakeExecutor()


@pytest.fixture
def dispatcher(remote_executor, local_executor, credential):
    """没有任何本机名的分发器：所有主机都走远程执行器。"""
    return HostDispatcher(
        remote=remote_executor, local=local_executor, credential=credential, names=set()
    )
