"""
远程执行模块，支持 dry-run 模式。

- WinRMExecutor：通过 pywinrm 在目标主机上执行 PowerShell
- LocalExecutor：目标就是本机时在本地进程中执行 PowerShell

两条路径返回同样的 RemoteResult，调用方无需关心命令在哪里执行。
传输、认证、脚本异常统一转换为 RemoteExecutionError。
"""
from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import time
from typing import Optional

import psutil
import winrm
from pydantic import BaseModel, Field

from opshostguard.config import CredentialConfig, RemoteConfig
from opshostguard.errors import CredentialError, RemoteExecutionError
from opshostguard.models import host_key

logger = logging.getLogger(__name__)

OUTPUT_LIMIT = 65536


class Credential(BaseModel):
    """远程凭据。"""
    username: str
    password: str = Field(repr=False)


class CredentialProvider:
    """凭据提供接口，获取方式不在本引擎范围内。"""

    def get_credential(self) -> Credential:
        raise NotImplementedError


class StaticCredentialProvider(CredentialProvider):
    """来自配置文件 / 环境变量的固定凭据。"""

    def __init__(self, config: CredentialConfig):
        self.config = config

    def get_credential(self) -> Credential:
        if not self.config.username:
            raise CredentialError(
                "No remoting username configured",
                "set credentials.username in config or OPSHOSTGUARD_USERNAME",
            )
        if not self.config.password:
            raise CredentialError(
                "No remoting password configured",
                "set OPSHOSTGUARD_PASSWORD in the environment or .env",
            )
        return Credential(username=self.config.username, password=self.config.password)


class RemoteResult(BaseModel):
    """单条脚本的执行结果。"""
    host: str
    command: str
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    executed: bool = True
    duration_ms: int = 0

    def raise_for_status(self) -> "RemoteResult":
        if self.exit_code != 0:
            preview = (self.stderr.strip() or self.stdout.strip())[:500]
            raise RemoteExecutionError(
                self.host, f"Script failed on {self.host} (exit={self.exit_code})", preview
            )
        return self


def _decode(data) -> str:
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    return (data or "")[:OUTPUT_LIMIT]


class RemoteExecutor:
    """执行 PowerShell 脚本块，带 dry-run 支持。"""

    def __init__(self, dry_run: bool = False) -> None:
        self.dry_run = dry_run

    async def run(self, host: str, script: str, credential: Optional[Credential] = None) -> RemoteResult:
        if self.dry_run:
            logger.info("[DRY RUN] %s: %s", host, script.strip().splitlines()[0] if script.strip() else "")
            return RemoteResult(
                host=host,
                command=script,
                stdout=f"[DRY RUN] Would execute on {host}",
                executed=False,
            )

        start = time.monotonic()
        try:
            result = await self._run(host, script, credential)
        except RemoteExecutionError:
            raise
        except Exception as e:
            raise RemoteExecutionError(host, f"Remote execution failed on {host}", str(e)[:500]) from e
        result.duration_ms = int((time.monotonic() - start) * 1000)
        logger.debug("%s exit=%d in %dms", host, result.exit_code, result.duration_ms)
        return result

    async def _run(self, host: str, script: str, credential: Optional[Credential]) -> RemoteResult:
        raise NotImplementedError


class WinRMExecutor(RemoteExecutor):
    """通过 WinRM 在远程主机上执行 PowerShell。"""

    def __init__(self, config: Optional[RemoteConfig] = None) -> None:
        self.config = config or RemoteConfig()
        super().__init__(dry_run=self.config.dry_run)

    def _endpoint(self, host: str) -> str:
        scheme = "https" if self.config.use_ssl else "http"
        return f"{scheme}://{host}:{self.config.port}/wsman"

    def _run_sync(self, host: str, script: str, credential: Credential) -> RemoteResult:
        session = winrm.Session(
            self._endpoint(host),
            auth=(credential.username, credential.password),
            transport=self.config.transport,
            server_cert_validation="ignore",
            operation_timeout_sec=self.config.operation_timeout,
            read_timeout_sec=self.config.read_timeout,
        )
        response = session.run_ps(script)
        return RemoteResult(
            host=host,
            command=script,
            exit_code=response.status_code,
            stdout=_decode(response.std_out),
            stderr=_decode(response.std_err),
        )

    async def _run(self, host: str, script: str, credential: Optional[Credential]) -> RemoteResult:
        if credential is None:
            raise CredentialError(f"WinRM execution on {host} requires a credential")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._run_sync, host, script, credential)


class LocalExecutor(RemoteExecutor):
    """本机执行：通过 subprocess 调用 powershell，凭据被忽略。"""

    def __init__(self, timeout: int = 600, dry_run: bool = False, shell: str = "powershell") -> None:
        super().__init__(dry_run=dry_run)
        self.timeout = timeout
        self.shell = shell

    async def _run(self, host: str, script: str, credential: Optional[Credential]) -> RemoteResult:
        proc = await asyncio.create_subprocess_exec(
            self.shell, "-NoProfile", "-NonInteractive", "-Command", script,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.communicate()
            raise RemoteExecutionError(host, f"Local script timed out after {self.timeout}s")
        return RemoteResult(
            host=host,
            command=script,
            exit_code=proc.returncode or 0,
            stdout=_decode(stdout_bytes),
            stderr=_decode(stderr_bytes),
        )


def local_names() -> set[str]:
    """本机的主机名、FQDN、回环地址和各网卡地址。"""
    hostname = socket.gethostname()
    names = {"localhost", ".", "127.0.0.1", "::1", hostname, hostname.split(".")[0]}
    try:
        names.add(socket.getfqdn())
    except OSError:
        pass
    try:
        for addrs in psutil.net_if_addrs().values():
            for addr in addrs:
                if addr.family in (socket.AF_INET, socket.AF_INET6):
                    names.add(addr.address.split("%")[0])
    except Exception as e:
        logger.debug("Could not enumerate local interfaces: %s", e)
    return {host_key(n) for n in names if n}


def _is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def local_domains(names: set[str]) -> set[str]:
    """本机名字集合中出现的 DNS 域（FQDN 去掉第一段）。"""
    return {n.partition(".")[2] for n in names if "." in n.strip(".") and not _is_ip(n)}


def is_local_host(host: str, names: Optional[set[str]] = None) -> bool:
    """目标主机是否就是运行编排的本机。

    带域名的主机只有在域与本机 FQDN 的域一致时才按短名匹配，
    ops01.other.domain 不会被当作本机 ops01。
    """
    names = names if names is not None else local_names()
    key = host_key(host)
    if key in names:
        return True
    if _is_ip(key):
        return False
    short, _, domain = key.partition(".")
    return bool(domain) and short in names and domain in local_domains(names)


class HostDispatcher:
    """按目标主机选择执行路径：本机走 LocalExecutor，其余走远程执行器并附带凭据。"""

    def __init__(
        self,
        remote: RemoteExecutor,
        local: Optional[RemoteExecutor] = None,
        credential: Optional[Credential] = None,
        names: Optional[set[str]] = None,
    ) -> None:
        self.remote = remote
        self.local = local or LocalExecutor(dry_run=remote.dry_run)
        self.credential = credential
        self._names = names

    @property
    def names(self) -> set[str]:
        if self._names is None:
            self._names = local_names()
        return self._names

    def is_local(self, host: str) -> bool:
        return is_local_host(host, self.names)

    def executor_for(self, host: str) -> RemoteExecutor:
        return self.local if self.is_local(host) else self.remote

    async def run(self, host: str, script: str) -> RemoteResult:
        if self.is_local(host):
            logger.debug("Running in-process for local host %s", host)
            return await self.local.run(host, script)
        return await self.remote.run(host, script, self.credential)
