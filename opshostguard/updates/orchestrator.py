"""
更新编排：Apply 与 Verify 两个独立的逐台处理过程。

- Apply：除非 force，先检查活动会话，有用户登录则跳过该主机（不记录、只告警）
- Verify：查询回看窗口内的更新历史，与本次是否执行过 Apply 无关
- 本机走进程内执行，其余主机走远程执行器，两者返回同样的 UpdateEntry
- 单台主机的任何异常都被捕获，记为一条 title="Error"、status=Failed 的条目
- 重启状态：更新之后查询是否有待重启的更新，失败的主机不出现在结果中
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

from opshostguard.concurrency import gather_bounded
from opshostguard.errors import RemoteExecutionError
from opshostguard.models import UpdateEntry, UpdateStatus
from opshostguard.remote import HostDispatcher
from opshostguard.sessions import SessionInspector
from .base import UpdateProvider

logger = logging.getLogger(__name__)

ERROR_TITLE = "Error"


def _error_entry(host: str) -> UpdateEntry:
    return UpdateEntry(host=host, update_title=ERROR_TITLE, status=UpdateStatus.FAILED)


class UpdateOrchestrator:
    """按策略在一组主机上安装并核查更新。"""

    def __init__(
        self,
        dispatcher: HostDispatcher,
        sessions: SessionInspector,
        workers: int = 1,
    ) -> None:
        self.dispatcher = dispatcher
        self.sessions = sessions
        self.workers = workers

    def _target(self, host: str):
        """返回 (执行器, 凭据)；本机执行不需要凭据。"""
        if self.dispatcher.is_local(host):
            return self.dispatcher.local, None
        return self.dispatcher.remote, self.dispatcher.credential

    async def _apply_one(self, host: str, provider: UpdateProvider, force: bool) -> list[UpdateEntry]:
        try:
            if not force and await self.sessions.has_active_session(host):
                logger.warning("Skipping updates on %s: active session", host)
                return []
            executor, credential = self._target(host)
            logger.info("Applying updates on %s via %s provider", host, provider.name)
            entries = await provider.apply(host, executor, credential)
        except RemoteExecutionError as e:
            logger.error("Update apply failed on %s: %s", host, e)
            return [_error_entry(host)]
        except Exception:
            logger.exception("Unexpected error applying updates on %s", host)
            return [_error_entry(host)]

        installed = sum(1 for e in entries if e.status == UpdateStatus.INSTALLED)
        logger.info("%s: %d update(s) processed, %d installed", host, len(entries), installed)
        return entries

    async def _verify_one(self, host: str, provider: UpdateProvider, window_days: int) -> list[UpdateEntry]:
        try:
            executor, credential = self._target(host)
            entries = await provider.query_history(host, executor, credential, window_days)
        except RemoteExecutionError as e:
            logger.error("Update verification failed on %s: %s", host, e)
            return [_error_entry(host)]
        except Exception:
            logger.exception("Unexpected error verifying updates on %s", host)
            return [_error_entry(host)]
        logger.info("%s: %d update(s) in the last %d day(s)", host, len(entries), window_days)
        return entries

    async def _reboot_one(self, host: str, provider: UpdateProvider) -> Optional[bool]:
        try:
            executor, credential = self._target(host)
            pending = await provider.reboot_required(host, executor, credential)
        except RemoteExecutionError as e:
            logger.warning("Reboot status query failed on %s: %s", host, e)
            return None
        if pending:
            logger.info("%s: reboot pending", host)
        return pending

    async def apply(
        self, hosts: Iterable[str], provider: UpdateProvider, force: bool = False
    ) -> list[UpdateEntry]:
        per_host = await gather_bounded(
            hosts, lambda h: self._apply_one(h, provider, force), self.workers
        )
        return [entry for entries in per_host for entry in entries]

    async def verify(
        self, hosts: Iterable[str], provider: UpdateProvider, window_days: Optional[int]
    ) -> list[UpdateEntry]:
        """window_days 为空时不做核查。"""
        if not window_days:
            return []
        per_host = await gather_bounded(
            hosts, lambda h: self._verify_one(h, provider, window_days), self.workers
        )
        return [entry for entries in per_host for entry in entries]

    async def reboot_status(self, hosts: Iterable[str], provider: UpdateProvider) -> Dict[str, bool]:
        hosts = list(hosts)
        pending = await gather_bounded(hosts, lambda h: self._reboot_one(h, provider), self.workers)
        return {h: p for h, p in zip(hosts, pending) if p is not None}
