"""
扩展更新策略：PSWindowsUpdate 模块。

比原生接口控制更细（接受全部、忽略重启），安装和历史查询各自作为独立的
嵌套调用，通过同一个执行器下发。
"""
from __future__ import annotations

import logging
from typing import Optional

from opshostguard.errors import RemoteExecutionError
from opshostguard.models import UpdateEntry, UpdateStatus
from opshostguard.remote import Credential, RemoteExecutor
from .base import UpdateProvider, parse_bool_output, parse_json_output, parse_timestamp, within_window

logger = logging.getLogger(__name__)

MODULE_NAME = "PSWindowsUpdate"

MODULE_CHECK_SCRIPT = f"""
if (Get-Module -ListAvailable -Name {MODULE_NAME}) {{ Write-Output 'present' }} else {{ Write-Output 'missing' }}
"""

APPLY_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
Import-Module PSWindowsUpdate
$installed = @(Install-WindowsUpdate -AcceptAll -IgnoreReboot -Confirm:$false)
$results = @(foreach ($u in $installed) {
    [pscustomobject]@{
        Title  = $u.Title
        KB     = $u.KB
        Result = [string]$u.Result
        Date   = (Get-Date).ToUniversalTime().ToString('o')
    }
})
ConvertTo-Json -InputObject $results -Compress -Depth 3
"""

HISTORY_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
Import-Module PSWindowsUpdate
$history = @(Get-WUHistory -MaxDate (Get-Date).AddDays(-__DAYS__))
$results = @(foreach ($h in $history) {
    [pscustomobject]@{
        Title  = $h.Title
        KB     = $h.KB
        Result = [string]$h.Result
        Date   = $h.Date.ToUniversalTime().ToString('o')
    }
})
ConvertTo-Json -InputObject $results -Compress -Depth 3
"""

REBOOT_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
Import-Module PSWindowsUpdate
Get-WURebootStatus -Silent
"""

# Install-WindowsUpdate 与 Get-WUHistory 的 Result 字段
RESULT_MAP = {
    "installed": UpdateStatus.INSTALLED,
    "succeeded": UpdateStatus.INSTALLED,
    "succeededwitherrors": UpdateStatus.INSTALLED,
    "failed": UpdateStatus.FAILED,
    "aborted": UpdateStatus.FAILED,
}


def _to_entry(host: str, item: dict) -> UpdateEntry:
    result = str(item.get("Result") or "").replace(" ", "").lower()
    return UpdateEntry(
        host=host,
        update_title=str(item.get("Title") or "Unknown update"),
        status=RESULT_MAP.get(result, UpdateStatus.SKIPPED),
        timestamp=parse_timestamp(item.get("Date")),
        kb=item.get("KB") or None,
    )


class ExtendedUpdateProvider(UpdateProvider):
    """基于 PSWindowsUpdate 的策略。"""

    name = "extended"

    async def ensure_module(
        self, host: str, executor: RemoteExecutor, credential: Optional[Credential]
    ) -> bool:
        """检查目标主机是否安装了 PSWindowsUpdate，dry-run 时返回 False。"""
        result = await self._run(host, MODULE_CHECK_SCRIPT, executor, credential)
        if result is None:
            return False
        if "present" not in result.stdout:
            raise RemoteExecutionError(host, f"{MODULE_NAME} module is not installed on {host}")
        return True

    async def apply(
        self, host: str, executor: RemoteExecutor, credential: Optional[Credential] = None
    ) -> list[UpdateEntry]:
        if not await self.ensure_module(host, executor, credential):
            return []
        result = await self._run(host, APPLY_SCRIPT, executor, credential)
        if result is None:
            return []
        entries = [_to_entry(host, item) for item in parse_json_output(host, result.stdout)]
        if not entries:
            logger.info("No updates found on %s", host)
        return entries

    async def query_history(
        self,
        host: str,
        executor: RemoteExecutor,
        credential: Optional[Credential],
        window_days: int,
    ) -> list[UpdateEntry]:
        if not await self.ensure_module(host, executor, credential):
            return []
        script = HISTORY_SCRIPT.replace("__DAYS__", str(int(window_days)))
        result = await self._run(host, script, executor, credential)
        if result is None:
            return []
        entries = [_to_entry(host, item) for item in parse_json_output(host, result.stdout)]
        return within_window(entries, window_days)

    async def reboot_required(
        self, host: str, executor: RemoteExecutor, credential: Optional[Credential] = None
    ) -> Optional[bool]:
        if not await self.ensure_module(host, executor, credential):
            return None
        result = await self._run(host, REBOOT_SCRIPT, executor, credential)
        if result is None:
            return None
        return parse_bool_output(host, result.stdout)
