"""
原生更新策略：Windows Update Agent COM 接口（Microsoft.Update.Session）。

搜索 → 下载 → 安装，历史通过 IUpdateSearcher.QueryHistory 查询。
"""
from __future__ import annotations

import logging
from typing import Optional

from opshostguard.models import UpdateEntry, UpdateStatus
from opshostguard.remote import Credential, RemoteExecutor
from .base import UpdateProvider, parse_bool_output, parse_json_output, parse_timestamp, within_window

logger = logging.getLogger(__name__)

# OperationResultCode: 0 NotStarted, 1 InProgress, 2 Succeeded,
# 3 SucceededWithErrors, 4 Failed, 5 Aborted
RESULT_CODES = {
    2: UpdateStatus.INSTALLED,
    3: UpdateStatus.INSTALLED,
    4: UpdateStatus.FAILED,
    5: UpdateStatus.FAILED,
}

APPLY_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
$session = New-Object -ComObject Microsoft.Update.Session
$searcher = $session.CreateUpdateSearcher()
$found = $searcher.Search("IsInstalled=0 and IsHidden=0 and Type='Software'")
$results = @()
if ($found.Updates.Count -gt 0) {
    $collection = New-Object -ComObject Microsoft.Update.UpdateColl
    foreach ($u in $found.Updates) {
        if (-not $u.EulaAccepted) { $u.AcceptEula() }
        [void]$collection.Add($u)
    }
    $downloader = $session.CreateUpdateDownloader()
    $downloader.Updates = $collection
    [void]$downloader.Download()
    $installer = $session.CreateUpdateInstaller()
    $installer.Updates = $collection
    $install = $installer.Install()
    for ($i = 0; $i -lt $collection.Count; $i++) {
        $u = $collection.Item($i)
        $results += [pscustomobject]@{
            Title      = $u.Title
            KB         = ($u.KBArticleIDs | Select-Object -First 1)
            ResultCode = [int]$install.GetUpdateResult($i).ResultCode
            Date       = (Get-Date).ToUniversalTime().ToString('o')
        }
    }
}
ConvertTo-Json -InputObject @($results) -Compress -Depth 3
"""

HISTORY_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
$session = New-Object -ComObject Microsoft.Update.Session
$searcher = $session.CreateUpdateSearcher()
$count = $searcher.GetTotalHistoryCount()
$since = (Get-Date).ToUniversalTime().AddDays(-__DAYS__)
$results = @()
if ($count -gt 0) {
    foreach ($h in $searcher.QueryHistory(0, $count)) {
        # Operation 1 = installation
        if ($h.Operation -eq 1 -and $h.Date -ge $since) {
            $results += [pscustomobject]@{
                Title      = $h.Title
                ResultCode = [int]$h.ResultCode
                Date       = $h.Date.ToString('o')
            }
        }
    }
}
ConvertTo-Json -InputObject @($results) -Compress -Depth 3
"""


REBOOT_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
(New-Object -ComObject Microsoft.Update.SystemInfo).RebootRequired
"""

def _to_entry(host: str, item: dict) -> UpdateEntry:
    try:
        code = int(item.get("ResultCode", 0))
    except (TypeError, ValueError):
        code = 0
    kb = item.get("KB")
    return UpdateEntry(
        host=host,
        update_title=str(item.get("Title") or "Unknown update"),
        status=RESULT_CODES.get(code, UpdateStatus.SKIPPED),
        timestamp=parse_timestamp(item.get("Date")),
        kb=f"KB{kb}" if kb and not str(kb).upper().startswith("KB") else kb,
    )


class NativeUpdateProvider(UpdateProvider):
    """基于系统内置更新会话/搜索器的策略。"""

    name = "native"

    async def apply(
        self, host: str, executor: RemoteExecutor, credential: Optional[Credential] = None
    ) -> list[UpdateEntry]:
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
        script = HISTORY_SCRIPT.replace("__DAYS__", str(int(window_days)))
        result = await self._run(host, script, executor, credential)
        if result is None:
            return []
        entries = [_to_entry(host, item) for item in parse_json_output(host, result.stdout)]
        return within_window(entries, window_days)

    async def reboot_required(
        self, host: str, executor: RemoteExecutor, credential: Optional[Credential] = None
    ) -> Optional[bool]:
        result = await self._run(host, REBOOT_SCRIPT, executor, credential)
        if result is None:
            return None
        return parse_bool_output(host, result.stdout)
