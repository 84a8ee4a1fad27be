"""
更新提供者基类。

每个提供者实现两种能力：apply（安装本次可用更新）和 query_history（查询更新历史）。
脚本在目标主机上以 JSON 输出结果，这里负责解析并映射为 UpdateEntry。
"""
from __future__ import annotations

import abc
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from opshostguard.errors import RemoteExecutionError
from opshostguard.models import UpdateEntry
from opshostguard.remote import Credential, RemoteExecutor, RemoteResult

logger = logging.getLogger(__name__)

UTC = timezone.utc

# ConvertTo-Json 在 Windows PowerShell 5 下把 DateTime 序列化为 /Date(ms)/
_MS_DATE_RE = re.compile(r"/Date\((-?\d+)(?:[+-]\d{4})?\)/")


def parse_timestamp(value: Any, default: Optional[datetime] = None) -> datetime:
    """解析脚本输出中的时间戳，无时区时按 UTC 处理。"""
    fallback = default or datetime.now(UTC)
    if value is None or value == "":
        return fallback
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        m = _MS_DATE_RE.search(text)
        if m:
            return datetime.fromtimestamp(int(m.group(1)) / 1000, tz=UTC)
        # .NET 'o' 格式有 7 位小数，fromisoformat 只接受 6 位
        text = re.sub(r"(\.\d{6})\d+", r"\1", text.replace("Z", "+00:00"))
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            logger.debug("Unparseable timestamp %r, using fallback", value)
            return fallback
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def parse_bool_output(host: str, stdout: str) -> bool:
    """脚本以 True / False 单行输出布尔值。"""
    text = stdout.strip().lower()
    if text in ("true", "1"):
        return True
    if text in ("false", "0"):
        return False
    raise RemoteExecutionError(host, f"Unexpected reboot status output on {host}", stdout.strip()[:200])


def parse_json_output(host: str, stdout: str) -> list[dict]:
    """脚本输出为单个对象、数组或空。"""
    text = stdout.strip()
    if not text:
        return []
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise RemoteExecutionError(host, f"Invalid JSON from update script on {host}", str(e)) from e
    if data is None:
        return []
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [d for d in data if isinstance(d, dict)]
    raise RemoteExecutionError(host, f"Unexpected update script output on {host}")


def within_window(entries: list[UpdateEntry], window_days: int, now: Optional[datetime] = None) -> list[UpdateEntry]:
    """只保留回看窗口内的历史条目。"""
    now = now or datetime.now(UTC)
    since = now - timedelta(days=window_days)
    return [e for e in entries if e.timestamp >= since]


class UpdateProvider(abc.ABC):
    """可互换的更新策略。"""

    name: str = ""

    async def _run(
        self,
        host: str,
        script: str,
        executor: RemoteExecutor,
        credential: Optional[Credential],
    ) -> Optional[RemoteResult]:
        """执行脚本并检查退出码；dry-run 下返回 None。"""
        result = await executor.run(host, script, credential)
        if not result.executed:
            return None
        return result.raise_for_status()

    @abc.abstractmethod
    async def apply(
        self, host: str, executor: RemoteExecutor, credential: Optional[Credential] = None
    ) -> list[UpdateEntry]:
        """安装可用更新，返回本次每个更新的结果。"""

    @abc.abstractmethod
    async def query_history(
        self,
        host: str,
        executor: RemoteExecutor,
        credential: Optional[Credential],
        window_days: int,
    ) -> list[UpdateEntry]:
        """查询回看窗口内的更新历史。"""

    async def reboot_required(
        self, host: str, executor: RemoteExecutor, credential: Optional[Credential] = None
    ) -> Optional[bool]:
        """主机是否有待重启的更新。None 表示未知（dry-run 或不支持）。"""
        return None
