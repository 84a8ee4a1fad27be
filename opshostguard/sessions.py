"""
活动会话检测模块。

在目标主机上执行 quser，解析 STATE 列判断是否有交互式用户登录。
关机和非强制更新之前都必须通过这里的检查。
"""
import logging
import re
from typing import List

from opshostguard.errors import RemoteExecutionError
from opshostguard.models import SessionState
from opshostguard.remote import HostDispatcher

logger = logging.getLogger(__name__)

# quser 在不同系统语言下的 Active 状态
ACTIVE_STATES = {"active", "activo", "aktiv", "actif", "attivo", "ativo"}

# 没有任何会话时 quser 返回 1 并输出这类提示
NO_SESSION_RE = re.compile(
    r"no user exists|no existe ning|kein benutzer|aucun utilisateur|nessun utente",
    re.IGNORECASE,
)

QUSER_SCRIPT = """
$out = (quser 2>&1 | Out-String)
Write-Output $out
exit $LASTEXITCODE
"""


def parse_quser(output: str) -> List[tuple]:
    """解析 quser 输出为 [(username, is_active), ...]，跳过表头。

    断开的会话没有 SESSIONNAME 列，列数会左移，所以按 token 查找状态而不按位置。
    """
    sessions = []
    lines = [l for l in output.splitlines() if l.strip()]
    for line in lines[1:]:
        tokens = line.strip().lstrip(">").split()
        if not tokens:
            continue
        username = tokens[0]
        active = any(t.lower() in ACTIVE_STATES for t in tokens[1:])
        sessions.append((username, active))
    return sessions


class SessionInspector:
    """会话检测接口。"""

    async def query(self, host: str) -> SessionState:
        raise NotImplementedError

    async def has_active_session(self, host: str) -> bool:
        state = await self.query(host)
        return state.active


class QuserSessionInspector(SessionInspector):
    """基于 quser 的会话检测。"""

    def __init__(self, dispatcher: HostDispatcher):
        self.dispatcher = dispatcher

    async def query(self, host: str) -> SessionState:
        result = await self.dispatcher.run(host, QUSER_SCRIPT)
        if not result.executed:
            return SessionState(host=host, active=False)

        output = result.stdout
        if result.exit_code != 0:
            if NO_SESSION_RE.search(output) or NO_SESSION_RE.search(result.stderr):
                return SessionState(host=host, active=False)
            raise RemoteExecutionError(
                host, f"quser failed on {host} (exit={result.exit_code})", output.strip()[:500]
            )

        sessions = parse_quser(output)
        users = [u for u, active in sessions if active]
        state = SessionState(host=host, active=bool(users), users=users)
        if state.active:
            logger.info("Active session on %s: %s", host, ", ".join(users))
        return state
