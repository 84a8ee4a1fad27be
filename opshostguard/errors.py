"""
异常定义模块 (Exception Definitions)

配置类错误会终止整次运行；单台主机上的远程执行错误在主机边界被捕获，
只以状态字段的形式出现在结果中。

Configuration errors abort the whole run before any host is touched.
Per-host remote execution errors are caught at the host boundary and
surface only as status fields in the result set.
"""
from typing import Optional


class OpsHostGuardError(Exception):
    """异常基类 (Base Exception)"""
    error: str = "opshostguard_error"

    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(message)

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message


class ConfigurationError(OpsHostGuardError):
    """配置缺失或无效 (Missing or Invalid Configuration)"""
    error = "configuration_error"


class GroupNotFoundError(ConfigurationError):
    """主机组不存在 (Host Group Not Found)"""
    error = "group_not_found"

    def __init__(self, group: str, detail: Optional[str] = None):
        self.group = group
        super().__init__(f"Host group not found: {group}", detail)


class CredentialError(ConfigurationError):
    """远程凭据缺失 (Missing Remoting Credential)"""
    error = "credential_error"


class RemoteExecutionError(OpsHostGuardError):
    """远程命令执行失败：认证、脚本异常或传输错误 (Remote Execution Failure)"""
    error = "remote_execution_error"

    def __init__(self, host: str, message: str, detail: Optional[str] = None):
        self.host = host
        super().__init__(message, detail)
