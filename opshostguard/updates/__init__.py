"""补丁更新：可互换的更新策略与逐台主机的更新编排。"""
from .base import UpdateProvider
from .extended import ExtendedUpdateProvider
from .native import NativeUpdateProvider
from .orchestrator import UpdateOrchestrator
from .registry import ProviderRegistry, get_provider

__all__ = [
    "UpdateProvider",
    "NativeUpdateProvider",
    "ExtendedUpdateProvider",
    "UpdateOrchestrator",
    "ProviderRegistry",
    "get_provider",
]
