"""
更新策略注册表：按配置名选择提供者。

两个内置策略在构造时注册。简单字典，不搞插件系统。
"""
from __future__ import annotations

import logging

from opshostguard.errors import ConfigurationError
from .base import UpdateProvider
from .extended import ExtendedUpdateProvider
from .native import NativeUpdateProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """所有可用更新策略的注册表。"""

    def __init__(self) -> None:
        self._providers: dict[str, UpdateProvider] = {}
        self._register_defaults()

    def _register_defaults(self) -> None:
        for provider in [NativeUpdateProvider(), ExtendedUpdateProvider()]:
            self.register(provider)

    def register(self, provider: UpdateProvider) -> None:
        self._providers[provider.name] = provider
        logger.debug("Registered update provider: %s", provider.name)

    def get(self, name: str) -> UpdateProvider:
        provider = self._providers.get(name.lower())
        if provider is None:
            raise ConfigurationError(
                f"Unknown update strategy: {name}",
                f"available: {', '.join(sorted(self._providers))}",
            )
        return provider

    def names(self) -> list[str]:
        return sorted(self._providers)


def get_provider(name: str) -> UpdateProvider:
    return ProviderRegistry().get(name)
