"""
主机组配置模块。

从外部 JSON 文件加载主机组（组名 → 主机列表）和 MAC 组（组名 → 主机 + MAC 列表）。
显式主机列表和单台主机通过临时组（ephemeral group）统一到同一条批处理路径。
"""
import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from opshostguard.errors import ConfigurationError, GroupNotFoundError
from opshostguard.models import HostGroup, HostIdentity, host_key, normalize_mac

logger = logging.getLogger(__name__)

EPHEMERAL_GROUP_NAME = "ephemeral"


def _load_json(path: str, label: str) -> dict:
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"{label} file not found: {path}")
    try:
        with open(p, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {label} file {path}", str(e)) from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{label} file must map group names to entries: {path}")
    return data


def _parse_mac_entries(group: str, entries) -> Dict[str, str]:
    """MAC 组支持两种形状：[{host, mac}, ...] 或 {host: mac}。"""
    if isinstance(entries, dict):
        pairs = list(entries.items())
    elif isinstance(entries, list):
        pairs = []
        for item in entries:
            if not isinstance(item, dict):
                raise ConfigurationError(f"Invalid MAC entry in group '{group}': {item!r}")
            name = item.get("host") or item.get("name")
            mac = item.get("mac") or item.get("mac_address")
            pairs.append((name, mac))
    else:
        raise ConfigurationError(f"MAC group '{group}' must be a list or mapping")

    result: Dict[str, str] = {}
    for name, mac in pairs:
        if not name or not mac:
            raise ConfigurationError(f"MAC entry in group '{group}' needs host and mac")
        try:
            result[str(name).strip()] = normalize_mac(str(mac))
        except ValueError as e:
            raise ConfigurationError(f"Invalid MAC for {name} in group '{group}'", str(e)) from e
    return result


class GroupConfigProvider:
    """主机组解析接口。"""

    def resolve_group(self, name: str) -> List[HostIdentity]:
        raise NotImplementedError

    def resolve_mac_group(self, name: str) -> List[HostIdentity]:
        raise NotImplementedError

    def lookup_mac(self, host: str) -> Optional[str]:
        raise NotImplementedError

    def group(self, name: str) -> HostGroup:
        """命名组，带上已知的 MAC 地址。

        groups.json 中没有的组名回退到 macs.json 中的同名 MAC 组。
        """
        try:
            hosts = self.resolve_group(name)
        except GroupNotFoundError:
            try:
                hosts = self.resolve_mac_group(name)
            except GroupNotFoundError:
                raise GroupNotFoundError(name) from None
            logger.debug("Group %s resolved from MAC file", name)
        return HostGroup(name=name, hosts=hosts)

    def ephemeral_group(self, hosts: Iterable[str]) -> HostGroup:
        """由显式主机列表或单台主机构造的临时组。"""
        identities = []
        for name in hosts:
            name = name.strip()
            if not name:
                continue
            identities.append(HostIdentity(name=name, mac=self.lookup_mac(name)))
        if not identities:
            raise ConfigurationError("No hosts given")
        return HostGroup(name=EPHEMERAL_GROUP_NAME, hosts=identities, ephemeral=True)

    def select(
        self,
        group: Optional[str] = None,
        hosts: Optional[Iterable[str]] = None,
        host: Optional[str] = None,
    ) -> HostGroup:
        """统一三种调用方式：命名组、主机列表、单台主机。"""
        chosen = [x for x in (group, hosts, host) if x]
        if len(chosen) != 1:
            raise ConfigurationError("Specify exactly one of group, hosts or host")
        if group:
            return self.group(group)
        if hosts:
            return self.ephemeral_group(hosts)
        return self.ephemeral_group([host])


class JsonGroupConfigProvider(GroupConfigProvider):
    """基于 groups.json / macs.json 的主机组配置。"""

    def __init__(self, groups_file: str, macs_file: Optional[str] = None):
        raw_groups = _load_json(groups_file, "Groups")
        self._groups: Dict[str, List[str]] = {}
        for name, members in raw_groups.items():
            if not isinstance(members, list) or not all(isinstance(m, str) for m in members):
                raise ConfigurationError(f"Group '{name}' must be a list of host names")
            self._groups[name] = members

        self._macs: Dict[str, Dict[str, str]] = {}
        if macs_file and Path(macs_file).exists():
            for name, entries in _load_json(macs_file, "MAC").items():
                self._macs[name] = _parse_mac_entries(name, entries)
        elif macs_file:
            logger.warning("MAC file not found: %s (wake will fail for unknown hosts)", macs_file)

        # 主机名 → MAC，跨所有 MAC 组，先出现者优先
        self._mac_index: Dict[str, str] = {}
        for entries in self._macs.values():
            for host, mac in entries.items():
                self._mac_index.setdefault(host_key(host), mac)

        logger.debug("Loaded %d host groups, %d MAC groups", len(self._groups), len(self._macs))

    def group_names(self) -> List[str]:
        return sorted(set(self._groups) | set(self._macs))

    def resolve_group(self, name: str) -> List[HostIdentity]:
        members = self._groups.get(name)
        if members is None:
            raise GroupNotFoundError(name)
        try:
            return [HostIdentity(name=m, mac=self.lookup_mac(m)) for m in members]
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid host entry in group '{name}'", str(e)) from e

    def resolve_mac_group(self, name: str) -> List[HostIdentity]:
        entries = self._macs.get(name)
        if entries is None:
            raise GroupNotFoundError(name, "no MAC group with this name")
        return [HostIdentity(name=h, mac=mac) for h, mac in entries.items()]

    def lookup_mac(self, host: str) -> Optional[str]:
        return self._mac_index.get(host_key(host))
