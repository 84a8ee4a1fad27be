"""主机组配置测试。"""
import json

import pytest

from opshostguard.errors import ConfigurationError, GroupNotFoundError
from opshostguard.groups import EPHEMERAL_GROUP_NAME, JsonGroupConfigProvider


@pytest.fixture
def group_files(tmp_path):
    groups = tmp_path / "groups.json"
    macs = tmp_path / "macs.json"
    groups.write_text(json.dumps({"lab1": ["pc01", "pc02"], "lab2": ["pc03", "PC01"]}))
    macs.write_text(json.dumps({
        "lab1": [
            {"host": "pc01", "mac": "00-11-22-33-44-55"},
            {"host": "pc02", "mac": "001122334466"},
        ],
        "lab2": {"pc03": "00:11:22:33:44:77", "pc01": "00:11:22:33:44:99"},
    }))
    return str(groups), str(macs)


class TestJsonGroupConfigProvider:
    def test_resolve_group_with_macs(self, group_files):
        provider = JsonGroupConfigProvider(*group_files)
        group = provider.group("lab1")
        assert group.name == "lab1"
        assert not group.ephemeral
        assert [(h.name, h.mac) for h in group.hosts] == [
            ("pc01", "00:11:22:33:44:55"),
            ("pc02", "00:11:22:33:44:66"),
        ]

    def test_first_mac_wins_and_lookup_is_case_insensitive(self, group_files):
        provider = JsonGroupConfigProvider(*group_files)
        assert provider.lookup_mac("PC01") == "00:11:22:33:44:55"
        assert provider.group("lab2").hosts[1].mac == "00:11:22:33:44:55"

    def test_unknown_group(self, group_files):
        provider = JsonGroupConfigProvider(*group_files)
        with pytest.raises(GroupNotFoundError) as exc:
            provider.group("lab9")
        assert exc.value.group == "lab9"
        assert isinstance(exc.value, ConfigurationError)

    def test_resolve_mac_group(self, group_files):
        provider = JsonGroupConfigProvider(*group_files)
        hosts = provider.resolve_mac_group("lab2")
        assert [h.name for h in hosts] == ["pc03", "pc01"]
        with pytest.raises(GroupNotFoundError):
            provider.resolve_mac_group("nope")

    def test_group_names(self, group_files):
        assert JsonGroupConfigProvider(*group_files).group_names() == ["lab1", "lab2"]

    def test_missing_macs_file_is_not_fatal(self, tmp_path, group_files):
        provider = JsonGroupConfigProvider(group_files[0], str(tmp_path / "missing.json"))
        assert provider.group("lab1").hosts[0].mac is None

    def test_missing_groups_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            JsonGroupConfigProvider(str(tmp_path / "missing.json"))

    def test_invalid_group_shape(self, tmp_path):
        path = tmp_path / "groups.json"
        path.write_text(json.dumps({"lab1": "pc01"}))
        with pytest.raises(ConfigurationError):
            JsonGroupConfigProvider(str(path))

    def test_invalid_mac(self, tmp_path, group_files):
        macs = tmp_path / "bad.json"
        macs.write_text(json.dumps({"lab1": {"pc01": "zz:zz"}}))
        with pytest.raises(ConfigurationError):
            JsonGroupConfigProvider(group_files[0], str(macs))


class TestSelect:
    def test_ephemeral_hosts_get_known_macs(self, group_files):
        provider = JsonGroupConfigProvider(*group_files)
        group = provider.select(hosts=["pc02", "unknown"])
        assert group.name == EPHEMERAL_GROUP_NAME
        assert group.ephemeral
        assert [h.mac for h in group.hosts] == ["00:11:22:33:44:66", None]

    def test_single_host(self, group_files):
        group = JsonGroupConfigProvider(*group_files).select(host="pc03")
        assert group.host_names == ["pc03"]

    @pytest.mark.parametrize("kwargs", [{}, {"group": "lab1", "host": "pc01"}, {"hosts": ["  "]}])
    def test_exactly_one_target(self, group_files, kwargs):
        with pytest.raises(ConfigurationError):
            JsonGroupConfigProvider(*group_files).select(**kwargs)


class TestMacOnlyGroups:
    @pytest.fixture
    def split_files(self, tmp_path):
        groups = tmp_path / "groups.json"
        macs = tmp_path / "macs.json"
        groups.write_text(json.dumps({"lab1": ["pc01"]}))
        macs.write_text(json.dumps({"aula2": [{"host": "pc09", "mac": "00:11:22:33:44:09"}]}))
        return str(groups), str(macs)

    def test_group_falls_back_to_mac_file(self, split_files):
        group = JsonGroupConfigProvider(*split_files).group("aula2")
        assert group.name == "aula2"
        assert [(h.name, h.mac) for h in group.hosts] == [("pc09", "00:11:22:33:44:09")]

    def test_host_groups_take_precedence(self, group_files):
        # lab2 exists in both files: groups.json order wins
        assert JsonGroupConfigProvider(*group_files).group("lab2").host_names == ["pc03", "PC01"]

    def test_unknown_in_both_files(self, split_files):
        with pytest.raises(GroupNotFoundError) as exc:
            JsonGroupConfigProvider(*split_files).group("aula9")
        assert exc.value.group == "aula9"

    def test_group_names_include_mac_groups(self, split_files):
        assert JsonGroupConfigProvider(*split_files).group_names() == ["aula2", "lab1"]
