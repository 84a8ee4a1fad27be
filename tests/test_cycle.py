"""完整周期集成测试：假探测器 + 假执行器，不接触真实主机。"""
import json

import pytest

from conftest import DOWN, UP, FakeExecutor, FakeProbe, FakeSessionInspector, RecordingSender
from opshostguard.config import OrchestratorConfig
from opshostguard.cycle import FleetCycle, shutdown_snapshot
from opshostguard.errors import ConfigurationError, CredentialError, GroupNotFoundError
from opshostguard.groups import JsonGroupConfigProvider
from opshostguard.models import (
    FleetStatus,
    ProbeResult,
    RetryPolicy,
    ShutdownStatus,
    UpdateStatus,
    WakeResult,
    WakeStatus,
)
from opshostguard.remote import HostDispatcher, StaticCredentialProvider
from opshostguard.shutdown import REASON_ACTIVE_SESSION, REASON_UNREACHABLE, REASON_UNVERIFIED, ShutdownOrchestrator
from opshostguard.updates import UpdateOrchestrator
from opshostguard.wake import WakeOrchestrator


@pytest.fixture
def groups(tmp_path):
    groups_file = tmp_path / "groups.json"
    macs_file = tmp_path / "macs.json"
    groups_file.write_text(json.dumps({"lab1": ["pc01", "pc02"], "lab2": ["pc01", "pc02", "pc03"]}))
    macs_file.write_text(json.dumps({"lab1": {"pc01": "00:11:22:33:44:55", "pc02": "00:11:22:33:44:66"}}))
    return JsonGroupConfigProvider(str(groups_file), str(macs_file))


@pytest.fixture
def config():
    cfg = OrchestratorConfig()
    cfg.credentials.username = "LAB\\svc-ops"
    cfg.credentials.password = "secret"
    return cfg


def _build(config, groups, probe, sessions, remote=None, sleeps=None):
    remote = remote or FakeExecutor()
    dispatcher = HostDispatcher(remote, FakeExecutor(), names=set())
    return FleetCycle(
        config=config,
        groups=groups,
        credentials=StaticCredentialProvider(config.credentials),
        dispatcher=dispatcher,
        probe=probe,
        sessions=sessions,
        wake=WakeOrchestrator(probe, RecordingSender(), RetryPolicy(wait_interval=120), groups, sleep=sleeps),
        shutdown=ShutdownOrchestrator(probe, sessions, dispatcher, RetryPolicy(wait_interval=60), groups, sleep=sleeps),
        updates=UpdateOrchestrator(dispatcher, sessions),
    )


class TestShutdownSnapshot:
    def test_freshly_woken_hosts_left_out(self):
        up = ProbeResult(host="x", ping_reachable=True, management_port_reachable=True)
        results = {
            "pc01": WakeResult(host="pc01", status=WakeStatus.SUCCESS, probe=up),
            "pc02": WakeResult(host="pc02", status=WakeStatus.ALREADY_UP, probe=up),
            "pc03": WakeResult(host="pc03", status=WakeStatus.FAILED, probe=ProbeResult(host="pc03")),
        }
        assert sorted(shutdown_snapshot(results)) == ["pc02", "pc03"]


class TestFleetCycle:
    @pytest.mark.asyncio
    async def test_lab_cycle(self, config, groups, sleeps):
        """pc01 关机中被唤醒，pc02 已在线且有用户登录：两台都不关机。"""
        probe = FakeProbe({"pc01": [DOWN, UP], "pc02": UP})
        sessions = FakeSessionInspector(active={"pc02"})
        remote = FakeExecutor()
        cycle = _build(config, groups, probe, sessions, remote, sleeps)

        report = await cycle.run("lab1")

        records = {r.host: r for r in report.records}
        assert report.group == "lab1"
        assert records["pc01"].wake.status == WakeStatus.SUCCESS
        assert records["pc02"].wake.status == WakeStatus.ALREADY_UP
        assert records["pc02"].shutdown.status == ShutdownStatus.SKIPPED
        assert records["pc02"].shutdown.reason == REASON_ACTIVE_SESSION
        assert records["pc01"].shutdown.reason == REASON_UNVERIFIED
        assert records["pc02"].session_active
        assert remote.calls == []
        assert report.summary.total_hosts == 2
        assert report.summary.failed_hosts_count == 0
        assert report.summary.active_session_count == 1
        assert report.summary.overall_status == FleetStatus.SUCCESS
        assert report.summary.duration is not None
        assert sleeps.delays == [120]

    @pytest.mark.asyncio
    async def test_reprobe_shuts_down_woken_host(self, config, groups, sleeps):
        config.shutdown.reprobe = True
        probe = FakeProbe({"pc01": [DOWN, UP, UP, DOWN], "pc02": UP})
        remote = FakeExecutor()
        cycle = _build(config, groups, probe, FakeSessionInspector(active={"pc02"}), remote, sleeps)

        report = await cycle.run("lab1")

        records = {r.host: r for r in report.records}
        assert records["pc01"].shutdown.status == ShutdownStatus.SUCCESS
        assert [h for h, _, _ in remote.calls] == ["pc01"]
        assert sleeps.delays == [120, 60]

    @pytest.mark.asyncio
    async def test_updates_skip_busy_hosts_and_failed_wakes(self, config, groups, sleeps):
        stdout = json.dumps([{"Title": "2026-03 Cumulative Update", "KB": "5035845", "ResultCode": 2}])
        remote = FakeExecutor({"pc01": stdout})
        probe = FakeProbe({"pc01": UP, "pc02": UP, "pc03": DOWN})
        sessions = FakeSessionInspector(active={"pc02"})
        cycle = _build(config, groups, probe, sessions, remote, sleeps)

        report = await cycle.run("lab2", apply_updates=True, shutdown=False)

        records = {r.host: r for r in report.records}
        assert [u.status for u in records["pc01"].updates_applied] == [UpdateStatus.INSTALLED]
        assert records["pc02"].updates_applied == []
        assert records["pc03"].wake.status == WakeStatus.FAILED
        assert records["pc03"].updates_applied == []
        assert records["pc01"].shutdown is None
        assert report.summary.total_updates_installed == 1
        assert report.summary.failed_hosts_count == 1
        assert report.summary.overall_status == FleetStatus.PARTIAL_FAILURES
        assert "pc03" not in sessions.calls

    @pytest.mark.asyncio
    async def test_pending_reboot_recorded_after_updates(self, config, groups, sleeps):
        stdout = json.dumps([{"Title": "2026-03 Cumulative Update", "KB": "5035845", "ResultCode": 2}])
        remote = FakeExecutor({
            "pc01": [stdout, "True"],
            "pc02": [json.dumps([]), "False"],
        })
        probe = FakeProbe({"pc01": UP, "pc02": UP})
        cycle = _build(config, groups, probe, FakeSessionInspector(), remote, sleeps)

        report = await cycle.run("lab1", apply_updates=True, shutdown=False)

        records = {r.host: r for r in report.records}
        assert records["pc01"].pending_reboot is True
        assert records["pc02"].pending_reboot is False
        assert "RebootRequired" in remote.scripts_for("pc01")[1]
        assert report.summary.pending_reboot_count == 1

    @pytest.mark.asyncio
    async def test_no_reboot_query_without_updates(self, config, groups, sleeps):
        remote = FakeExecutor()
        cycle = _build(config, groups, FakeProbe({"pc01": UP, "pc02": UP}), FakeSessionInspector(), remote, sleeps)
        report = await cycle.run("lab1", shutdown=False)
        assert all(r.pending_reboot is None for r in report.records)
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_failed_wake_host_is_unreachable_at_shutdown(self, config, groups, sleeps):
        probe = FakeProbe({"pc01": UP, "pc02": UP, "pc03": DOWN})
        cycle = _build(config, groups, probe, FakeSessionInspector(active={"pc01", "pc02"}), sleeps=sleeps)
        report = await cycle.run(hosts=["pc03"])
        assert report.group == "ephemeral"
        assert report.records[0].shutdown.reason == REASON_UNREACHABLE

    @pytest.mark.asyncio
    async def test_missing_credentials_abort_before_any_host(self, config, groups, sleeps):
        config.credentials.password = ""
        probe = FakeProbe({"pc01": UP})
        cycle = _build(config, groups, probe, FakeSessionInspector(), sleeps=sleeps)
        with pytest.raises(CredentialError):
            await cycle.run("lab1")
        assert probe.calls == []

    @pytest.mark.asyncio
    async def test_unknown_group_aborts_before_any_host(self, config, groups, sleeps):
        probe = FakeProbe()
        cycle = _build(config, groups, probe, FakeSessionInspector(), sleeps=sleeps)
        with pytest.raises(GroupNotFoundError):
            await cycle.run("lab9")
        assert probe.calls == []

    @pytest.mark.asyncio
    async def test_unknown_strategy_aborts_before_any_host(self, config, groups, sleeps):
        config.updates.strategy = "chocolatey"
        probe = FakeProbe()
        cycle = _build(config, groups, probe, FakeSessionInspector(), sleeps=sleeps)
        with pytest.raises(ConfigurationError):
            await cycle.run("lab1")
        assert probe.calls == []


def test_from_config_wires_components(config, groups):
    cycle = FleetCycle.from_config(config, groups)
    assert cycle.wake.groups is groups
    assert cycle.shutdown.dispatcher is cycle.dispatcher
    assert cycle.load is not None and cycle.inventory is not None
    assert cycle.dispatcher.credential is None
    cycle.prepare()
    assert cycle.dispatcher.credential.username == "LAB\\svc-ops"
