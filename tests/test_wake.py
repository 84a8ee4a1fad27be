"""网络唤醒编排测试。"""
import json
from unittest.mock import patch

import pytest

from conftest import DOWN, PING_ONLY, UP, FakeProbe, RecordingSender
from opshostguard.groups import JsonGroupConfigProvider
from opshostguard.models import HostGroup, HostIdentity, RetryPolicy, WakeStatus
from opshostguard.wake import MagicPacketSender, WakeOrchestrator, build_magic_packet

MAC1 = "00:11:22:33:44:55"
MAC2 = "00:11:22:33:44:66"


def _group(*hosts):
    return HostGroup(name="lab1", hosts=[HostIdentity(name=h, mac=m) for h, m in hosts])


class TestMagicPacket:
    def test_layout(self):
        packet = build_magic_packet("00-11-22-33-44-55")
        assert len(packet) == 102
        assert packet[:6] == b"\xff" * 6
        assert packet[6:] == bytes.fromhex("001122334455") * 16

    def test_invalid_mac(self):
        with pytest.raises(ValueError):
            build_magic_packet("00:11")

    def test_sender_broadcasts(self):
        with patch("opshostguard.wake.socket.socket") as sock_cls:
            MagicPacketSender("192.168.1.255", 7).send(MAC1)
        sock = sock_cls.return_value
        sock.sendto.assert_called_once_with(build_magic_packet(MAC1), ("192.168.1.255", 7))
        sock.close.assert_called_once()


class TestWakeOrchestrator:
    @pytest.mark.asyncio
    async def test_already_up_sends_nothing(self, sleeps):
        probe = FakeProbe({"pc01": UP})
        sender = RecordingSender()
        wake = WakeOrchestrator(probe, sender, sleep=sleeps)

        results = await wake.wake_batch(_group(("pc01", MAC1)))

        assert results["pc01"].status == WakeStatus.ALREADY_UP
        assert results["pc01"].succeeded
        assert sender.sent == []
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_idempotent_on_repeat(self, sleeps):
        probe = FakeProbe({"pc01": UP})
        sender = RecordingSender()
        wake = WakeOrchestrator(probe, sender, sleep=sleeps)
        await wake.wake_batch(_group(("pc01", MAC1)))
        await wake.wake_batch(_group(("pc01", MAC1)))
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_pending_resolves_after_single_wait(self, sleeps):
        probe = FakeProbe({"pc01": [DOWN, UP], "pc02": [DOWN, PING_ONLY]})
        sender = RecordingSender()
        wake = WakeOrchestrator(probe, sender, RetryPolicy(wait_interval=120), sleep=sleeps)

        results = await wake.wake_batch(_group(("pc01", MAC1), ("pc02", MAC2)))

        assert sender.sent == [MAC1, MAC2]
        assert sleeps.delays == [120]
        assert results["pc01"].status == WakeStatus.SUCCESS
        assert results["pc01"].probe.is_up
        assert results["pc02"].status == WakeStatus.FAILED
        assert "ping-only" in results["pc02"].message

    @pytest.mark.asyncio
    async def test_retry_attempts_with_backoff(self, sleeps):
        probe = FakeProbe({"pc01": [DOWN, DOWN, UP]})
        wake = WakeOrchestrator(
            probe, RecordingSender(), RetryPolicy(wait_interval=10, max_attempts=3, backoff=2), sleep=sleeps
        )
        results = await wake.wake_batch(_group(("pc01", MAC1)))
        assert results["pc01"].status == WakeStatus.SUCCESS
        assert sleeps.delays == [10, 20]

    @pytest.mark.asyncio
    async def test_no_mac_fails_without_wait(self, sleeps):
        probe = FakeProbe({"pc01": DOWN})
        sender = RecordingSender()
        wake = WakeOrchestrator(probe, sender, sleep=sleeps)

        results = await wake.wake_batch(_group(("pc01", None)))

        assert results["pc01"].status == WakeStatus.FAILED
        assert results["pc01"].message == "No MAC address configured"
        assert sender.sent == []
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_send_error_is_per_host(self, sleeps):
        probe = FakeProbe({"pc01": DOWN, "pc02": [DOWN, UP]})
        sender = RecordingSender(fail_for={MAC1})
        wake = WakeOrchestrator(probe, sender, sleep=sleeps)

        results = await wake.wake_batch(_group(("pc01", MAC1), ("pc02", MAC2)))

        assert results["pc01"].status == WakeStatus.FAILED
        assert "not sent" in results["pc01"].message
        assert results["pc02"].status == WakeStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_every_host_reported(self, sleeps):
        probe = FakeProbe({"pc01": UP, "pc02": [DOWN, UP], "pc03": DOWN})
        wake = WakeOrchestrator(probe, RecordingSender(), sleep=sleeps)
        results = await wake.wake_batch(_group(("pc01", MAC1), ("pc02", MAC2), ("pc03", None)))
        assert list(results) == ["pc01", "pc02", "pc03"]
        assert all(r.status != WakeStatus.PENDING_VERIFICATION for r in results.values())

    @pytest.mark.asyncio
    async def test_wake_group_requires_provider(self):
        with pytest.raises(RuntimeError):
            await WakeOrchestrator(FakeProbe()).wake_group("lab1")

    @pytest.mark.asyncio
    async def test_wake_group_defined_only_in_mac_file(self, sleeps, tmp_path):
        groups = tmp_path / "groups.json"
        macs = tmp_path / "macs.json"
        groups.write_text(json.dumps({"lab1": ["pc01"]}))
        macs.write_text(json.dumps({"aula2": [{"host": "pc09", "mac": MAC2}]}))
        sender = RecordingSender()
        wake = WakeOrchestrator(
            FakeProbe({"pc09": [DOWN, UP]}), sender,
            groups=JsonGroupConfigProvider(str(groups), str(macs)), sleep=sleeps,
        )

        results = await wake.wake_group("aula2")

        assert sender.sent == [MAC2]
        assert results["pc09"].status == WakeStatus.SUCCESS
