"""结果上报测试：使用 httpx MockTransport，不发真实请求。"""
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from opshostguard.config import ServerConfig
from opshostguard.cycle import CycleReport
from opshostguard.models import FleetSummary, HostLifecycleRecord, WakeResult, WakeStatus
from opshostguard.reporter import RUNS_ENDPOINT, FleetReporter


def _report():
    records = [HostLifecycleRecord(host="pc01", wake=WakeResult(host="pc01", status=WakeStatus.ALREADY_UP))]
    return CycleReport(group="lab1", records=records, summary=FleetSummary.from_records(records))


def _reporter(handler, token="tok-123", retries=3):
    reporter = FleetReporter(ServerConfig(url="https://dash.example.org", token=token), retries=retries)
    reporter._client = httpx.AsyncClient(
        base_url=reporter.config.url,
        headers=reporter._headers(),
        transport=httpx.MockTransport(handler),
    )
    return reporter


class TestFleetReporter:
    @pytest.mark.asyncio
    async def test_disabled_without_url(self):
        reporter = FleetReporter(ServerConfig())
        assert not reporter.enabled
        assert await reporter.publish(_report()) is False

    @pytest.mark.asyncio
    async def test_publish(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"ok": True})

        reporter = _reporter(handler)
        assert await reporter.publish(_report()) is True
        await reporter.close()

        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == RUNS_ENDPOINT
        assert request.headers["Authorization"] == "Bearer tok-123"
        body = json.loads(request.content)
        assert body["group"] == "lab1"
        assert body["summary"]["total_hosts"] == 1
        assert body["records"][0]["wake"]["status"] == "AlreadyUp"

    @pytest.mark.asyncio
    async def test_retries_then_gives_up(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        reporter = _reporter(handler, retries=3)
        with patch("opshostguard.reporter.asyncio.sleep", AsyncMock()) as sleep:
            assert await reporter.publish(_report()) is False
        assert len(calls) == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_recovers_after_transient_error(self):
        responses = iter([httpx.ConnectError("refused"), httpx.Response(200)])

        def handler(request):
            item = next(responses)
            if isinstance(item, Exception):
                raise item
            return item

        reporter = _reporter(handler)
        with patch("opshostguard.reporter.asyncio.sleep", AsyncMock()):
            assert await reporter.publish(_report()) is True

    def test_no_auth_header_without_token(self):
        headers = FleetReporter(ServerConfig(url="https://dash.example.org"))._headers()
        assert "Authorization" not in headers
        assert headers["User-Agent"].startswith("opshostguard/")
