"""有界并发测试。"""
import asyncio

import pytest

from opshostguard.concurrency import gather_bounded


@pytest.mark.asyncio
async def test_sequential_when_single_worker():
    order = []

    async def work(i):
        order.append(("start", i))
        await asyncio.sleep(0)
        order.append(("end", i))
        return i * 2

    assert await gather_bounded([1, 2, 3], work) == [2, 4, 6]
    assert order == [("start", 1), ("end", 1), ("start", 2), ("end", 2), ("start", 3), ("end", 3)]


@pytest.mark.asyncio
async def test_limit_respected_and_order_preserved():
    running = 0
    peak = 0

    async def work(i):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01 * (5 - i))
        running -= 1
        return i

    assert await gather_bounded(range(5), work, limit=2) == [0, 1, 2, 3, 4]
    assert peak == 2
