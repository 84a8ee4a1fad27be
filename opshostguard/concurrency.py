"""有界并发工具：每个阶段内按主机扇出，结果按输入顺序扇入。"""
import asyncio
from typing import Awaitable, Callable, Iterable, List, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def gather_bounded(
    items: Iterable[T],
    func: Callable[[T], Awaitable[R]],
    limit: int = 1,
) -> List[R]:
    """以最多 limit 个并发执行 func(item)，返回值顺序与 items 一致。

    limit=1 时严格按顺序逐个执行，与单线程模型等价。
    func 自行处理单机异常；这里抛出的异常会向上传播。
    """
    items = list(items)
    if limit <= 1:
        results = []
        for item in items:
            results.append(await func(item))
        return results

    sem = asyncio.Semaphore(limit)

    async def _run(item: T) -> R:
        async with sem:
            return await func(item)

    return list(await asyncio.gather(*(_run(i) for i in items)))
