from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


async def run_concurrent(tasks: list[Callable[[], Awaitable[T]]], limit: int) -> list[T]:
    """Run zero-argument coroutine factories with at most *limit* in flight.

    Results come back in task order regardless of completion order.  Tasks are
    expected to handle their own failures (returning a sentinel such as
    ``None``); an exception escaping a task propagates to the caller.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")
    results: list[T | None] = [None] * len(tasks)
    cursor = 0

    async def worker() -> None:
        nonlocal cursor
        while cursor < len(tasks):
            # Claim and increment happen without an await in between.
            i = cursor
            cursor += 1
            results[i] = await tasks[i]()

    await asyncio.gather(*(worker() for _ in range(min(limit, len(tasks)))))
    return results  # type: ignore[return-value]
