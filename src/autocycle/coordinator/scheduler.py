"""Settle-all execution of deferred coroutines with bounded concurrency."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, Literal, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class Settled(Generic[T]):
    index: int
    status: Literal["fulfilled", "rejected"]
    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status == "fulfilled"


async def run_settled(
    factories: Sequence[Callable[[], Awaitable[T]]],
    limit: int,
) -> list[Settled[T]]:
    """Run every factory, at most *limit* at a time, and settle all of them.

    Results are returned in input order.  A failing factory is recorded as
    ``rejected`` at its index and never cancels its siblings.
    """
    count = len(factories)
    if count == 0:
        return []
    limit = max(1, limit)
    results: list[Settled[T] | None] = [None] * count
    cursor = 0

    async def worker(worker_id: int) -> None:
        nonlocal cursor
        while True:
            # No await between the check and the increment: the claim is atomic.
            if cursor >= count:
                return
            index = cursor
            cursor += 1
            try:
                value = await factories[index]()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("scheduled item %d failed on worker %d: %s", index, worker_id, exc)
                results[index] = Settled(index=index, status="rejected", error=exc)
            else:
                results[index] = Settled(index=index, status="fulfilled", value=value)

    await asyncio.gather(*(worker(i) for i in range(min(limit, count))))
    return [r for r in results if r is not None]
