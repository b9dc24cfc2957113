"""
Bounded concurrency for upstream fan-out (wallet polls, scoring).
"""

import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, TypeVar


T = TypeVar("T")


class ConcurrencyLimiter:
    """
    Run coroutines with at most ``limit`` of them active at once.

    Callers beyond the limit wait in FIFO order on the semaphore.
    """

    def __init__(self, limit: int = 4):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self.active = 0
        self.pending = 0

    async def run(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await ``func(*args, **kwargs)`` once a slot is free."""
        self.pending += 1
        try:
            await self._semaphore.acquire()
        finally:
            self.pending -= 1
        self.active += 1
        try:
            return await func(*args, **kwargs)
        finally:
            self.active -= 1
            self._semaphore.release()

    async def map(self, func: Callable[[Any], Awaitable[T]], items: Iterable[Any]) -> List[T]:
        """Apply ``func`` to every item under the limit, preserving order."""
        return list(await asyncio.gather(*(self.run(func, item) for item in items)))
