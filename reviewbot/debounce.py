from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Hashable

from .guard import KeyedLock

LOGGER = logging.getLogger(__name__)

RefreshFn = Callable[[Hashable], Awaitable[None]]


class CoalescingTrigger:
    """Keyed debounce timer.

    Bursts of ``trigger(key)`` collapse into one call of ``refresh_fn(key)``
    that runs ``min_delay`` after the last trigger, but never later than
    ``max_delay`` after the first one. Triggers that arrive while a refresh is
    running schedule exactly one more.
    """

    def __init__(
        self,
        refresh_fn: RefreshFn,
        *,
        min_delay: float = 2.0,
        max_delay: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.refresh_fn = refresh_fn
        self.min_delay = float(min_delay)
        self.max_delay = max(float(max_delay), self.min_delay)
        self._clock = clock
        self._first: Dict[Hashable, float] = {}
        self._last: Dict[Hashable, float] = {}
        self._tasks: Dict[Hashable, asyncio.Task] = {}
        self._locks = KeyedLock()

    def pending(self, key: Hashable) -> bool:
        return key in self._first

    def trigger(self, key: Hashable) -> None:
        now = self._clock()
        self._first.setdefault(key, now)
        self._last[key] = now
        running = self._tasks.get(key)
        if running is None or running.done():
            self._tasks[key] = asyncio.get_running_loop().create_task(self._debounced(key))

    def _deadline(self, key: Hashable) -> float:
        return min(self._last[key] + self.min_delay, self._first[key] + self.max_delay)

    async def _debounced(self, key: Hashable) -> None:
        try:
            while key in self._first:
                wait = self._deadline(key) - self._clock()
                if wait > 0:
                    await asyncio.sleep(wait)
                    continue
                await self._run(key)
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                del self._tasks[key]

    async def _run(self, key: Hashable) -> None:
        async with self._locks.hold(key):
            if key not in self._first:
                return
            self._first.pop(key, None)
            self._last.pop(key, None)
            try:
                await self.refresh_fn(key)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Refresh for %s failed", key)

    async def flush(self, key: Hashable) -> None:
        """Run a pending refresh for ``key`` now."""
        if key in self._first:
            await self._run(key)

    async def close(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
