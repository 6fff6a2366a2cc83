from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager, contextmanager
from typing import Callable, Dict, Hashable

from .errors import OperationInProgress

LOGGER = logging.getLogger(__name__)


def member_key(user_id: int) -> tuple[str, int]:
    return ("member", user_id)


def thread_key(thread_id: int) -> tuple[str, int]:
    return ("thread", thread_id)


class ExpiringSet:
    """Set whose entries disappear ``ttl`` seconds after they were added."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Hashable, float] = {}

    def _purge(self) -> None:
        now = self._clock()
        expired = [key for key, deadline in self._entries.items() if deadline <= now]
        for key in expired:
            del self._entries[key]
            LOGGER.debug("Marker %s expired after %ss", key, self.ttl)

    def add(self, key: Hashable) -> float:
        deadline = self._clock() + self.ttl
        self._entries[key] = deadline
        return deadline

    def discard(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def __contains__(self, key: Hashable) -> bool:
        self._purge()
        return key in self._entries

    def __len__(self) -> int:
        self._purge()
        return len(self._entries)


class PendingOperations(ExpiringSet):
    """User ids with a lifecycle operation in flight, one per user."""

    def try_claim(self, user_id: int) -> bool:
        if user_id in self:
            return False
        self.add(user_id)
        return True

    @contextmanager
    def claim(self, user_id: int):
        if user_id in self:
            raise OperationInProgress()
        deadline = self.add(user_id)
        try:
            yield
        finally:
            # An expired claim may have been taken over; leave that one alone.
            if self._entries.get(user_id) == deadline:
                self.discard(user_id)


class InFlightDeletions(ExpiringSet):
    """Thread ids whose deletion the bot itself started."""


class KeyedLock:
    """One ``asyncio.Lock`` per key, created on demand and dropped when idle."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)
