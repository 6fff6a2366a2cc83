from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Protocol

from .retry import retry_operation

LOGGER = logging.getLogger(__name__)

CACHE_SECONDS = 30 * 60


class IdentityStore(Protocol):
    async def get(self, user_id: int) -> Optional[str]: ...


class NameState(enum.Enum):
    VALUE = "value"
    UNSET = "unset"
    FAILED = "failed"


@dataclass(frozen=True)
class NameLookup:
    state: NameState
    value: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.state is NameState.FAILED

    @property
    def unset(self) -> bool:
        return self.state is NameState.UNSET


class NameResolver:
    """Looks up in-game names and keeps "unset" apart from "lookup failed".

    Values and unset results are cached; failures are not, so the next call
    goes back to the store.
    """

    def __init__(
        self,
        store: IdentityStore,
        attempts: int = 3,
        retry_delay: float = 1.0,
        cache_seconds: float = CACHE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.cache_seconds = cache_seconds
        self._clock = clock
        self._cache: Dict[int, tuple[float, Optional[str]]] = {}

    async def lookup(self, user_id: int) -> NameLookup:
        cached = self._cache.get(user_id)
        now = self._clock()
        if cached and now - cached[0] < self.cache_seconds:
            return self._as_lookup(cached[1])
        try:
            value = await retry_operation(
                lambda: self.store.get(user_id),
                attempts=self.attempts,
                delay=self.retry_delay,
                label=f"name lookup for {user_id}",
            )
        except Exception as exc:
            LOGGER.error("Failed to get in-game name for user %s: %s", user_id, exc)
            return NameLookup(NameState.FAILED)
        self._cache[user_id] = (now, value)
        return self._as_lookup(value)

    async def display_name(
        self,
        user_id: int,
        fallback: Callable[[int], Awaitable[Optional[str]]],
    ) -> Optional[str]:
        """Resolved name, the platform display name when unset, ``None`` on failure."""
        result = await self.lookup(user_id)
        if result.failed:
            return None
        if result.unset:
            return await fallback(user_id) or "Unknown"
        return result.value

    def remember(self, user_id: int, value: Optional[str]) -> None:
        self._cache[user_id] = (self._clock(), value)

    def prune(self) -> int:
        cutoff = self._clock() - self.cache_seconds
        stale = [uid for uid, (stamp, _v) in self._cache.items() if stamp <= cutoff]
        for uid in stale:
            del self._cache[uid]
        return len(stale)

    @staticmethod
    def _as_lookup(value: Optional[str]) -> NameLookup:
        if value:
            return NameLookup(NameState.VALUE, value)
        return NameLookup(NameState.UNSET)
