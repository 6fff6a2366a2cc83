from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_DELAY = 1.0


async def retry_operation(
    operation: Callable[[], Awaitable[T]],
    attempts: int = DEFAULT_ATTEMPTS,
    delay: float = DEFAULT_DELAY,
    label: str = "operation",
) -> T:
    """Run ``operation`` up to ``attempts`` times with linear backoff.

    Only use this for steps that are safe to repeat (fetches, sends,
    membership changes, delete-if-exists). The last error is re-raised.
    """
    for attempt in range(attempts):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if attempt == attempts - 1:
                raise
            wait = delay * (attempt + 1)
            LOGGER.warning(
                "Retrying %s after error (attempt %s/%s, waiting %.1fs): %s",
                label,
                attempt + 2,
                attempts,
                wait,
                exc,
            )
            await asyncio.sleep(wait)
    raise RuntimeError("retry_operation called with attempts < 1")
