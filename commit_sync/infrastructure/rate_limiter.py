"""Shared per-credential GitHub rate limiter."""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from commit_sync.domain.errors import RateLimited

logger = logging.getLogger(__name__)


def credential_key(token: Optional[str]) -> str:
    """Stable key for a credential that does not expose the token itself."""
    if not token:
        return "anonymous"
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


@dataclass
class QuotaState:
    remaining: int
    reset_at: float


class RateLimiter:
    """Tracks the quota reported for each credential and waits out exhausted windows.

    All requests made with the same credential share one QuotaState and one
    lock, so when the quota runs out a single coroutine sleeps until the reset
    and the siblings queued behind it find the window already reset.
    """

    LOW_WATERMARK = 1  # pause once remaining quota drops to this

    def __init__(
        self,
        max_wait: float = 900.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize rate limiter.

        Args:
            max_wait: Longest wait (seconds) absorbed silently; longer waits raise RateLimited
            clock: Returns the current epoch time in seconds
            sleep: Coroutine used to wait for the reset
        """
        self.max_wait = max_wait
        self.clock = clock
        self.sleep = sleep
        self._quotas: Dict[str, QuotaState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def quota(self, key: str) -> Optional[QuotaState]:
        return self._quotas.get(key)

    def update(self, key: str, remaining: Optional[int], reset_at: Optional[float]) -> None:
        """Record the quota reported by the latest response."""
        if remaining is None or reset_at is None:
            return
        self._quotas[key] = QuotaState(remaining=remaining, reset_at=reset_at)

    def exhaust(self, key: str, reset_at: float) -> None:
        """Mark the credential as out of quota until reset_at."""
        self._quotas[key] = QuotaState(remaining=0, reset_at=reset_at)

    async def wait(self, key: str, context: str) -> None:
        """Block until the credential may issue another request."""
        if not self._is_low(key):
            return

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another coroutine may have slept through the window already
            if not self._is_low(key):
                return
            state = self._quotas[key]
            wait_time = state.reset_at - self.clock()
            if wait_time > self.max_wait:
                raise RateLimited(context, state.reset_at, wait_time)
            logger.warning(f"Rate limit nearly exceeded for {context}, waiting for {int(wait_time)} seconds")
            await self.sleep(wait_time)
            self._quotas.pop(key, None)

    def _is_low(self, key: str) -> bool:
        state = self._quotas.get(key)
        if state is None or state.remaining > self.LOW_WATERMARK:
            return False
        if state.reset_at <= self.clock():
            self._quotas.pop(key, None)
            return False
        return True
