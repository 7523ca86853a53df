"""Retry policy for upstream API calls."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

import requests

from commit_sync.domain.errors import UpstreamServerError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
    """Server errors, dropped connections and timeouts are worth retrying."""
    return isinstance(
        error,
        (UpstreamServerError, requests.exceptions.ConnectionError, requests.exceptions.Timeout),
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff.

    Attributes:
        max_attempts: Total attempts, including the first one
        base_delay: Delay before the first retry in seconds; doubles each attempt
        retryable: Predicate deciding whether an error is transient
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    retryable: Callable[[BaseException], bool] = field(default=is_transient)

    def backoff(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return self.base_delay * (2 ** (attempt - 1))

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        context: str,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        """
        Run an async operation, retrying transient failures.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            context: Resource description used in log lines
            sleep: Coroutine used to wait between attempts

        Returns:
            The operation's result

        Raises:
            UpstreamServerError once the budget is spent, chained to the last
            transient error. Non-retryable errors propagate immediately.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as e:
                if not self.retryable(e):
                    raise
                if attempt >= self.max_attempts:
                    logger.error(f"Giving up on {context} after {attempt} attempts: {e}")
                    status_code = getattr(e, "status_code", None)
                    raise UpstreamServerError(context, status_code, attempts=attempt) from e
                delay = self.backoff(attempt)
                logger.warning(
                    f"Request for {context} failed (attempt {attempt}/{self.max_attempts}): {e}. "
                    f"Retrying in {delay}s..."
                )
                await sleep(delay)
                attempt += 1
