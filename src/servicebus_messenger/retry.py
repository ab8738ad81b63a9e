"""RetryPolicy — exponential backoff, max attempts, optional jitter."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import TYPE_CHECKING, TypeVar

from .exceptions import TerminalBrokerError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger("servicebus_messenger.retry")

R = TypeVar("R")


class RetryPolicy:
    """Configurable retry with exponential backoff and optional jitter.

    The defaults mirror the broker send policy: 3 attempts, waiting
    100ms then 200ms, never more than 500ms.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 0.5,
        jitter: bool = False,
    ) -> None:
        """Configure retry behavior.

        Args:
            max_attempts: Maximum number of attempts (including the first).
            base_delay: Delay in seconds before the first retry.
            max_delay: Cap on the delay in seconds.
            jitter: If True, add random jitter to delays.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("base_delay and max_delay must be >= 0")
        if base_delay > max_delay:
            raise ValueError("base_delay must be <= max_delay")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    def should_retry(self, attempt: int) -> bool:
        """Return True if another attempt is allowed (attempt is 1-based)."""
        return 1 <= attempt < self.max_attempts

    def delay_for_attempt(self, attempt: int) -> float:
        """Return delay in seconds after the given 1-based attempt.

        Uses exponential backoff: base_delay * 2^(attempt-1), capped by max_delay.
        If jitter is enabled, multiplies by a random factor in [0.5, 1.5].
        """
        if attempt < 1:
            return 0.0
        delay = min(
            self.base_delay * (2 ** (attempt - 1)),
            self.max_delay,
        )
        if self.jitter:
            delay = delay * (0.5 + random.random())  # noqa: S311
        return float(max(0.0, delay))

    async def wait_before_retry(self, attempt: int) -> None:
        """Async sleep for the delay of the given attempt."""
        d = self.delay_for_attempt(attempt)
        if d > 0:
            await asyncio.sleep(d)

    async def execute(
        self,
        operation: Callable[[], Awaitable[R]],
        *,
        description: str = "operation",
    ) -> R:
        """Run ``operation`` until it succeeds or attempts are exhausted.

        Raises:
            TerminalBrokerError: chained to the last failure once no
                attempts remain.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as e:
                if not self.should_retry(attempt):
                    raise TerminalBrokerError(
                        f"{description} failed after {attempt} attempt(s): {e}",
                        attempts=attempt,
                    ) from e
                logger.warning(
                    "%s failed (attempt %d/%d): %s",
                    description,
                    attempt,
                    self.max_attempts,
                    e,
                )
                await self.wait_before_retry(attempt)
                attempt += 1
