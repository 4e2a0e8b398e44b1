"""
Retry with capped exponential backoff for transient provider failures.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from dgm.core.errors import TransientServiceError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Bounded retry policy.

    Only `TransientServiceError` is retried; anything else propagates on the
    first occurrence.
    """

    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.1

    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_agent_config(cls, config: Any) -> RetryPolicy:
        """Create from an `AgentConfig`."""
        return cls(
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before retry number `attempt` (0-based)."""
        delay = min(self.max_delay, self.base_delay * (2 ** attempt))
        if retry_after is not None:
            delay = min(self.max_delay, max(delay, retry_after))
        if self.jitter and delay > 0:
            delay += random.uniform(0, delay * self.jitter)
        return delay

    async def call(self, fn: Callable[[], Awaitable[T]], operation: str = "llm_call") -> T:
        """
        Run `fn`, retrying transient failures.

        Raises:
            TransientServiceError: When the retry budget is exhausted
        """
        attempt = 0
        while True:
            try:
                return await fn()
            except TransientServiceError as e:
                if attempt >= self.max_retries:
                    logger.warning(
                        "Retry budget exhausted",
                        operation=operation,
                        attempts=attempt + 1,
                        error=str(e),
                    )
                    raise
                delay = self.delay_for(attempt, e.retry_after)
                logger.info(
                    "Transient failure, backing off",
                    operation=operation,
                    attempt=attempt + 1,
                    delay=round(delay, 2),
                    error=str(e),
                )
                attempt += 1
                await self.sleep(delay)
