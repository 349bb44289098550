"""Polling with exponential backoff for backend status checks."""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger("runtime_adapter.retry_handler")


class RetryConfig:
    """Configuration for retry/poll behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter


class RetryHandler:
    """Re-invokes an async probe until its result satisfies a predicate."""

    def __init__(self, config: RetryConfig):
        self.config = config

    async def poll_until(
        self,
        probe: Callable[[], Awaitable[Any]],
        done: Callable[[Any], bool],
        operation_name: str = "unknown",
        initial: Optional[Any] = None,
    ) -> Any:
        """Return the first probe result for which ``done`` holds.

        ``initial`` counts as the first attempt when given. After the last
        attempt the final result is returned whether or not it satisfied
        ``done``; exceptions from ``probe`` propagate unchanged.
        """
        result = initial
        attempts_used = 0
        if initial is not None:
            attempts_used = 1
            if done(initial):
                return initial

        while attempts_used < self.config.max_attempts:
            if attempts_used > 0:
                delay = self._calculate_delay(attempts_used - 1)
                logger.debug(
                    "Condition not met, polling again",
                    operation=operation_name,
                    attempt=attempts_used + 1,
                    total_attempts=self.config.max_attempts,
                    delay_seconds=delay,
                )
                await asyncio.sleep(delay)
            result = await probe()
            attempts_used += 1
            if done(result):
                if attempts_used > 1:
                    logger.info(
                        "Condition met after polling",
                        operation=operation_name,
                        attempt=attempts_used,
                    )
                return result

        logger.warning(
            "Condition not met after all attempts",
            operation=operation_name,
            attempts=self.config.max_attempts,
        )
        return result

    def _calculate_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt."""
        delay = self.config.base_delay * (self.config.exponential_base ** attempt)
        delay = min(delay, self.config.max_delay)

        if self.config.jitter:
            jitter_range = delay * 0.1  # 10% jitter
            delay += random.uniform(-jitter_range, jitter_range)

        return max(delay, 0.0)
