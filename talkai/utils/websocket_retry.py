"""WebSocket Retry - backoff reconnection logic.

Provides retry with either exponential or linear backoff for:
- Initial connection failures
- Reconnection after a stream drops during operation
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from talkai.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    With ``linear=True`` the n-th delay is ``initial_delay_s * n``; otherwise
    it grows by ``backoff_factor`` up to ``max_delay_s``. With
    ``delay_first=True`` the first attempt also waits (reconnect after drop).
    """

    max_retries: int = 3
    initial_delay_s: float = 0.5
    max_delay_s: float = 10.0
    backoff_factor: float = 2.0
    jitter: bool = True
    linear: bool = False
    delay_first: bool = False

    def delay_for(self, n: int) -> float:
        """The n-th backoff delay (1-based)."""
        if self.linear:
            delay = self.initial_delay_s * n
        else:
            delay = min(
                self.initial_delay_s * (self.backoff_factor ** (n - 1)),
                self.max_delay_s,
            )
        if self.jitter:
            delay = delay * (0.5 + random.random())
        return delay


class RetryExhausted(Exception):
    """All retry attempts failed."""

    def __init__(self, attempts: int, last_error: Exception | None = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Connection failed after {attempts} attempts")


async def with_retry(
    connect_fn: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    operation_name: str = "connect",
    session_id: str | None = None,
) -> T:
    """Execute a connection function with backoff retry.

    Args:
        connect_fn: Async function that establishes connection
        config: Retry configuration
        operation_name: Name for logging
        session_id: Session ID for logging

    Returns:
        Result of connect_fn

    Raises:
        RetryExhausted: If all retries fail

    Example:
        ws = await with_retry(
            lambda: websockets.connect(url),
            config=RetryConfig(max_retries=5, initial_delay_s=1.0, linear=True),
            operation_name="voice_reconnect",
            session_id="session-123",
        )
    """
    if config is None:
        config = RetryConfig()

    last_error: Exception | None = None

    for attempt in range(1, config.max_retries + 1):
        delay_index = attempt if config.delay_first else attempt - 1
        if delay_index > 0:
            delay = config.delay_for(delay_index)
            logger.info(
                f"{operation_name}_waiting",
                session_id=session_id,
                attempt=attempt,
                max_retries=config.max_retries,
                delay_s=delay,
            )
            await asyncio.sleep(delay)

        try:
            result = await connect_fn()
            if attempt > 1 or config.delay_first:
                logger.info(
                    f"{operation_name}_reconnected",
                    session_id=session_id,
                    attempt=attempt,
                )
            return result

        except asyncio.CancelledError:
            raise

        except Exception as e:
            last_error = e
            logger.warning(
                f"{operation_name}_retry",
                session_id=session_id,
                attempt=attempt,
                max_retries=config.max_retries,
                error=str(e),
            )

    logger.error(
        f"{operation_name}_retry_exhausted",
        session_id=session_id,
        attempts=config.max_retries,
        error=str(last_error) if last_error else None,
    )
    raise RetryExhausted(config.max_retries, last_error)
