"""Rate limiting helpers for high-frequency event streams.

- Throttle: leading-edge gate, at most one pass per interval
- Debouncer: trailing-edge, runs the last call once the stream goes quiet
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

from talkai.observability.logging import get_logger

logger = get_logger(__name__)


class Throttle:
    """Leading-edge throttle.

    The first call passes; calls within ``interval_ms`` of the last pass are
    dropped.

    Usage:
        throttle = Throttle(500)
        if throttle.allow():
            handle(event)
    """

    def __init__(
        self,
        interval_ms: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._interval_s = interval_ms / 1000.0
        self._clock = clock
        self._last_pass: float | None = None

    def allow(self) -> bool:
        """Whether the current call may pass."""
        now = self._clock()
        if self._last_pass is not None and now - self._last_pass < self._interval_s:
            return False
        self._last_pass = now
        return True

    def reset(self) -> None:
        self._last_pass = None


class Debouncer:
    """Trailing-edge debounce for an async function.

    Each call restarts the quiet period; only the latest arguments are used
    when it elapses.

    Usage:
        debounce = Debouncer(save_metrics, delay_ms=2000)
        debounce(emotions)
        ...
        await debounce.flush()
    """

    def __init__(
        self,
        func: Callable[..., Awaitable[Any]],
        delay_ms: float,
        name: str = "debounced",
    ) -> None:
        self._func = func
        self._delay_s = delay_ms / 1000.0
        self._name = name
        self._task: asyncio.Task | None = None
        self._running: set[asyncio.Task] = set()
        self._pending: tuple[tuple, dict] | None = None

    @property
    def pending(self) -> bool:
        """Whether a call is waiting to run."""
        return self._pending is not None

    def __call__(self, *args: Any, **kwargs: Any) -> None:
        self._pending = (args, kwargs)
        self.cancel_timer()
        self._task = asyncio.create_task(self._run_after_delay())

    async def _run_after_delay(self) -> None:
        await asyncio.sleep(self._delay_s)

        # Past the quiet period the call is committed; later calls no longer cancel it
        task = asyncio.current_task()
        if self._task is task:
            self._task = None
        self._running.add(task)
        try:
            await self._run_pending()
        finally:
            self._running.discard(task)

    async def _run_pending(self) -> None:
        pending, self._pending = self._pending, None
        if pending is None:
            return
        args, kwargs = pending
        try:
            await self._func(*args, **kwargs)
        except Exception as e:
            logger.warning("debounced_call_failed", name=self._name, error=str(e))

    async def flush(self) -> None:
        """Wait for calls already running, then run the pending call now."""
        self.cancel_timer()
        current = asyncio.current_task()
        running = [task for task in self._running if task is not current]
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        await self._run_pending()

    def cancel_timer(self) -> None:
        """Stop the quiet-period timer; calls already running are left alone."""
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def cancel(self) -> None:
        """Drop the pending call."""
        self.cancel_timer()
        self._pending = None
