"""Session Timer - displayed session duration.

Starts on the first successful voice connection and ticks once per
second. Pausing freezes the displayed value; resuming shifts the start
epoch forward by the paused span so no paused time is ever counted.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Callable

from talkai.config.constants import RT
from talkai.utils.callbacks import Callback, invoke_callback


class SessionTimer:
    """Wall-clock session timer with pause support.

    Usage:
        timer = SessionTimer(on_tick=lambda s: print(s))
        timer.start()
        timer.pause()
        timer.resume()
        await timer.stop()
        timer.duration_seconds
    """

    def __init__(
        self,
        on_tick: Callback | None = None,
        clock: Callable[[], float] = time.monotonic,
        tick_ms: int = RT.TIMER_TICK_MS,
    ) -> None:
        self._on_tick = on_tick
        self._clock = clock
        self._tick_s = tick_ms / 1000.0

        self._start_epoch: float | None = None
        self._paused_at: float | None = None
        self._stopped_at: float | None = None
        self._duration = 0
        self._task: asyncio.Task | None = None

    @property
    def started(self) -> bool:
        return self._start_epoch is not None

    @property
    def is_paused(self) -> bool:
        return self._paused_at is not None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def duration_seconds(self) -> int:
        """Displayed duration, whole seconds; never counts paused time."""
        if self._start_epoch is None:
            return 0
        if self._paused_at is not None or self._stopped_at is not None:
            return self._duration
        return self._elapsed(self._clock())

    def _elapsed(self, now: float) -> int:
        return max(0, int(now - self._start_epoch))

    def start(self) -> bool:
        """Start timing. No-op after the first start.

        Returns:
            True if this call started the timer
        """
        if self._start_epoch is not None:
            return False
        self._start_epoch = self._clock()
        self._duration = 0
        self._task = asyncio.create_task(self._tick_loop())
        return True

    def pause(self) -> None:
        """Freeze the displayed duration."""
        if self._start_epoch is None or self._paused_at is not None or self._stopped_at is not None:
            return
        now = self._clock()
        self._duration = self._elapsed(now)
        self._paused_at = now

    def resume(self) -> None:
        """Resume timing; the paused span is excluded."""
        if self._paused_at is None:
            return
        self._start_epoch += self._clock() - self._paused_at
        self._paused_at = None

    async def stop(self) -> int:
        """Stop ticking and freeze the final duration.

        Returns:
            Final duration in seconds
        """
        if self._stopped_at is None and self._start_epoch is not None:
            if self._paused_at is None:
                self._duration = self._elapsed(self._clock())
            self._stopped_at = self._clock()

        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        return self._duration

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._tick_s)
            if self._paused_at is not None:
                continue
            self._duration = self._elapsed(self._clock())
            await invoke_callback(self._on_tick, self._duration, name="on_tick")
