import asyncio
import logging
from typing import Awaitable, Callable

Tick = Callable[[], Awaitable[None]]


class SnapshotScheduler:
    """
    A single background task that calls `on_tick` once per interval.

    The first tick fires after one full interval. Starting an already running
    scheduler replaces its timer, so at most one timer is ever active. A tick
    that raises is logged and the schedule carries on.
    """

    def __init__(self, seconds_per_minute: float = 60.0):
        self._seconds_per_minute = seconds_per_minute
        self._task: asyncio.Task | None = None
        self._inflight: asyncio.Future | None = None
        self.interval_minutes: int | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval_minutes: int, on_tick: Tick):
        if interval_minutes < 1:
            raise ValueError("interval_minutes must be at least 1")
        self._cancel()
        self.interval_minutes = interval_minutes
        self._task = asyncio.create_task(
            self._run(interval_minutes * self._seconds_per_minute, on_tick),
            name="snapshot-scheduler",
        )
        logging.info(f"Snapshot scheduler started with {interval_minutes} minute interval")

    def _cancel(self) -> asyncio.Task | None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        return task

    async def stop(self):
        """Stops the timer. A tick already in progress is allowed to finish."""
        task = self._cancel()
        self.interval_minutes = None
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
        if self._inflight is not None and not self._inflight.done():
            await self._inflight
        logging.info("Snapshot scheduler stopped")

    async def _run(self, interval_seconds: float, on_tick: Tick):
        while True:
            await asyncio.sleep(interval_seconds)
            # Shielded so cancelling the timer never interrupts a snapshot mid-write.
            self._inflight = asyncio.ensure_future(self._tick(on_tick))
            await asyncio.shield(self._inflight)

    async def _tick(self, on_tick: Tick):
        try:
            await on_tick()
        except Exception as e:
            logging.error(f"Scheduled snapshot tick failed: {e}", exc_info=True)
