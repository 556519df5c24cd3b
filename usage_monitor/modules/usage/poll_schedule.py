from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)

# Ticks closer than this to the previous boundary are pushed to the next one.
DRIFT_TOLERANCE_SECONDS = 1.0


def next_aligned_delay(
    now_epoch: float,
    interval_seconds: float,
    offset_seconds: float,
    *,
    tolerance_seconds: float = DRIFT_TOLERANCE_SECONDS,
) -> float:
    """Seconds until the next ``offset_seconds`` mark past an interval boundary.

    With a 30s interval and 1s offset ticks land on :01 and :31 of every minute.
    """
    phase = (now_epoch - offset_seconds) % interval_seconds
    delay = interval_seconds - phase
    if delay < min(tolerance_seconds, interval_seconds / 2):
        delay += interval_seconds
    return delay


@dataclass(slots=True)
class PollSchedule:
    interval_seconds: float
    on_tick: Callable[[], None]
    align_to_clock: bool = True
    offset_seconds: float = 1.0
    time_source: Callable[[], float] = time.time
    _task: asyncio.Task[None] | None = None
    _stop: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        task = self.cancel()
        if task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def cancel(self) -> asyncio.Task[None] | None:
        """Stop ticking without waiting for the loop task to unwind."""
        task = self._task
        if task is None:
            return None
        self._stop.set()
        task.cancel()
        self._task = None
        return task

    def _next_delay(self) -> float:
        if not self.align_to_clock:
            return self.interval_seconds
        return next_aligned_delay(self.time_source(), self.interval_seconds, self.offset_seconds)

    async def _run_loop(self) -> None:
        delay = self._next_delay()
        logger.debug("Poll schedule started first_tick_in=%.1fs interval=%ss", delay, self.interval_seconds)
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
                return
            except asyncio.TimeoutError:
                pass
            try:
                self.on_tick()
            except Exception:
                logger.exception("Poll tick failed")
            delay = self._next_delay()
