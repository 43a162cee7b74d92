"""In-process periodic runner for the queue worker and the hourly poller.

Two asyncio tasks:
    worker  every ``queue.interval_seconds`` (default 60), one batch per tick
    poller  at the top of every hour

Each loop awaits its tick before sleeping again, so a slow tick delays the
next one instead of overlapping it.  An exception inside a tick is logged and
the loop carries on.

Usage::

    scheduler = SyncScheduler(worker.process_batch, poller.run, interval_seconds=60)
    scheduler.start()
    ...
    await scheduler.stop()
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from stepsync.steps.base import utc_now

logger = logging.getLogger("stepsync.steps.sync.scheduler")

Tick = Callable[[], Awaitable[Any]]


def seconds_until_next_hour(now: datetime) -> float:
    next_hour = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    return (next_hour - now).total_seconds()


class SyncScheduler:
    """Run the queue worker and the poller on their schedules until stopped."""

    def __init__(
        self,
        process_queue: Tick,
        poll: Tick | None = None,
        interval_seconds: int = 60,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the scheduler.

        Args:
            process_queue:    Async callable run once per worker tick.
            poll:             Async callable run at the top of each hour; None disables polling.
            interval_seconds: Seconds between worker ticks.
            clock:            Source of "now" for hour alignment.
        """
        self._process_queue = process_queue
        self._poll = poll
        self._interval = interval_seconds
        self._clock = clock
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [asyncio.create_task(self._worker_loop(), name="stepsync-queue-worker")]
        if self._poll is not None:
            self._tasks.append(asyncio.create_task(self._poller_loop(), name="stepsync-poller"))
        logger.info(
            "Sync scheduler started (worker every %ds, poller %s)",
            self._interval,
            "hourly" if self._poll is not None else "disabled",
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Sync scheduler stopped")

    async def run_tick(self, name: str, tick: Tick) -> bool:
        """Run one tick, logging instead of raising. Returns True on success."""
        try:
            await tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled %s tick failed", name)
            return False
        return True

    async def _worker_loop(self) -> None:
        while True:
            await self.run_tick("queue worker", self._process_queue)
            await asyncio.sleep(self._interval)

    async def _poller_loop(self) -> None:
        assert self._poll is not None
        while True:
            await asyncio.sleep(seconds_until_next_hour(self._clock()))
            await self.run_tick("poller", self._poll)
