"""
NexusPay Scheduler
===================
Periodic driver for the retry engine, owned by the server lifespan.

  start()               -> begin firing `job` every `interval_seconds`
  stop()                -> cancel the timer task (safe if never started)
  run_immediate_retry() -> run `job` once now (admin / internal trigger)

A run-in-progress lock is shared by timer firings and manual runs: if a
cycle is still going when the next one is due, the new one is skipped.
No error raised by `job` ever escapes or stops the timer.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List

logger = logging.getLogger("nexuspay.scheduler")

DEFAULT_INTERVAL_SECONDS = 15 * 60


class SchedulerHandle:

    def __init__(self, job: Callable[[], Awaitable[None]],
                 interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
                 name: str = "mpesa-retry"):
        self.job              = job
        self.interval_seconds = interval_seconds
        self.name             = name
        self._tasks: List[asyncio.Task] = []
        self._run_lock        = asyncio.Lock()
        self.runs_completed   = 0
        self.runs_skipped     = 0

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self):
        """Schedule the periodic job. Must be called from a running event loop."""
        if self.running:
            logger.warning(f"Scheduler '{self.name}' already running; start() ignored")
            return
        logger.info(f"Starting scheduler '{self.name}' (every {self.interval_seconds:.0f}s)")
        self._tasks.append(asyncio.create_task(self._loop(), name=f"scheduler:{self.name}"))

    async def stop(self):
        if not self._tasks:
            return
        logger.info(f"Stopping scheduler '{self.name}'")
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info(f"Scheduler '{self.name}' stopped")

    async def run_immediate_retry(self) -> bool:
        """Run the job once now. Returns False if a run was already in progress."""
        logger.info("Running immediate retry of failed transactions")
        ran = await self._run_guarded()
        if ran:
            logger.info("Immediate retry completed")
        return ran

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self._run_guarded()

    async def _run_guarded(self) -> bool:
        if self._run_lock.locked():
            self.runs_skipped += 1
            logger.warning(f"Scheduler '{self.name}': previous run still in progress, skipping")
            return False
        async with self._run_lock:
            try:
                await self.job()
            except Exception:
                logger.exception(f"Error in scheduler '{self.name}'")
            finally:
                self.runs_completed += 1
        return True
