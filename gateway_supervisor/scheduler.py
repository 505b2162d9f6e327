"""
Skills sync scheduler.

Fires the synchronizer on a fixed period (or a cron expression) and on
demand. Only one sync runs at a time: a periodic tick that finds a sync in
flight is dropped, while an on-demand trigger joins the running sync and
returns its outcome. A sync that changed the skills asks the process
supervisor for a restart.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from croniter import croniter

from .models import SyncOutcome, SyncStatus

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs skills syncs periodically and on demand, one at a time."""

    def __init__(self, synchronizer, supervisor, period: float = 900, schedule: Optional[str] = None):
        self._synchronizer = synchronizer
        self._supervisor = supervisor
        self.period = period
        self.schedule = schedule or None
        self._task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self.last_outcome: Optional[SyncOutcome] = None
        self.dropped_ticks = 0

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_progress(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def arm(self, period: Optional[float] = None, schedule: Optional[str] = None):
        """Start firing syncs in the background."""
        if self.armed:
            return
        if period is not None:
            self.period = period
        if schedule is not None:
            self.schedule = schedule or None

        self._task = asyncio.create_task(self._loop())
        if self.schedule:
            logger.info(f"Setting up skills sync on schedule '{self.schedule}'")
        else:
            logger.info(f"Setting up skills sync every {self.period / 60:.0f} minutes")

    async def disarm(self):
        """Stop the periodic loop. A sync already running is left to finish."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Skills sync scheduler stopped")

    def next_delay(self, now: Optional[datetime] = None) -> float:
        """Seconds until the next periodic sync."""
        if not self.schedule:
            return self.period
        now = now or datetime.now()
        try:
            next_run = croniter(self.schedule, now).get_next(datetime)
        except (KeyError, ValueError) as e:
            logger.error(f"Invalid sync schedule '{self.schedule}': {e}, using period")
            return self.period
        return max((next_run - now).total_seconds(), 0.0)

    async def _loop(self):
        while True:
            await asyncio.sleep(self.next_delay())
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Scheduled skills sync failed: {e}")

    async def tick(self) -> Optional[SyncOutcome]:
        """Periodic trigger. Returns None when dropped because a sync is running."""
        if self.in_progress:
            self.dropped_ticks += 1
            logger.info("Skills sync already in progress, dropping periodic tick")
            return None
        logger.info("Periodic skills sync starting...")
        self._inflight = asyncio.create_task(self._run("periodic"))
        return await asyncio.shield(self._inflight)

    async def trigger_now(self, restart_on_update: bool = True) -> SyncOutcome:
        """Run a sync now, or wait for the one already running, and return its outcome."""
        if self.in_progress:
            logger.info("Skills sync already in progress, waiting for it")
            return await asyncio.shield(self._inflight)
        self._inflight = asyncio.create_task(self._run("manual", restart_on_update))
        return await asyncio.shield(self._inflight)

    async def _run(self, trigger: str, restart_on_update: bool = True) -> SyncOutcome:
        outcome = await self._synchronizer.sync()
        self.last_outcome = outcome

        detail = outcome.reason or outcome.revision or ""
        logger.info(f"Skills sync ({trigger}) finished: {outcome.status.value} {detail}".rstrip())

        if outcome.status is SyncStatus.UPDATED and restart_on_update:
            logger.info("Restarting gateway after skills sync...")
            self._supervisor.request_restart("skills-sync")
        return outcome
