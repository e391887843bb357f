"""Schedule loop shared by the reconciliation job and the event retry worker.

Fire times come from APScheduler triggers (cron or fixed interval), but the
loop itself is ours so clock and sleep can be injected (tests drive it without
waiting). Overlap across processes is prevented by each job's own lease or
row claims, not here.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.tl_common.datetime_utils import utc_now

logger = logging.getLogger(__name__)


class JobTrigger(Protocol):
    def next_fire_time(self, now: datetime) -> datetime | None: ...


class ScheduledJob(Protocol):
    async def run(self) -> Any: ...


class CronJobTrigger:
    """Five-field crontab expression evaluated in UTC."""

    def __init__(self, expression: str) -> None:
        self.expression = expression
        self._trigger = CronTrigger.from_crontab(expression, timezone=timezone.utc)

    def next_fire_time(self, now: datetime) -> datetime | None:
        # strictly after `now`, so a run finishing inside its own minute is not repeated
        return self._trigger.get_next_fire_time(None, now + timedelta(microseconds=1))


class IntervalJobTrigger:
    """Fire every `seconds`, counted from the end of the previous run."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self._interval = timedelta(seconds=seconds)

    def next_fire_time(self, now: datetime) -> datetime | None:
        trigger = IntervalTrigger(seconds=self.seconds, start_date=now, timezone=timezone.utc)
        return trigger.get_next_fire_time(None, now + self._interval)


class JobScheduler:
    def __init__(
        self,
        job: ScheduledJob,
        trigger: JobTrigger,
        *,
        name: str = "job",
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._job = job
        self._trigger = trigger
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_now(self) -> Any:
        return await self._job.run()

    async def serve(self, max_runs: int | None = None) -> None:
        """Sleep until each fire time and run the job. Stops after max_runs if given."""
        runs = 0
        while max_runs is None or runs < max_runs:
            now = self._clock()
            fire_at = self._trigger.next_fire_time(now)
            if fire_at is None:
                logger.info("%s trigger exhausted; scheduler stopping", self.name)
                return
            await self._sleep(max(0.0, (fire_at - now).total_seconds()))
            try:
                await self._job.run()
            except Exception:  # keep the schedule alive after a failed run
                logger.exception("Scheduled %s run failed", self.name)
            runs += 1

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.serve(), name=f"{self.name}-scheduler")
        logger.info("%s scheduler started", self.name)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("%s scheduler stopped", self.name)
