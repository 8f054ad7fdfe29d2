"""Background sync trigger.

Runs the same ``SyncOrchestrator.sync(user_id)`` entry point as on-demand
syncs, at fixed local times of day (00:00, 09:00 and 15:00 by default):

    00:00  — finalizes yesterday through the late-sync catch-up
    09:00  — picks up last night's sleep once the device has uploaded
    15:00  — midday refresh of steps, calories and workouts

Users are synced concurrently up to ``max_concurrent`` at a time.  A user
whose on-demand sync is still running is reported as skipped by the
orchestrator's single-flight guard.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone, tzinfo

from src.healthsync.base import utc_now
from src.healthsync.sync.orchestrator import SyncOrchestrator, SyncOutcome, SyncStatus

logger = logging.getLogger("coachie.healthsync.sync.scheduler")

DEFAULT_RUN_TIMES: tuple[time, ...] = (time(0, 0), time(9, 0), time(15, 0))

Sleeper = Callable[[float], Awaitable[None]]
UserSource = Callable[[], Awaitable[list[str]]]


@dataclass
class ScheduledRun:
    """Summary of one scheduled fan-out.

    Attributes:
        started_at: UTC instant the run began.
        outcomes:   One SyncOutcome per user that returned one.
        errors:     user_id → error message for runs that raised.
    """

    started_at: datetime
    outcomes: list[SyncOutcome] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    def count(self, status: SyncStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)


def parse_run_times(values: Iterable[str]) -> tuple[time, ...]:
    """Parse ``"HH:MM"`` strings into sorted, de-duplicated times."""
    parsed: set[time] = set()
    for value in values:
        hour, minute = value.strip().split(":", 1)
        parsed.add(time(int(hour), int(minute)))
    if not parsed:
        raise ValueError("At least one scheduled run time is required")
    return tuple(sorted(parsed))


class SyncScheduler:
    """Trigger syncs for all users at fixed local times.

    Usage::

        scheduler = SyncScheduler(orchestrator, tz=ZoneInfo("Europe/Berlin"))
        await scheduler.run_forever(list_user_ids)
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        run_times: Iterable[time] = DEFAULT_RUN_TIMES,
        tz: tzinfo = timezone.utc,
        max_concurrent: int = 5,
        sleep: Sleeper = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._orchestrator = orchestrator
        self._run_times = tuple(sorted(run_times))
        self._tz = tz
        self._max_concurrent = max_concurrent
        self._sleep = sleep
        self._clock = clock

    def next_run_after(self, now: datetime) -> datetime:
        """First scheduled instant strictly after ``now`` (aware, in UTC)."""
        local = now.astimezone(self._tz)
        for day_offset in (0, 1):
            day = local.date() + timedelta(days=day_offset)
            for run_time in self._run_times:
                candidate = datetime.combine(day, run_time, tzinfo=self._tz)
                if candidate > local:
                    return candidate.astimezone(timezone.utc)
        raise RuntimeError("No scheduled run time configured")

    async def run_due(self, user_ids: Iterable[str]) -> ScheduledRun:
        """Sync every user once, ``max_concurrent`` at a time."""
        user_ids = list(user_ids)
        run = ScheduledRun(started_at=self._clock())
        if not user_ids:
            logger.debug("SyncScheduler: no users to sync")
            return run

        logger.info("SyncScheduler: syncing %d users", len(user_ids))
        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def _run_one(user_id: str) -> SyncOutcome:
            async with semaphore:
                return await self._orchestrator.sync(user_id)

        results = await asyncio.gather(
            *(_run_one(user_id) for user_id in user_ids), return_exceptions=True
        )
        for user_id, result in zip(user_ids, results):
            if isinstance(result, Exception):
                logger.error("Scheduled sync for user %s raised: %s", user_id, result)
                run.errors[user_id] = str(result)
            else:
                run.outcomes.append(result)

        logger.info(
            "SyncScheduler: %d succeeded, %d failed, %d skipped, %d no data, %d errors",
            run.count(SyncStatus.SUCCEEDED),
            run.count(SyncStatus.FAILED),
            run.count(SyncStatus.SKIPPED),
            run.count(SyncStatus.NO_DATA),
            len(run.errors),
        )
        return run

    async def run_forever(
        self, list_users: UserSource, stop: asyncio.Event | None = None
    ) -> None:
        """Sleep until each scheduled time and sync every user.

        Args:
            list_users: Async callable returning the user ids to sync.
            stop:       Optional event; the loop exits once it is set.
        """
        stop = stop or asyncio.Event()
        while not stop.is_set():
            now = self._clock()
            next_run = self.next_run_after(now)
            wait = max((next_run - now).total_seconds(), 0.0)
            logger.info("SyncScheduler: next run at %s (in %.0fs)", next_run.isoformat(), wait)
            await self._sleep(wait)
            if stop.is_set():
                break
            try:
                await self.run_due(await list_users())
            except Exception:
                logger.exception("SyncScheduler: scheduled run failed")
