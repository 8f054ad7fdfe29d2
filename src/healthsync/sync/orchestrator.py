"""Sync orchestrator — one retrying, single-flight sync run per user.

A run walks the states

    IDLE → ACQUIRING → PLANNING_WINDOWS → READING_SOURCES → MERGING
         → PERSISTING → VERIFYING → {SUCCEEDED, RETRYING, FAILED}

and never raises to its caller: every run ends in a SyncOutcome.

Failure handling:
    PermissionDenied        → FAILED immediately, no retry, permission advisory
    any other exception     → RETRYING with ``backoff_base × 2**attempt`` delay,
                              FAILED with the sync-failed advisory once
                              ``retry.max_attempts`` are used up
    no source may be read   → NO_DATA soft outcome; nothing is written

Per-source read errors are captured in SourceReadings and never stop the
other source's read.  A run only becomes a retry when *no* source read
completed, or when persistence / verification raised.

Single-flight: ``sync()`` checks and records the in-flight task for a user
with no await in between, so a concurrent call for the same user observes
the running task and returns SKIPPED straight away.  Callers wait on a
shielded task, so a cancelled caller never cancels the run itself.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from src.healthsync.adapters import SourceConnection, build_sources
from src.healthsync.base import (
    DailyRecord,
    MetricRead,
    SourceAccess,
    SourceAdapter,
    SourceReadings,
    SyncAttempt,
    utc_now,
)
from src.healthsync.config_loader import SyncConfig, get_sync_config
from src.healthsync.errors import HealthSyncError, PermissionDenied
from src.healthsync.gateway import PersistenceGateway
from src.healthsync.merge_policy import MergePolicy, MergeResult
from src.healthsync.notifications import Advisory, LoggingNotifier, Notifier, emit
from src.healthsync.windows import SyncWindows, plan_windows, resolve_timezone

logger = logging.getLogger("coachie.healthsync.sync.orchestrator")

Sleeper = Callable[[float], Awaitable[None]]
SourceFactory = Callable[[SourceConnection], list[SourceAdapter]]


class SyncState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    PLANNING_WINDOWS = "planning_windows"
    READING_SOURCES = "reading_sources"
    MERGING = "merging"
    PERSISTING = "persisting"
    VERIFYING = "verifying"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SyncStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    NO_DATA = "no_data"


@dataclass
class SyncOutcome:
    """What a caller learns about a sync run.

    Attributes:
        user_id:          User the run was for.
        success:          True only for SUCCEEDED.
        status:           Terminal status.
        attempts:         Number of attempts made (0 when skipped).
        advisory:         User-facing advisory emitted, if any.
        missing_metrics:  Metrics that ended empty on the first attempt.
        sources_used:     metric → source slug for the successful attempt.
        zero_rechecks:    Zero values re-read after a delay.
        sleep_rechecks:   Empty sleep reads repeated after a delay.
        error:            Last error message for failed runs.
        states:           State trace, in order.
    """

    user_id: str
    success: bool = False
    status: SyncStatus = SyncStatus.FAILED
    attempts: int = 0
    advisory: Advisory | None = None
    missing_metrics: list[str] = field(default_factory=list)
    sources_used: dict[str, str] = field(default_factory=dict)
    zero_rechecks: int = 0
    sleep_rechecks: int = 0
    error: str | None = None
    states: list[SyncState] = field(default_factory=list)


class _NoReadableSource(Exception):
    """No source may be read for this user; carries the advisory to emit."""

    def __init__(self, advisory: Advisory) -> None:
        super().__init__(advisory.value)
        self.advisory = advisory


class SyncOrchestrator:
    """Run health syncs for users.

    Usage::

        orchestrator = SyncOrchestrator(PersistenceGateway(store))
        outcome = await orchestrator.sync(user_id)
        if not outcome.success:
            ...
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        source_factory: SourceFactory | None = None,
        config: SyncConfig | None = None,
        notifier: Notifier | None = None,
        sleep: Sleeper = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Args:
            gateway:        Persistence gateway for the document store.
            source_factory: Builds the user's adapters from their connection
                            state; defaults to ``build_sources``.
            config:         Engine config; defaults to the global singleton.
            notifier:       Advisory channel; defaults to LoggingNotifier.
            sleep:          Awaitable delay, injectable for tests.
            clock:          Returns the current aware UTC instant.
        """
        self._gateway = gateway
        self._config = config or get_sync_config()
        self._source_factory = source_factory or (
            lambda connection: build_sources(connection, config=self._config)
        )
        self._notifier = notifier if notifier is not None else LoggingNotifier()
        self._policy = MergePolicy(self._config)
        self._sleep = sleep
        self._clock = clock
        self._in_flight: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def is_running(self, user_id: str) -> bool:
        task = self._in_flight.get(user_id)
        return task is not None and not task.done()

    async def sync(self, user_id: str, now: datetime | None = None) -> SyncOutcome:
        """Run one sync for ``user_id`` unless one is already in flight.

        Args:
            user_id: User to sync.
            now:     Planning instant; defaults to the clock.

        Returns:
            SyncOutcome; status SKIPPED when a run for the user is in flight.
        """
        if self.is_running(user_id):
            logger.info("Sync already running for user %s, skipping", user_id)
            return SyncOutcome(
                user_id=user_id,
                status=SyncStatus.SKIPPED,
                states=[SyncState.ACQUIRING],
            )

        task = asyncio.create_task(self._run(user_id, now))
        self._in_flight[user_id] = task
        task.add_done_callback(lambda done: self._release(user_id, done))
        return await asyncio.shield(task)

    def _release(self, user_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(user_id) is task:
            del self._in_flight[user_id]

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def _run(self, user_id: str, now: datetime | None) -> SyncOutcome:
        outcome = SyncOutcome(user_id=user_id, states=[SyncState.IDLE, SyncState.ACQUIRING])
        retry = self._config.retry
        last_error: Exception | None = None

        logger.info("Health sync started for user %s", user_id)
        for attempt in range(retry.max_attempts):
            outcome.attempts = attempt + 1
            try:
                state = await self._attempt(user_id, now, attempt, outcome)
            except PermissionDenied as exc:
                logger.warning("Permission denied for user %s: %s", user_id, exc)
                return await self._finish(
                    outcome, SyncStatus.FAILED, Advisory.PERMISSION_REQUIRED, str(exc)
                )
            except _NoReadableSource as exc:
                logger.info("No readable health source for user %s", user_id)
                return await self._finish(outcome, SyncStatus.NO_DATA, exc.advisory)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Sync attempt %d/%d failed for user %s: %s",
                    attempt + 1,
                    retry.max_attempts,
                    user_id,
                    exc,
                    exc_info=not isinstance(exc, HealthSyncError),
                )
                if attempt < retry.max_attempts - 1:
                    outcome.states.append(SyncState.RETRYING)
                    delay = retry.backoff_seconds(attempt)
                    logger.info("Retrying sync for user %s in %.1fs", user_id, delay)
                    await self._sleep(delay)
                continue
            if state.success:
                return await self._finish(outcome, SyncStatus.SUCCEEDED)

        logger.error(
            "Health sync failed for user %s after %d attempts: %s",
            user_id,
            retry.max_attempts,
            last_error,
        )
        return await self._finish(
            outcome, SyncStatus.FAILED, Advisory.SYNC_FAILED, str(last_error)
        )

    async def _finish(
        self,
        outcome: SyncOutcome,
        status: SyncStatus,
        advisory: Advisory | None = None,
        error: str | None = None,
    ) -> SyncOutcome:
        outcome.status = status
        outcome.success = status is SyncStatus.SUCCEEDED
        outcome.error = error
        outcome.states.append(SyncState.SUCCEEDED if outcome.success else SyncState.FAILED)
        if advisory is not None:
            outcome.advisory = advisory
            await emit(self._notifier, outcome.user_id, advisory)
        logger.info(
            "Health sync for user %s finished: %s after %d attempt(s)",
            outcome.user_id,
            status.value,
            outcome.attempts,
        )
        return outcome

    async def _attempt(
        self, user_id: str, now: datetime | None, attempt: int, outcome: SyncOutcome
    ) -> SyncAttempt:
        """One pass through planning, reading, merging and persisting.

        Raises on any failure; the caller decides whether to retry.
        """
        state = SyncAttempt(attempt=attempt)

        outcome.states.append(SyncState.PLANNING_WINDOWS)
        settings = await self._gateway.get_source_settings(user_id)
        connection = SourceConnection.model_validate(settings)
        tz = resolve_timezone(connection.timezone)
        win_cfg = self._config.windows
        windows = plan_windows(
            now or self._clock(),
            tz,
            cutoff=win_cfg.finalization_cutoff,
            sleep_pad_hours=win_cfg.sleep_query_pad_hours,
            workout_lookahead_hours=win_cfg.workout_lookahead_hours,
        )
        sources = self._source_factory(connection)

        outcome.states.append(SyncState.READING_SOURCES)
        state.source_results = await self._read_sources(sources, windows, attempt)
        outcome.zero_rechecks += sum(r.zero_rechecks for r in state.source_results)
        outcome.sleep_rechecks += sum(r.sleep_rechecks for r in state.source_results)

        for readings in state.source_results:
            for error in readings.errors:
                if isinstance(error, PermissionDenied):
                    raise error

        outcome.states.append(SyncState.MERGING)
        result = self._policy.merge(state.source_results, windows)
        if not result.any_success:
            errors = [e for r in state.source_results for e in r.errors]
            raise errors[0] if errors else HealthSyncError("no source returned data")
        if attempt == 0 and result.missing_metrics:
            logger.warning(
                "User %s: no data for %s on %s",
                user_id,
                ", ".join(result.missing_metrics),
                windows.today,
            )
            outcome.missing_metrics = list(result.missing_metrics)

        outcome.states.append(SyncState.PERSISTING)
        written = await self._persist(user_id, result, windows)

        outcome.states.append(SyncState.VERIFYING)
        await self._gateway.verify_daily_record(user_id, windows.today, written)

        state.success = True
        outcome.sources_used = dict(result.sources_used)
        return state

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    async def _read_sources(
        self, sources: list[SourceAdapter], windows: SyncWindows, attempt: int
    ) -> list[SourceReadings]:
        """Read every eligible source concurrently.

        Raises:
            _NoReadableSource: No source may be read for this user.
        """
        access = {s.SOURCE_ID: s.access() for s in sources}
        readable = [
            s
            for s in sources
            if access[s.SOURCE_ID] is SourceAccess.READY
            or (access[s.SOURCE_ID] is SourceAccess.PERMISSION_MISSING and s.MISSING_PERMISSION_IS_FATAL)
        ]
        for source in sources:
            if source not in readable:
                logger.debug(
                    "Skipping %s: %s", source.DISPLAY_NAME, access[source.SOURCE_ID].value
                )

        if not readable:
            statuses = set(access.values())
            if SourceAccess.PERMISSION_MISSING in statuses and SourceAccess.NOT_CONNECTED in statuses:
                raise _NoReadableSource(Advisory.SOURCE_NOT_CONNECTED)
            raise _NoReadableSource(Advisory.NO_DATA_SOURCES)

        results = await asyncio.gather(
            *(self._read_source(s, access[s.SOURCE_ID], windows, attempt) for s in readable)
        )
        skipped = [
            SourceReadings(source=s.SOURCE_ID, entry_tag=s.ENTRY_TAG, skip_reason=access[s.SOURCE_ID].value)
            for s in sources
            if s not in readable
        ]
        return list(results) + skipped

    async def _read_source(
        self,
        source: SourceAdapter,
        access: SourceAccess,
        windows: SyncWindows,
        attempt: int,
    ) -> SourceReadings:
        readings = SourceReadings(source=source.SOURCE_ID, entry_tag=source.ENTRY_TAG, attempted=True)
        if access is SourceAccess.PERMISSION_MISSING:
            readings.steps = MetricRead(
                error=PermissionDenied(source.SOURCE_ID, "activity recognition permission not granted")
            )
            return readings

        legacy = self._config.legacy_source
        if source.ZERO_IS_AMBIGUOUS and attempt == 0 and legacy.settle_delay_seconds:
            await self._sleep(legacy.settle_delay_seconds)

        today = windows.today_range
        yesterday = windows.yesterday_range
        try:
            readings.steps = await self._read_metric(
                source, "steps", lambda: source.read_steps(today.start, windows.steps_query_end)
            )
            readings.calories = await self._read_metric(
                source, "calories", lambda: source.read_calories(today.start, windows.steps_query_end)
            )
            if source.ZERO_IS_AMBIGUOUS and attempt == 0:
                await self._recheck_zeros(source, readings, windows)

            readings.yesterday_steps = await self._read_metric(
                source, "yesterday steps", lambda: source.read_steps(yesterday.start, yesterday.end)
            )
            readings.yesterday_calories = await self._read_metric(
                source, "yesterday calories", lambda: source.read_calories(yesterday.start, yesterday.end)
            )

            if source.SLEEP_WINDOW == "target":
                target = windows.sleep_target_window
                readings.sleep = await self._read_metric(
                    source, "sleep", lambda: source.read_sleep(target.start, target.end)
                )
                if source.ZERO_IS_AMBIGUOUS and attempt == 0:
                    await self._recheck_empty_sleep(source, readings, windows)
                if not readings.sleep.has_data:
                    previous = windows.yesterday_sleep_target_window
                    readings.yesterday_sleep = await self._read_metric(
                        source,
                        "yesterday sleep",
                        lambda: source.read_sleep(previous.start, previous.end),
                    )
            else:
                wide = windows.sleep_query_window
                readings.sleep = await self._read_metric(
                    source, "sleep", lambda: source.read_sleep(wide.start, wide.end)
                )

            workout_window = windows.workout_query_window
            readings.workouts = await self._read_metric(
                source,
                "workouts",
                lambda: source.read_workouts(workout_window.start, workout_window.end),
            )
        except PermissionDenied as exc:
            logger.warning("%s denied access: %s", source.DISPLAY_NAME, exc)
            readings.steps = MetricRead(value=readings.steps.value, ok=False, error=exc)

        logger.debug(
            "%s read: steps=%s calories=%s sleep=%s workouts=%s errors=%d",
            source.DISPLAY_NAME,
            readings.steps.value,
            readings.calories.value,
            len(readings.sleep.value or []) + len(readings.yesterday_sleep.value or []),
            len(readings.workouts.value or []),
            len(readings.errors),
        )
        return readings

    async def _read_metric(
        self, source: SourceAdapter, metric: str, read: Callable[[], Awaitable]
    ) -> MetricRead:
        """Run one read; failures other than PermissionDenied are captured."""
        try:
            return MetricRead(value=await read(), ok=True)
        except PermissionDenied:
            raise
        except Exception as exc:
            logger.warning("%s %s read failed: %s", source.DISPLAY_NAME, metric, exc)
            return MetricRead(error=exc)

    async def _recheck_zeros(
        self, source: SourceAdapter, readings: SourceReadings, windows: SyncWindows
    ) -> None:
        """Re-read zero totals once after the configured delay.

        The provider may report zero before the device has uploaded.
        """
        start = windows.today_range.start
        end = windows.steps_query_end
        rechecks = (
            ("steps", source.read_steps),
            ("calories", source.read_calories),
        )
        for metric, reader in rechecks:
            current: MetricRead = getattr(readings, metric)
            delay = self._config.zero_recheck_delay(metric)
            if not current.ok or current.value != 0 or not delay:
                continue
            logger.info(
                "%s returned 0 %s, re-checking in %.1fs", source.DISPLAY_NAME, metric, delay
            )
            await self._sleep(delay)
            setattr(
                readings,
                metric,
                await self._read_metric(source, metric, lambda r=reader: r(start, end)),
            )
            readings.zero_rechecks += 1

    async def _recheck_empty_sleep(
        self, source: SourceAdapter, readings: SourceReadings, windows: SyncWindows
    ) -> None:
        """Re-read an empty sleep result for today's target once after a delay.

        Sleep that ended this morning may not have reached the provider yet.
        """
        delay = self._config.zero_recheck_delay("sleep")
        if not readings.sleep.ok or readings.sleep.has_data or not delay:
            return
        logger.info("%s returned no sleep, re-checking in %.1fs", source.DISPLAY_NAME, delay)
        await self._sleep(delay)
        target = windows.sleep_target_window
        readings.sleep = await self._read_metric(
            source, "sleep", lambda: source.read_sleep(target.start, target.end)
        )
        readings.sleep_rechecks += 1

    # ------------------------------------------------------------------
    # Persisting
    # ------------------------------------------------------------------

    async def _persist(
        self, user_id: str, result: MergeResult, windows: SyncWindows
    ) -> dict[str, int | None]:
        """Write the merged result; returns today's fields to verify."""
        written: dict[str, int | None] = {}
        fields = {
            "steps": result.steps,
            "calories_burned": result.calories,
        }
        obtained = {name: sel.value for name, sel in fields.items() if sel.obtained}
        if obtained:
            record = DailyRecord(
                user_id=user_id,
                date=windows.today,
                steps=obtained.get("steps"),
                calories_burned=obtained.get("calories_burned"),
                updated_at=windows.now,
            )
            await self._gateway.upsert_daily_record(record, fields=obtained.keys(), verify=False)
            written = obtained

        await self._gateway.apply_late_sync(
            user_id,
            windows.yesterday,
            result.yesterday_steps.value,
            result.yesterday_calories.value,
            updated_at=windows.now,
        )

        if result.sleep is not None and result.sleep_source_tag:
            await self._gateway.upsert_sleep_session(
                user_id, windows.today, result.sleep, result.sleep_source_tag
            )

        for day, routed_workouts in result.workouts_by_date().items():
            for routed in routed_workouts:
                await self._gateway.upsert_workout(
                    user_id, day, routed.entry_id, routed.workout, routed.source
                )
        return written
