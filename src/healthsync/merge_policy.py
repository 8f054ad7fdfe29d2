"""Merge policy — reconcile per-source readings into one daily result.

For every metric the sources are consulted in priority order
(sync_config.yaml ``sources.priority``):

1. The first attempted source that returned non-zero / non-empty data
   for the metric is used exclusively for that metric.
2. Otherwise, if any source read the metric successfully, the metric is
   zero / empty for this run.
3. If no source read it at all, the metric is absent (``None``) and the
   stored value must be left alone.

Sleep is always filed under *today*: a session found through yesterday's
target window is last night's sleep.  Workouts are routed to the local
calendar date of their start time and limited to today and yesterday.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date

from src.healthsync.base import SleepSession, SourceReadings, WorkoutEntry
from src.healthsync.config_loader import SyncConfig, get_sync_config
from src.healthsync.sync.dedup import InMemoryDedupCache, workout_entry_id
from src.healthsync.windows import SyncWindows

logger = logging.getLogger("coachie.healthsync.merge")

# Metrics reported as "missing" when a run ends with nothing for them.
# Steps are excluded: zero steps is a legitimate sedentary day.
_REPORTED_METRICS = ("sleep", "workouts", "calories")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class MetricSelection:
    """Which source supplied a scalar metric and what it said.

    Attributes:
        metric:  Field name on SourceReadings (e.g. 'steps').
        value:   Selected value; None when no source read the metric.
        source:  Source slug the value came from.
    """

    metric: str
    value: int | None = None
    source: str | None = None

    @property
    def obtained(self) -> bool:
        return self.value is not None


@dataclass(frozen=True)
class RoutedWorkout:
    """A workout assigned to the calendar date it is stored under."""

    entry_id: str
    date: date
    workout: WorkoutEntry
    source: str


@dataclass
class MergeResult:
    """Reconciled output of one sync attempt.

    Attributes:
        today / yesterday:     The dates this run writes to.
        steps / calories:      Today's selections.
        yesterday_steps / yesterday_calories: Late-sync catch-up selections.
        sleep:                 The session filed under today, if any.
        sleep_source_tag:      Entry tag of the source the sleep came from.
        workouts:              Workouts routed to today / yesterday.
        missing_metrics:       Reported metrics that ended empty.
        any_success:           True if at least one source read completed.
        sources_used:          metric → source slug, for diagnostics.
    """

    today: date
    yesterday: date
    steps: MetricSelection
    calories: MetricSelection
    yesterday_steps: MetricSelection
    yesterday_calories: MetricSelection
    sleep: SleepSession | None = None
    sleep_source_tag: str | None = None
    workouts: list[RoutedWorkout] = field(default_factory=list)
    missing_metrics: list[str] = field(default_factory=list)
    any_success: bool = False
    sources_used: dict[str, str] = field(default_factory=dict)

    def workouts_by_date(self) -> dict[date, list[RoutedWorkout]]:
        grouped: dict[date, list[RoutedWorkout]] = {}
        for routed in self.workouts:
            grouped.setdefault(routed.date, []).append(routed)
        return grouped


# ---------------------------------------------------------------------------
# Per-metric selection
# ---------------------------------------------------------------------------


def select_scalar(metric: str, readings: list[SourceReadings]) -> MetricSelection:
    """Select a scalar metric (steps / calories) across sources.

    Args:
        metric:   Attribute name on SourceReadings.
        readings: Readings in priority order.

    Returns:
        MetricSelection; ``value`` is None when no source read the metric.
    """
    for r in readings:
        read = getattr(r, metric)
        if r.attempted and read.has_data:
            return MetricSelection(metric, int(read.value), r.source)
    for r in readings:
        read = getattr(r, metric)
        if r.attempted and read.ok:
            return MetricSelection(metric, 0, r.source)
    return MetricSelection(metric)


def select_sleep(
    readings: list[SourceReadings], windows: SyncWindows, quality: int
) -> tuple[SleepSession | None, SourceReadings | None]:
    """Pick the one sleep session to file under today.

    Order: each source's own sleep read, then (for target-day sources) the
    sessions discovered through yesterday's target window.  Whatever is
    found is filed under today.  Among several sessions, those ending today
    are preferred and the longest wins.
    """
    for r in readings:
        if not r.attempted:
            continue
        for read in (r.sleep, r.yesterday_sleep):
            if not read.has_data:
                continue
            sessions: list[SleepSession] = list(read.value)
            ending_today = [
                s for s in sessions if windows.local_date(s.end_time) == windows.today
            ]
            main = max(ending_today or sessions, key=lambda s: s.duration_minutes)
            return replace(main, quality=quality), r
    return None, None


def route_workouts(
    readings: list[SourceReadings], windows: SyncWindows
) -> list[RoutedWorkout]:
    """Route the chosen source's workouts to their local start dates.

    Only today's and yesterday's workouts are kept.  Duplicates (same
    deterministic id) returned by overlapping windows collapse to one.
    """
    for r in readings:
        if not (r.attempted and r.workouts.has_data):
            continue
        cache = InMemoryDedupCache()
        routed: list[RoutedWorkout] = []
        for workout in r.workouts.value:
            day = windows.local_date(workout.start_time)
            if not windows.is_syncable_date(day):
                logger.debug(
                    "Dropping %s workout from %s (outside today/yesterday)",
                    workout.activity_type,
                    day,
                )
                continue
            entry_id = workout_entry_id(
                r.entry_tag, day, workout.start_time, workout.activity_type
            )
            if cache.is_seen(entry_id):
                continue
            cache.mark_seen(entry_id)
            routed.append(RoutedWorkout(entry_id, day, workout, r.source))
        return routed
    return []


def late_sync_update(stored: int | None, discovered: int | None) -> int | None:
    """Value to write for a past day, or None to leave it unchanged.

    Late-arriving data only ever raises a past day's total.
    """
    if not discovered:
        return None
    if stored is None or discovered > stored:
        return discovered
    return None


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class MergePolicy:
    """Reconcile all sources' readings for one attempt.

    Usage::

        policy = MergePolicy()
        result = policy.merge(readings, windows)
    """

    def __init__(self, config: SyncConfig | None = None) -> None:
        self._config = config or get_sync_config()

    def order(self, readings: list[SourceReadings]) -> list[SourceReadings]:
        """Sort readings by configured source priority."""
        return sorted(readings, key=lambda r: self._config.source_rank(r.source))

    def merge(self, readings: list[SourceReadings], windows: SyncWindows) -> MergeResult:
        ordered = self.order(readings)

        sleep, sleep_source = select_sleep(
            ordered, windows, self._config.sleep.default_quality
        )
        result = MergeResult(
            today=windows.today,
            yesterday=windows.yesterday,
            steps=select_scalar("steps", ordered),
            calories=select_scalar("calories", ordered),
            yesterday_steps=select_scalar("yesterday_steps", ordered),
            yesterday_calories=select_scalar("yesterday_calories", ordered),
            sleep=sleep,
            sleep_source_tag=sleep_source.entry_tag if sleep_source else None,
            workouts=route_workouts(ordered, windows),
            any_success=any(r.succeeded for r in ordered),
        )

        for selection in (result.steps, result.calories):
            if selection.source:
                result.sources_used[selection.metric] = selection.source
        if sleep_source:
            result.sources_used["sleep"] = sleep_source.source
        if result.workouts:
            result.sources_used["workouts"] = result.workouts[0].source

        empty = {
            "sleep": result.sleep is None,
            "workouts": not result.workouts,
            "calories": not result.calories.value,
        }
        result.missing_metrics = [m for m in _REPORTED_METRICS if empty[m]]

        logger.debug(
            "Merged %s: steps=%s calories=%s sleep=%s workouts=%d sources=%s",
            windows.today,
            result.steps.value,
            result.calories.value,
            "yes" if result.sleep else "no",
            len(result.workouts),
            result.sources_used,
        )
        return result
