"""Temporal window planner — which time ranges a sync run queries.

Pure functions of ``(now, user time zone)``; no I/O.

Window rules:
    today_range            local midnight → 23:59:59 of the current date
    steps_query_end        ``now`` until the finalization cutoff, then end of day
    sleep_query_window     12 h before yesterday's midnight → 12 h after today's end
    sleep_target_window    today's calendar boundaries (the day sleep counts for)
    workout_query_window   yesterday's midnight → ``now`` (or end of day past
                           the cutoff) plus one hour, to catch late uploads
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo

logger = logging.getLogger("coachie.healthsync.windows")

DEFAULT_CUTOFF = time(23, 59)
_END_OF_DAY = time(23, 59, 59)


@dataclass(frozen=True)
class TimeWindow:
    """Inclusive ``[start, end]`` range of aware instants."""

    start: datetime
    end: datetime


@dataclass(frozen=True)
class SyncWindows:
    """All query ranges for one sync run.

    Attributes:
        now:                     The planning instant (aware).
        tz:                      The user's time zone.
        today / yesterday:       Local calendar dates.
        today_range:             Today's calendar boundaries.
        yesterday_range:         Yesterday's calendar boundaries.
        steps_query_end:         End instant for today's step query.
        sleep_query_window:      Wide window for sources that filter sleep themselves.
        sleep_target_window:     Calendar day a sleep session is filed under.
        yesterday_sleep_target_window: Yesterday's day, for late-sync sleep checks.
        workout_query_window:    Widened workout query range.
        past_cutoff:             True once local time reached the finalization cutoff.
    """

    now: datetime
    tz: tzinfo
    today: date
    yesterday: date
    today_range: TimeWindow
    yesterday_range: TimeWindow
    steps_query_end: datetime
    sleep_query_window: TimeWindow
    sleep_target_window: TimeWindow
    yesterday_sleep_target_window: TimeWindow
    workout_query_window: TimeWindow
    past_cutoff: bool

    def local_date(self, instant: datetime) -> date:
        """Calendar date of ``instant`` in the user's time zone."""
        return instant.astimezone(self.tz).date()

    def is_syncable_date(self, day: date) -> bool:
        """True for the two calendar days a run may write to."""
        return day in (self.today, self.yesterday)


def resolve_timezone(name: str | None) -> tzinfo:
    """Return a ZoneInfo for ``name``, falling back to UTC when unknown."""
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (KeyError, ValueError):
        logger.warning("Unknown time zone %r; using UTC", name)
        return timezone.utc


def day_bounds(day: date, tz: tzinfo) -> TimeWindow:
    """Local midnight to 23:59:59 of ``day``."""
    return TimeWindow(
        start=datetime.combine(day, time.min, tzinfo=tz),
        end=datetime.combine(day, _END_OF_DAY, tzinfo=tz),
    )


def plan_windows(
    now: datetime,
    tz: tzinfo,
    cutoff: time = DEFAULT_CUTOFF,
    sleep_pad_hours: int = 12,
    workout_lookahead_hours: int = 1,
) -> SyncWindows:
    """Compute every query window for a sync run.

    Args:
        now:                     Current instant. Naive values are taken as UTC.
        tz:                      User's time zone.
        cutoff:                  Local time after which the day is treated as final.
        sleep_pad_hours:         Padding on both sides of the wide sleep window.
        workout_lookahead_hours: How far past ``now`` the workout window extends.

    Returns:
        SyncWindows for this run.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    local_now = now.astimezone(tz)
    today = local_now.date()
    yesterday = today - timedelta(days=1)

    today_range = day_bounds(today, tz)
    yesterday_range = day_bounds(yesterday, tz)

    past_cutoff = local_now.time() >= cutoff
    # The structured provider finalizes daily steps only at the cutoff; an
    # end-of-day query before then returns zero.
    steps_query_end = today_range.end if past_cutoff else now

    pad = timedelta(hours=sleep_pad_hours)
    sleep_query_window = TimeWindow(
        start=yesterday_range.start - pad,
        end=today_range.end + pad,
    )

    workout_anchor = today_range.end if past_cutoff else now
    workout_query_window = TimeWindow(
        start=yesterday_range.start,
        end=workout_anchor + timedelta(hours=workout_lookahead_hours),
    )

    windows = SyncWindows(
        now=now,
        tz=tz,
        today=today,
        yesterday=yesterday,
        today_range=today_range,
        yesterday_range=yesterday_range,
        steps_query_end=steps_query_end,
        sleep_query_window=sleep_query_window,
        sleep_target_window=today_range,
        yesterday_sleep_target_window=yesterday_range,
        workout_query_window=workout_query_window,
        past_cutoff=past_cutoff,
    )
    logger.debug(
        "Planned windows for %s (tz=%s): steps_end=%s workouts=%s→%s sleep=%s→%s",
        today,
        tz,
        steps_query_end.isoformat(),
        workout_query_window.start.isoformat(),
        workout_query_window.end.isoformat(),
        sleep_query_window.start.isoformat(),
        sleep_query_window.end.isoformat(),
    )
    return windows
