"""Sleep session stitcher — turn raw provider sleep fragments into the
night's main sleep for a target calendar day.

The legacy provider reports sleep as overlapping segments and sessions
(several devices write both), often split at midnight.  The stitcher:

1. Drops near-duplicates (start and end both within a small tolerance).
2. Merges sessions separated by a short gap into one continuous sleep.
3. Keeps candidates that end on the target day, or end on the previous
   day and are either recent or the most recent session found.
4. Returns the longest candidate as the main sleep.

Parameters come from the ``sleep`` section of sync_config.yaml.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo

from src.healthsync.base import SleepSession
from src.healthsync.config_loader import SleepConfig, SyncConfig, get_sync_config
from src.healthsync.windows import TimeWindow

logger = logging.getLogger("coachie.healthsync.sleep_stitcher")


@dataclass
class _Span:
    start: datetime
    end: datetime

    @property
    def minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


def _is_duplicate(a: _Span, b: _Span, tolerance: timedelta) -> bool:
    return abs(a.start - b.start) < tolerance and abs(a.end - b.end) < tolerance


def dedupe_sessions(
    sessions: list[SleepSession], tolerance_minutes: int
) -> list[SleepSession]:
    """Keep the first of any sessions whose start and end are both within tolerance.

    Args:
        sessions:          Sessions in provider order.
        tolerance_minutes: Maximum start/end difference for a duplicate.

    Returns:
        Sessions with duplicates removed, original order preserved.
    """
    tolerance = timedelta(minutes=tolerance_minutes)
    unique: list[SleepSession] = []
    for session in sessions:
        span = _Span(session.start_time, session.end_time)
        if any(
            _is_duplicate(span, _Span(kept.start_time, kept.end_time), tolerance)
            for kept in unique
        ):
            continue
        unique.append(session)
    return unique


def merge_fragments(
    sessions: list[SleepSession], gap_minutes: int, quality: int
) -> list[SleepSession]:
    """Join sessions separated by less than ``gap_minutes`` into one.

    Overlapping sessions are joined too; the merged session keeps the
    later of the two end times.
    """
    gap = timedelta(minutes=gap_minutes)
    merged: list[_Span] = []
    for session in sorted(sessions, key=lambda s: s.start_time):
        last = merged[-1] if merged else None
        if last is not None and session.start_time - last.end < gap:
            last.end = max(last.end, session.end_time)
        else:
            merged.append(_Span(session.start_time, session.end_time))
    return [SleepSession(span.start, span.end, quality) for span in merged]


def select_main_sleep(
    sessions: list[SleepSession],
    target: TimeWindow,
    tz: tzinfo,
    recent_hours: int,
) -> SleepSession | None:
    """Pick the sleep that counts for the ``target`` calendar day.

    A session is a candidate when it ends on the target date, or ends on
    the day before and either ended within ``recent_hours`` of the target
    day's start or is the most recent session overall (the provider
    sometimes stamps last night's sleep with the wrong end date).

    Returns:
        The longest candidate, or None.
    """
    if not sessions:
        return None

    target_date: date = target.start.astimezone(tz).date()
    previous_date = target_date - timedelta(days=1)
    latest_end = max(s.end_time for s in sessions)

    candidates: list[SleepSession] = []
    for session in sessions:
        end_date = session.end_time.astimezone(tz).date()
        if end_date == target_date:
            candidates.append(session)
            continue
        if end_date != previous_date:
            continue
        hours_before_target = (target.start - session.end_time).total_seconds() / 3600
        if hours_before_target <= recent_hours or session.end_time == latest_end:
            candidates.append(session)

    if not candidates:
        logger.debug(
            "No sleep candidates for %s among %d stitched sessions",
            target_date,
            len(sessions),
        )
        return None
    return max(candidates, key=lambda s: s.duration_minutes)


def search_window(target: TimeWindow, config: SleepConfig) -> TimeWindow:
    """Provider query range needed to find sleep for ``target``."""
    return TimeWindow(
        start=target.start - timedelta(hours=config.lookback_hours),
        end=target.end + timedelta(hours=config.lookahead_hours),
    )


class SleepStitcher:
    """Stitch raw provider sleep into the main sleep for a day.

    Usage::

        stitcher = SleepStitcher()
        window = stitcher.search_window(target)
        raw = await fetch(window.start, window.end)
        sessions = stitcher.stitch(raw, target, tz)   # [] or [main_sleep]
    """

    def __init__(self, config: SyncConfig | None = None) -> None:
        self._config = (config or get_sync_config()).sleep

    def search_window(self, target: TimeWindow) -> TimeWindow:
        return search_window(target, self._config)

    def stitch(
        self, raw: list[SleepSession], target: TimeWindow, tz: tzinfo
    ) -> list[SleepSession]:
        cfg = self._config
        unique = dedupe_sessions(raw, cfg.duplicate_tolerance_minutes)
        merged = merge_fragments(unique, cfg.merge_gap_minutes, cfg.default_quality)
        main = select_main_sleep(merged, target, tz, cfg.recent_hours)
        logger.debug(
            "SleepStitcher: %d raw → %d unique → %d merged → %s",
            len(raw),
            len(unique),
            len(merged),
            f"{main.duration_minutes} min" if main else "none",
        )
        return [main] if main else []
