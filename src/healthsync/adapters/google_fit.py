"""Google Fit REST adapter (legacy source).

API base: https://www.googleapis.com/fitness/v1/users/me

Endpoints used:
    POST /dataset:aggregate  — step and calorie totals, and sleep segments
    GET  /sessions           — sleep sessions (activityType 72) and workouts

Google Fit lags behind the phone: a zero total may only mean the device
has not uploaded yet, so ``ZERO_IS_AMBIGUOUS`` is set and the orchestrator
re-reads zeros after a delay.  Sleep reads take the *target day* and
search a wider window internally (see ``sleep_stitcher``).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import httpx

from src.healthsync.adapters.http import DEFAULT_TIMEOUT, HttpSourceAdapter
from src.healthsync.base import SleepSession, SourceAccess, WorkoutEntry
from src.healthsync.config_loader import SyncConfig, get_sync_config
from src.healthsync.sleep_stitcher import SleepStitcher
from src.healthsync.sync.dedup import GOOGLE_FIT_TAG
from src.healthsync.windows import TimeWindow

logger = logging.getLogger("coachie.healthsync.adapters.google_fit")

DEFAULT_BASE_URL = "https://www.googleapis.com/fitness/v1/users/me"

STEPS_DATA_TYPE = "com.google.step_count.delta"
CALORIES_DATA_TYPE = "com.google.calories.expended"
SLEEP_SEGMENT_DATA_TYPE = "com.google.sleep.segment"

SLEEP_ACTIVITY_TYPE = 72

# Activity codes that are never workouts: in vehicle, still, unknown,
# tilting, sleep and the sleep stages.
_NON_WORKOUT_TYPES = frozenset({0, 3, 4, 5, 72, 109, 110, 111, 112})

# Google Fit activity code → display name
_ACTIVITY_NAMES: dict[int, str] = {
    1: "Cycling",
    7: "Walking",
    8: "Running",
    9: "Aerobics",
    24: "Dancing",
    25: "Elliptical",
    35: "Hiking",
    80: "Strength Training",
    82: "Swimming",
    100: "Yoga",
    113: "Crossfit",
    114: "HIIT",
}


def activity_name(activity_type: int, session_name: str | None = None) -> str:
    """Display name for a Google Fit activity code.

    Sessions named after walking, running or cycling are normalized to
    those names regardless of the code the recording app used.
    """
    name = (session_name or "").lower()
    if "walk" in name:
        return "Walking"
    if "run" in name:
        return "Running"
    if "bike" in name or "cycl" in name:
        return "Cycling"
    return _ACTIVITY_NAMES.get(activity_type) or session_name or f"activity_{activity_type}"


def _rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class GoogleFitSource(HttpSourceAdapter):
    """Legacy source backed by the Google Fit REST API."""

    SOURCE_ID = "google_fit"
    DISPLAY_NAME = "Google Fit"
    ENTRY_TAG = GOOGLE_FIT_TAG
    ZERO_IS_AMBIGUOUS = True
    SLEEP_WINDOW = "target"
    MISSING_PERMISSION_IS_FATAL = True

    def __init__(
        self,
        connected: bool,
        activity_recognition_granted: bool,
        access_token: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        config: SyncConfig | None = None,
    ) -> None:
        super().__init__(base_url, access_token, http_client, timeout)
        self._connected = connected
        self._activity_recognition_granted = activity_recognition_granted
        self._config = config or get_sync_config()
        self._stitcher = SleepStitcher(self._config)

    def access(self) -> SourceAccess:
        if not self._connected:
            return SourceAccess.NOT_CONNECTED
        if not self._activity_recognition_granted:
            return SourceAccess.PERMISSION_MISSING
        return SourceAccess.READY

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def _aggregate_points(self, data_type: str, start: datetime, end: datetime) -> list[dict]:
        """All aggregate points for ``data_type`` over ``[start, end]`` in one bucket."""
        start_ms = self._to_epoch_millis(start)
        end_ms = self._to_epoch_millis(end)
        body = {
            "aggregateBy": [{"dataTypeName": data_type}],
            "bucketByTime": {"durationMillis": max(end_ms - start_ms, 1)},
            "startTimeMillis": start_ms,
            "endTimeMillis": end_ms,
        }
        data = await self._request("POST", "/dataset:aggregate", json=body)
        points: list[dict] = []
        for bucket in data.get("bucket", []):
            for dataset in bucket.get("dataset", []):
                points.extend(dataset.get("point", []))
        return points

    async def _aggregate(self, data_type: str, start: datetime, end: datetime) -> list[dict]:
        points = await self._aggregate_points(data_type, start, end)
        return [value for point in points for value in point.get("value", [])]

    async def read_steps(self, start: datetime, end: datetime) -> int:
        values = await self._aggregate(STEPS_DATA_TYPE, start, end)
        return sum(self._safe_int(v.get("intVal")) for v in values)

    async def read_calories(self, start: datetime, end: datetime) -> int:
        values = await self._aggregate(CALORIES_DATA_TYPE, start, end)
        return self._safe_int(sum(float(v.get("fpVal") or 0) for v in values))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def _sessions(
        self, start: datetime, end: datetime, activity_type: int | None = None
    ) -> list[dict]:
        params: dict = {"startTime": _rfc3339(start), "endTime": _rfc3339(end)}
        if activity_type is not None:
            params["activityType"] = activity_type
        sessions: list[dict] = []
        while True:
            data = await self._request("GET", "/sessions", params=params)
            sessions.extend(data.get("session", []))
            token = data.get("nextPageToken")
            if not token or not data.get("hasMoreData", True):
                break
            params = {**params, "pageToken": token}
        return sessions

    def _session_span(self, session: dict) -> tuple[datetime, datetime] | None:
        start = self._from_epoch_millis(session.get("startTimeMillis"))
        end = self._from_epoch_millis(session.get("endTimeMillis"))
        if start is None or end is None or end <= start:
            return None
        return start, end

    async def read_sleep(self, start: datetime, end: datetime) -> list[SleepSession]:
        """Main sleep for the target day ``[start, end]``.

        Queries sleep sessions and sleep segments over a wider window around
        the target and stitches them together; returns at most one session.
        """
        target = TimeWindow(start, end)
        search = self._stitcher.search_window(target)
        quality = self._config.sleep.default_quality

        raw: list[SleepSession] = []
        for session in await self._sessions(search.start, search.end, SLEEP_ACTIVITY_TYPE):
            span = self._session_span(session)
            if span is not None:
                raw.append(SleepSession(span[0], span[1], quality))
        for point in await self._aggregate_points(SLEEP_SEGMENT_DATA_TYPE, search.start, search.end):
            span = self._segment_span(point)
            if span is not None:
                raw.append(SleepSession(span[0], span[1], quality))

        return self._stitcher.stitch(raw, target, start.tzinfo or timezone.utc)

    def _segment_span(self, point: dict) -> tuple[datetime, datetime] | None:
        try:
            start_ms = int(point["startTimeNanos"]) // 1_000_000
            end_ms = int(point["endTimeNanos"]) // 1_000_000
        except (KeyError, TypeError, ValueError):
            logger.debug("Google Fit: skipping sleep segment without times: %r", point)
            return None
        return self._session_span({"startTimeMillis": start_ms, "endTimeMillis": end_ms})

    async def read_workouts(self, start: datetime, end: datetime) -> list[WorkoutEntry]:
        workouts: list[WorkoutEntry] = []
        seen: set[tuple[int, int]] = set()
        for session in await self._sessions(start, end):
            span = self._session_span(session)
            if span is None:
                continue
            key = (self._to_epoch_millis(span[0]), self._to_epoch_millis(span[1]))
            if key in seen:
                continue
            seen.add(key)

            activity = self._safe_int(session.get("activityType"))
            name = session.get("name") or ""
            if activity in _NON_WORKOUT_TYPES or "sleep" in name.lower():
                logger.debug("Google Fit: skipping non-workout session %s (%s)", activity, name)
                continue

            workout_start, workout_end = span
            calories = await self.read_calories(workout_start, workout_end)
            workouts.append(
                WorkoutEntry(
                    activity_type=activity_name(activity, name),
                    duration_minutes=int((workout_end - workout_start).total_seconds() // 60),
                    calories_burned=calories,
                    start_time=workout_start,
                )
            )
        return workouts
