"""Health Connect adapter (structured source).

Health Connect lives on the user's phone; the companion app exposes its
records to the backend through a records bridge that mirrors the Health
Connect record model:

    GET {base}/v1/records/{RecordType}?startTime=…&endTime=…&pageToken=…
    → {"records": [...], "nextPageToken": "..."}

Record types used:
    Steps                 — {"count", "startTime", "endTime"}
    ActiveCaloriesBurned  — {"energy": {"inKilocalories"}, "startTime", "endTime"}
    SleepSession          — {"startTime", "endTime", "title"?}
    ExerciseSession       — {"exerciseType", "title"?, "startTime", "endTime"}

Reading requires both the user's opt-in and the per-record-type read
grants; without them the source is never invoked.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

import httpx

from src.healthsync.adapters.http import DEFAULT_TIMEOUT, HttpSourceAdapter
from src.healthsync.base import SleepSession, SourceAccess, WorkoutEntry
from src.healthsync.config_loader import SyncConfig, get_sync_config
from src.healthsync.sync.dedup import HEALTH_CONNECT_TAG

logger = logging.getLogger("coachie.healthsync.adapters.health_connect")

DEFAULT_BASE_URL = "http://localhost:8765/health-connect"

# ExerciseSessionRecord.EXERCISE_TYPE_* → display name
_EXERCISE_TYPES: dict[int, str] = {
    8: "Cycling",
    25: "Elliptical",
    36: "HIIT",
    37: "Hiking",
    48: "Pilates",
    53: "Rowing",
    56: "Running",
    70: "Strength Training",
    73: "Swimming",
    74: "Swimming",
    79: "Walking",
    83: "Yoga",
}


def exercise_name(exercise_type: object, title: str | None = None) -> str:
    """Display name for a Health Connect exercise type.

    Unknown numeric types fall back to the session title, then to the
    number itself.
    """
    try:
        code = int(exercise_type)
    except (TypeError, ValueError):
        return str(exercise_type or title or "Workout")
    return _EXERCISE_TYPES.get(code) or title or str(code)


class HealthConnectSource(HttpSourceAdapter):
    """Structured source backed by Health Connect records."""

    SOURCE_ID = "health_connect"
    DISPLAY_NAME = "Health Connect"
    ENTRY_TAG = HEALTH_CONNECT_TAG
    ZERO_IS_AMBIGUOUS = False
    SLEEP_WINDOW = "wide"

    def __init__(
        self,
        enabled: bool,
        permissions_granted: bool,
        access_token: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        config: SyncConfig | None = None,
    ) -> None:
        super().__init__(base_url, access_token, http_client, timeout)
        self._enabled = enabled
        self._permissions_granted = permissions_granted
        self._config = config or get_sync_config()

    def access(self) -> SourceAccess:
        if not self._enabled:
            return SourceAccess.NOT_ENABLED
        if not self._permissions_granted:
            return SourceAccess.PERMISSION_MISSING
        return SourceAccess.READY

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _read_records(
        self, record_type: str, start: datetime, end: datetime
    ) -> list[dict]:
        """Read every page of ``record_type`` records in ``[start, end]``."""
        records: list[dict] = []
        params = {"startTime": start.isoformat(), "endTime": end.isoformat()}
        while True:
            data = await self._request("GET", f"/v1/records/{record_type}", params=params)
            records.extend(data.get("records", []))
            token = data.get("nextPageToken")
            if not token:
                break
            params = {**params, "pageToken": token}
        logger.debug(
            "Health Connect: %d %s records %s → %s",
            len(records),
            record_type,
            start.isoformat(),
            end.isoformat(),
        )
        return records

    async def read_steps(self, start: datetime, end: datetime) -> int:
        records = await self._read_records("Steps", start, end)
        return sum(self._safe_int(r.get("count")) for r in records)

    async def read_calories(self, start: datetime, end: datetime) -> int:
        records = await self._read_records("ActiveCaloriesBurned", start, end)
        return sum(self._kilocalories(r) for r in records)

    async def read_sleep(self, start: datetime, end: datetime) -> list[SleepSession]:
        quality = self._config.sleep.default_quality
        sessions: list[SleepSession] = []
        for record in await self._read_records("SleepSession", start, end):
            span = self._span(record)
            if span is None:
                continue
            sessions.append(SleepSession(span[0], span[1], quality))
        return sessions

    async def read_workouts(self, start: datetime, end: datetime) -> list[WorkoutEntry]:
        sessions = await self._read_records("ExerciseSession", start, end)
        if not sessions:
            return []
        calorie_records = await self._read_records("ActiveCaloriesBurned", start, end)
        tolerance = timedelta(minutes=self._config.calorie_overlap_tolerance_minutes)

        workouts: list[WorkoutEntry] = []
        for session in sessions:
            span = self._span(session)
            if span is None:
                continue
            workout_start, workout_end = span
            calories = 0
            for record in calorie_records:
                cal_span = self._span(record)
                if cal_span is None:
                    continue
                # Overlap with the session, widened by the tolerance on both ends
                if cal_span[0] <= workout_end + tolerance and cal_span[1] >= workout_start - tolerance:
                    calories += self._kilocalories(record)
            workouts.append(
                WorkoutEntry(
                    activity_type=exercise_name(session.get("exerciseType"), session.get("title")),
                    duration_minutes=int((workout_end - workout_start).total_seconds() // 60),
                    calories_burned=calories,
                    start_time=workout_start,
                )
            )
        return workouts

    # ------------------------------------------------------------------
    # Record helpers
    # ------------------------------------------------------------------

    def _span(self, record: dict) -> tuple[datetime, datetime] | None:
        start = self._parse_iso_datetime(record.get("startTime"))
        end = self._parse_iso_datetime(record.get("endTime"))
        if start is None or end is None or end < start:
            logger.warning("Health Connect: skipping record with bad times: %r", record)
            return None
        return start, end

    def _kilocalories(self, record: dict) -> int:
        energy = record.get("energy") or {}
        return self._safe_int(energy.get("inKilocalories"))
