"""Base classes and canonical data models for the health sync engine.

Every source adapter must subclass SourceAdapter and return the canonical
SleepSession / WorkoutEntry models.  These types are the single source of
truth consumed by the merge policy, persistence gateway, and API layer.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum

logger = logging.getLogger("coachie.healthsync")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Canonical models
# ---------------------------------------------------------------------------


@dataclass
class DailyRecord:
    """Canonical per-user, per-date aggregate.

    ``steps`` and ``calories_burned`` are ``None`` when the sync engine has
    never obtained a value for that date.  Zero is a real, synced value.

    Attributes:
        user_id:          Owning user.
        date:             Calendar date in the user's time zone.
        steps:            Step count.
        calories_burned:  Active calories burned (kcal).
        updated_at:       UTC timestamp of the last sync write.
    """

    user_id: str
    date: date
    steps: int | None = None
    calories_burned: int | None = None
    updated_at: datetime | None = None

    def to_document(self) -> dict:
        return {
            "uid": self.user_id,
            "date": self.date.isoformat(),
            "steps": self.steps,
            "caloriesBurned": self.calories_burned,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_document(cls, user_id: str, day: date, doc: dict) -> "DailyRecord":
        updated = doc.get("updatedAt")
        return cls(
            user_id=user_id,
            date=day,
            steps=doc.get("steps"),
            calories_burned=doc.get("caloriesBurned"),
            updated_at=datetime.fromisoformat(updated) if updated else None,
        )


@dataclass(frozen=True)
class SleepSession:
    """One sleep period.

    Attributes:
        start_time: Timezone-aware instant sleep began.
        end_time:   Timezone-aware instant sleep ended.
        quality:    1-5 rating; auto-synced sessions carry a fixed default.
    """

    start_time: datetime
    end_time: datetime
    quality: int = 3

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)


@dataclass(frozen=True)
class WorkoutEntry:
    """One workout as reported by a source.

    Attributes:
        activity_type:    Provider activity name (e.g. "running").
        duration_minutes: Whole minutes between start and end.
        calories_burned:  Calories attributed to the session (kcal).
        start_time:       Timezone-aware start instant.
    """

    activity_type: str
    duration_minutes: int
    calories_burned: int
    start_time: datetime


# ---------------------------------------------------------------------------
# Per-run read results
# ---------------------------------------------------------------------------


@dataclass
class MetricRead:
    """Outcome of reading one metric from one source.

    ``ok`` is False when the read raised; ``value`` then holds the empty
    value for the metric type and ``error`` the exception.
    """

    value: object = None
    ok: bool = False
    error: Exception | None = None

    @property
    def has_data(self) -> bool:
        if not self.ok:
            return False
        if isinstance(self.value, (list, tuple)):
            return len(self.value) > 0
        return bool(self.value)


@dataclass
class SourceReadings:
    """Everything one source returned during the Reading stage.

    Attributes:
        source:               Source slug.
        entry_tag:            Prefix for entry ids of records from this source
                              (defaults to the slug).
        attempted:            False when the source was skipped by its access rules.
        skip_reason:          Why it was skipped (``SourceAccess`` value).
        steps / calories:     Today's totals.
        yesterday_steps / yesterday_calories: Late-sync catch-up totals.
        sleep:                Sessions for today's sleep target.
        yesterday_sleep:      Sessions discovered through yesterday's target.
        workouts:             Workouts in the widened workout window.
        zero_rechecks:        Number of zero values re-read after a delay.
        sleep_rechecks:       Number of empty sleep reads repeated after a delay.
    """

    source: str
    entry_tag: str = ""
    attempted: bool = False
    skip_reason: str | None = None
    steps: MetricRead = field(default_factory=MetricRead)
    calories: MetricRead = field(default_factory=MetricRead)
    yesterday_steps: MetricRead = field(default_factory=MetricRead)
    yesterday_calories: MetricRead = field(default_factory=MetricRead)
    sleep: MetricRead = field(default_factory=MetricRead)
    yesterday_sleep: MetricRead = field(default_factory=MetricRead)
    workouts: MetricRead = field(default_factory=MetricRead)
    zero_rechecks: int = 0
    sleep_rechecks: int = 0

    def __post_init__(self) -> None:
        if not self.entry_tag:
            self.entry_tag = self.source

    def metric_reads(self) -> list[MetricRead]:
        return [
            self.steps,
            self.calories,
            self.yesterday_steps,
            self.yesterday_calories,
            self.sleep,
            self.yesterday_sleep,
            self.workouts,
        ]

    @property
    def succeeded(self) -> bool:
        """True when the source was attempted and at least one read completed."""
        return self.attempted and any(m.ok for m in self.metric_reads())

    @property
    def errors(self) -> list[Exception]:
        return [m.error for m in self.metric_reads() if m.error is not None]


@dataclass
class SyncAttempt:
    """Ephemeral state for one pass through the orchestrator loop."""

    attempt: int
    source_results: list[SourceReadings] = field(default_factory=list)
    success: bool = False


# ---------------------------------------------------------------------------
# Abstract base adapter
# ---------------------------------------------------------------------------


class SourceAccess(str, Enum):
    """Whether a source may be read for the current user."""

    READY = "ready"
    NOT_ENABLED = "not_enabled"
    NOT_CONNECTED = "not_connected"
    PERMISSION_MISSING = "permission_missing"


class SourceAdapter(ABC):
    """Abstract base class for upstream health-data providers.

    Subclasses must implement:
        - access()
        - read_steps()
        - read_calories()
        - read_sleep()
        - read_workouts()

    Reads take timezone-aware ``(start, end)`` instants and raise
    ``PermissionDenied`` or ``SourceUnavailable`` on failure.  Reads have
    no side effects.
    """

    #: Unique slug used in logs and the registry (e.g. 'health_connect').
    SOURCE_ID: str = "unknown"

    #: Human-readable name for logging and advisories.
    DISPLAY_NAME: str = "Unknown Source"

    #: Prefix for deterministic entry ids of records synced from this source.
    ENTRY_TAG: str = "unknown"

    #: True when a zero may mean "not yet synced upstream" rather than "none".
    ZERO_IS_AMBIGUOUS: bool = False

    #: "wide" sources filter sleep themselves from a broad query window;
    #: "target" sources take the calendar day the sleep should count for.
    SLEEP_WINDOW: str = "wide"

    #: When False a PERMISSION_MISSING source is skipped; when True the run
    #: fails with PermissionDenied so the user is asked to grant it.
    MISSING_PERMISSION_IS_FATAL: bool = False

    @abstractmethod
    def access(self) -> SourceAccess:
        """Report whether this source may be read right now."""

    @abstractmethod
    async def read_steps(self, start: datetime, end: datetime) -> int:
        """Total steps between ``start`` and ``end``."""

    @abstractmethod
    async def read_calories(self, start: datetime, end: datetime) -> int:
        """Total active calories (kcal) between ``start`` and ``end``."""

    @abstractmethod
    async def read_sleep(self, start: datetime, end: datetime) -> list[SleepSession]:
        """Sleep sessions for the window (see ``SLEEP_WINDOW``)."""

    @abstractmethod
    async def read_workouts(self, start: datetime, end: datetime) -> list[WorkoutEntry]:
        """Workouts that started within ``start`` and ``end``."""

    # ------------------------------------------------------------------
    # Shared helpers: available to all adapters
    # ------------------------------------------------------------------

    @staticmethod
    def _safe_int(value: object) -> int:
        """Coerce a provider number to int, treating junk as zero."""
        if value is None:
            return 0
        try:
            return int(round(float(value)))
        except (TypeError, ValueError):
            return 0

    @staticmethod
    def _from_epoch_millis(value: object) -> datetime | None:
        try:
            return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            logger.warning("Could not parse epoch millis: %r", value)
            return None

    @staticmethod
    def _parse_iso_datetime(value: str | None) -> datetime | None:
        """Parse an ISO-8601 string to an aware UTC datetime.

        Naive strings are assumed to be UTC.  Returns None if unparseable.
        """
        if not value:
            return None
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (ValueError, AttributeError):
            logger.warning("Could not parse datetime string: %r", value)
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    @staticmethod
    def _to_epoch_millis(value: datetime) -> int:
        return int(value.timestamp() * 1000)
