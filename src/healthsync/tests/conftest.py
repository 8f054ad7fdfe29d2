"""Shared fixtures, fake sources and test doubles for sync engine tests."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from src.healthsync.base import SleepSession, SourceAccess, SourceAdapter, WorkoutEntry
from src.healthsync.config_loader import SyncConfig, load_sync_config
from src.healthsync.errors import TransientStoreError
from src.healthsync.gateway import PersistenceGateway
from src.healthsync.notifications import Advisory
from src.healthsync.store import InMemoryDocumentStore, settings_path

# Canonical test user, zone and instants (no DST change near these dates)
TEST_USER_ID = "user_123"
TEST_TZ_NAME = "America/Chicago"
TEST_TZ = ZoneInfo(TEST_TZ_NAME)
TODAY = date(2026, 6, 10)
YESTERDAY = TODAY - timedelta(days=1)
NOW = datetime(2026, 6, 10, 14, 0, tzinfo=TEST_TZ)


def local(day: date, hour: int, minute: int = 0) -> datetime:
    """Aware instant at ``hour:minute`` on ``day`` in the test zone."""
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=TEST_TZ)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class CollectingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, Advisory]] = []

    async def notify(self, user_id: str, advisory: Advisory) -> None:
        self.sent.append((user_id, advisory))

    @property
    def advisories(self) -> list[Advisory]:
        return [advisory for _, advisory in self.sent]


class FlakyStore(InMemoryDocumentStore):
    """In-memory store that can fail writes or tamper with read-backs.

    Attributes:
        failing_writes: Number of upcoming merge/set calls that raise
                        TransientStoreError.
        tamper_reads:   Number of upcoming daily-record reads that come back
                        with ``steps`` altered.
    """

    def __init__(self) -> None:
        super().__init__()
        self.failing_writes = 0
        self.tamper_reads = 0
        self.write_calls = 0

    def _maybe_fail(self) -> None:
        self.write_calls += 1
        if self.failing_writes > 0:
            self.failing_writes -= 1
            raise TransientStoreError("simulated contention")

    async def merge(self, path: str, data: dict) -> None:
        self._maybe_fail()
        await super().merge(path, data)

    async def set(self, path: str, data: dict) -> None:
        self._maybe_fail()
        await super().set(path, data)

    async def get(self, path: str) -> dict | None:
        doc = await super().get(path)
        if doc is not None and "/daily/" in path and "/entries/" not in path and self.tamper_reads > 0:
            self.tamper_reads -= 1
            doc["steps"] = (doc.get("steps") or 0) + 1
        return doc


class FakeSource(SourceAdapter):
    """Configurable in-process source.

    Scalar values may be a single int or a list consumed one read at a
    time (the last element repeats).  ``errors`` maps a method name to an
    exception raised on every call, or a list of exceptions / None consumed
    one call at a time.  When ``gate`` is set, reads wait for it.
    """

    def __init__(
        self,
        source_id: str,
        access: SourceAccess = SourceAccess.READY,
        steps: int | list[int] = 0,
        calories: int | list[int] = 0,
        yesterday_steps: int | list[int] = 0,
        yesterday_calories: int | list[int] = 0,
        sleep: list[SleepSession] | None = None,
        yesterday_sleep: list[SleepSession] | None = None,
        workouts: list[WorkoutEntry] | None = None,
        zero_is_ambiguous: bool = False,
        sleep_window: str = "wide",
        missing_permission_is_fatal: bool = False,
        errors: dict | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.SOURCE_ID = source_id
        self.DISPLAY_NAME = source_id.replace("_", " ").title()
        self.ENTRY_TAG = source_id
        self.ZERO_IS_AMBIGUOUS = zero_is_ambiguous
        self.SLEEP_WINDOW = sleep_window
        self.MISSING_PERMISSION_IS_FATAL = missing_permission_is_fatal
        self._access = access
        self._values = {
            "steps": steps,
            "calories": calories,
            "yesterday_steps": yesterday_steps,
            "yesterday_calories": yesterday_calories,
        }
        self._sleep = list(sleep or [])
        self._yesterday_sleep = list(yesterday_sleep or [])
        self._workouts = list(workouts or [])
        self._errors = dict(errors or {})
        self.gate = gate
        self.reading = asyncio.Event()
        self.calls: list[tuple[str, datetime, datetime]] = []

    def access(self) -> SourceAccess:
        return self._access

    async def _enter(self, method: str, start: datetime, end: datetime) -> None:
        self.calls.append((method, start, end))
        self.reading.set()
        if self.gate is not None:
            await self.gate.wait()
        error = self._errors.get(method)
        if isinstance(error, list):
            error = error.pop(0) if error else None
        if error is not None:
            raise error

    def _scalar(self, name: str) -> int:
        value = self._values[name]
        if isinstance(value, list):
            return value.pop(0) if len(value) > 1 else value[0]
        return value

    @staticmethod
    def _is_today(start: datetime) -> bool:
        return start.astimezone(TEST_TZ).date() == TODAY

    async def read_steps(self, start: datetime, end: datetime) -> int:
        await self._enter("read_steps", start, end)
        return self._scalar("steps" if self._is_today(start) else "yesterday_steps")

    async def read_calories(self, start: datetime, end: datetime) -> int:
        await self._enter("read_calories", start, end)
        return self._scalar("calories" if self._is_today(start) else "yesterday_calories")

    async def read_sleep(self, start: datetime, end: datetime) -> list[SleepSession]:
        await self._enter("read_sleep", start, end)
        if self.SLEEP_WINDOW == "target" and not self._is_today(start):
            return list(self._yesterday_sleep)
        return list(self._sleep)

    async def read_workouts(self, start: datetime, end: datetime) -> list[WorkoutEntry]:
        await self._enter("read_workouts", start, end)
        return list(self._workouts)

    def count(self, method: str) -> int:
        return sum(1 for name, _, _ in self.calls if name == method)


def structured_source(**kwargs) -> FakeSource:
    return FakeSource("health_connect", **kwargs)


def legacy_source(**kwargs) -> FakeSource:
    kwargs.setdefault("zero_is_ambiguous", True)
    kwargs.setdefault("sleep_window", "target")
    kwargs.setdefault("missing_permission_is_fatal", True)
    return FakeSource("google_fit", **kwargs)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real bundled sync config for tests."""
    return load_sync_config()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def notifier() -> CollectingNotifier:
    return CollectingNotifier()


@pytest.fixture
def store() -> FlakyStore:
    s = FlakyStore()
    s._docs[settings_path(TEST_USER_ID)] = {"timezone": TEST_TZ_NAME}
    return s


@pytest.fixture
def gateway(store: FlakyStore, sync_config: SyncConfig, recording_sleep: RecordingSleep) -> PersistenceGateway:
    return PersistenceGateway(store, config=sync_config, sleep=recording_sleep)


@pytest.fixture
def last_night_sleep() -> SleepSession:
    """23:10 yesterday → 06:40 today (450 minutes)."""
    return SleepSession(local(YESTERDAY, 23, 10), local(TODAY, 6, 40))


@pytest.fixture
def morning_run() -> WorkoutEntry:
    return WorkoutEntry(
        activity_type="Running",
        duration_minutes=35,
        calories_burned=320,
        start_time=local(TODAY, 7, 15),
    )


@pytest.fixture
def late_upload_ride() -> WorkoutEntry:
    """Yesterday's evening ride that only reached the provider today."""
    return WorkoutEntry(
        activity_type="Cycling",
        duration_minutes=50,
        calories_burned=410,
        start_time=local(YESTERDAY, 18, 30),
    )
