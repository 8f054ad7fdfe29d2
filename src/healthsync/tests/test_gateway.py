"""Tests for the persistence gateway: write retry, verification, late sync
and idempotent entry upserts."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.healthsync.base import DailyRecord, SleepSession, WorkoutEntry
from src.healthsync.errors import TransientStoreError, VerificationMismatch
from src.healthsync.gateway import PersistenceGateway
from src.healthsync.store import daily_path, entry_path
from src.healthsync.sync.dedup import workout_entry_id
from src.healthsync.tests.conftest import (
    TEST_USER_ID,
    TODAY,
    YESTERDAY,
    FlakyStore,
    RecordingSleep,
    local,
)

WRITTEN_AT = datetime(2026, 6, 10, 19, 0, tzinfo=timezone.utc)


def record(**kwargs) -> DailyRecord:
    kwargs.setdefault("updated_at", WRITTEN_AT)
    return DailyRecord(user_id=TEST_USER_ID, date=TODAY, **kwargs)


class TestDailyRecord:
    @pytest.mark.asyncio
    async def test_writes_only_named_fields(
        self, gateway: PersistenceGateway, store: FlakyStore
    ) -> None:
        store._docs[daily_path(TEST_USER_ID, TODAY)] = {"steps": 1200, "caloriesBurned": 90}
        await gateway.upsert_daily_record(record(steps=4000, calories_burned=None), ["steps"])
        doc = store._docs[daily_path(TEST_USER_ID, TODAY)]
        assert doc == {
            "uid": TEST_USER_ID,
            "date": "2026-06-10",
            "updatedAt": WRITTEN_AT.isoformat(),
            "steps": 4000,
            "caloriesBurned": 90,
        }

    @pytest.mark.asyncio
    async def test_zero_is_written(self, gateway: PersistenceGateway, store: FlakyStore) -> None:
        store._docs[daily_path(TEST_USER_ID, TODAY)] = {"caloriesBurned": 90}
        await gateway.upsert_daily_record(record(calories_burned=0), ["calories_burned"])
        assert store._docs[daily_path(TEST_USER_ID, TODAY)]["caloriesBurned"] == 0

    @pytest.mark.asyncio
    async def test_unchanged_values_skip_the_write(
        self, gateway: PersistenceGateway, store: FlakyStore
    ) -> None:
        await gateway.upsert_daily_record(record(steps=4000, calories_burned=300), ["steps", "calories_burned"])
        writes = store.write_calls

        later = record(steps=4000, calories_burned=300, updated_at=datetime(2026, 6, 10, 19, 5, tzinfo=timezone.utc))
        await gateway.upsert_daily_record(later, ["steps", "calories_burned"])

        assert store.write_calls == writes
        assert store._docs[daily_path(TEST_USER_ID, TODAY)]["updatedAt"] == WRITTEN_AT.isoformat()

    @pytest.mark.asyncio
    async def test_missing_updated_at_is_stamped(self, gateway: PersistenceGateway) -> None:
        written = await gateway.upsert_daily_record(
            record(steps=10, updated_at=None), ["steps"], verify=False
        )
        assert written.updated_at is not None
        assert written.updated_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_transient_failures_retried_with_linear_backoff(
        self, gateway: PersistenceGateway, store: FlakyStore, recording_sleep: RecordingSleep
    ) -> None:
        store.failing_writes = 2
        await gateway.upsert_daily_record(record(steps=500), ["steps"], verify=False)
        assert store.write_calls == 3
        assert recording_sleep.delays == [0.5, 1.0]
        assert (await gateway.get_daily_record(TEST_USER_ID, TODAY)).steps == 500

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(
        self, gateway: PersistenceGateway, store: FlakyStore, recording_sleep: RecordingSleep
    ) -> None:
        store.failing_writes = 10
        with pytest.raises(TransientStoreError):
            await gateway.upsert_daily_record(record(steps=500), ["steps"], verify=False)
        assert store.write_calls == 5
        assert recording_sleep.delays == [0.5, 1.0, 1.5, 2.0]

    @pytest.mark.asyncio
    async def test_verification_passes(
        self, gateway: PersistenceGateway, recording_sleep: RecordingSleep
    ) -> None:
        await gateway.upsert_daily_record(record(steps=500, calories_burned=20), ["steps", "calories_burned"])
        assert recording_sleep.delays == [0.5]

    @pytest.mark.asyncio
    async def test_verification_mismatch_raises(
        self, gateway: PersistenceGateway, store: FlakyStore
    ) -> None:
        store.tamper_reads = 1
        with pytest.raises(VerificationMismatch) as exc_info:
            await gateway.upsert_daily_record(record(steps=500), ["steps"])
        assert exc_info.value.expected == {"steps": 500}
        assert exc_info.value.actual["steps"] == 501

    @pytest.mark.asyncio
    async def test_verify_with_nothing_expected_is_a_no_op(
        self, gateway: PersistenceGateway, recording_sleep: RecordingSleep
    ) -> None:
        await gateway.verify_daily_record(TEST_USER_ID, TODAY, {})
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_get_missing_record(self, gateway: PersistenceGateway) -> None:
        assert await gateway.get_daily_record(TEST_USER_ID, YESTERDAY) is None


class TestLateSync:
    @pytest.mark.asyncio
    async def test_raises_lower_stored_values(
        self, gateway: PersistenceGateway, store: FlakyStore
    ) -> None:
        store._docs[daily_path(TEST_USER_ID, YESTERDAY)] = {"steps": 7000, "caloriesBurned": 300}
        updates = await gateway.apply_late_sync(TEST_USER_ID, YESTERDAY, 9100, 250, WRITTEN_AT)
        assert updates == {"steps": 9100}
        doc = store._docs[daily_path(TEST_USER_ID, YESTERDAY)]
        assert doc["steps"] == 9100
        assert doc["caloriesBurned"] == 300

    @pytest.mark.asyncio
    async def test_never_lowers(self, gateway: PersistenceGateway, store: FlakyStore) -> None:
        store._docs[daily_path(TEST_USER_ID, YESTERDAY)] = {"steps": 7000, "caloriesBurned": 300}
        before = store.snapshot()
        assert await gateway.apply_late_sync(TEST_USER_ID, YESTERDAY, 6000, 0) == {}
        assert store.snapshot() == before

    @pytest.mark.asyncio
    async def test_creates_missing_past_record(
        self, gateway: PersistenceGateway, store: FlakyStore
    ) -> None:
        updates = await gateway.apply_late_sync(TEST_USER_ID, YESTERDAY, 4200, 180, WRITTEN_AT)
        assert updates == {"steps": 4200, "calories_burned": 180}
        stored = await gateway.get_daily_record(TEST_USER_ID, YESTERDAY)
        assert stored.steps == 4200
        assert stored.calories_burned == 180


class TestSleepEntries:
    @pytest.mark.asyncio
    async def test_replaces_any_auto_synced_sleep(
        self, gateway: PersistenceGateway, store: FlakyStore, last_night_sleep: SleepSession
    ) -> None:
        store._docs[entry_path(TEST_USER_ID, TODAY, "google_fit_sleep_2026-06-10")] = {"type": "sleep"}
        store._docs[entry_path(TEST_USER_ID, TODAY, "manual_nap")] = {"type": "sleep"}

        entry_id = await gateway.upsert_sleep_session(
            TEST_USER_ID, TODAY, last_night_sleep, "health_connect"
        )

        assert entry_id == "health_connect_sleep_2026-06-10"
        ids = [e["id"] for e in await gateway.list_entries(TEST_USER_ID, TODAY)]
        assert sorted(ids) == ["health_connect_sleep_2026-06-10", "manual_nap"]
        doc = await gateway.get_entry(TEST_USER_ID, TODAY, entry_id)
        assert doc["durationMinutes"] == 450
        assert doc["quality"] == 3
        assert doc["source"] == "health_connect"

    @pytest.mark.asyncio
    async def test_rewrite_is_idempotent(
        self, gateway: PersistenceGateway, store: FlakyStore, last_night_sleep: SleepSession
    ) -> None:
        await gateway.upsert_sleep_session(TEST_USER_ID, TODAY, last_night_sleep, "google_fit")
        first = store.snapshot()
        await gateway.upsert_sleep_session(TEST_USER_ID, TODAY, last_night_sleep, "google_fit")
        assert store.snapshot() == first


class TestWorkoutEntries:
    @staticmethod
    def _id(workout: WorkoutEntry) -> str:
        return workout_entry_id("google_fit", TODAY, workout.start_time, workout.activity_type)

    @pytest.mark.asyncio
    async def test_create_then_unchanged(
        self, gateway: PersistenceGateway, store: FlakyStore, morning_run: WorkoutEntry
    ) -> None:
        entry_id = self._id(morning_run)
        assert await gateway.upsert_workout(TEST_USER_ID, TODAY, entry_id, morning_run, "google_fit") == "created"
        writes = store.write_calls
        assert await gateway.upsert_workout(TEST_USER_ID, TODAY, entry_id, morning_run, "google_fit") == "unchanged"
        assert store.write_calls == writes

    @pytest.mark.asyncio
    async def test_changed_calories_rewrite(
        self, gateway: PersistenceGateway, morning_run: WorkoutEntry
    ) -> None:
        entry_id = self._id(morning_run)
        await gateway.upsert_workout(TEST_USER_ID, TODAY, entry_id, morning_run, "google_fit")
        revised = WorkoutEntry("Running", 36, 335, morning_run.start_time)
        assert await gateway.upsert_workout(TEST_USER_ID, TODAY, entry_id, revised, "google_fit") == "updated"
        doc = await gateway.get_entry(TEST_USER_ID, TODAY, entry_id)
        assert doc["caloriesBurned"] == 335
        assert doc["durationMinutes"] == 36
        assert doc["intensity"] == "Medium"
        assert doc["startTime"] == local(TODAY, 7, 15).isoformat()


class TestSourceSettings:
    @pytest.mark.asyncio
    async def test_merge_and_list_users(self, gateway: PersistenceGateway) -> None:
        await gateway.save_source_settings("user_456", {"google_fit_connected": True})
        await gateway.save_source_settings("user_456", {"timezone": "Europe/Berlin"})
        assert await gateway.get_source_settings("user_456") == {
            "google_fit_connected": True,
            "timezone": "Europe/Berlin",
        }
        assert await gateway.list_user_ids() == ["user_123", "user_456"]

    @pytest.mark.asyncio
    async def test_unknown_user_has_empty_settings(self, gateway: PersistenceGateway) -> None:
        assert await gateway.get_source_settings("nobody") == {}
