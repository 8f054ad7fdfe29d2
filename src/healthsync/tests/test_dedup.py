"""Tests for deterministic entry ids and the upsert query builder."""

from __future__ import annotations

from datetime import timedelta

from src.healthsync.sync.dedup import (
    GOOGLE_FIT_TAG,
    HEALTH_CONNECT_TAG,
    InMemoryDedupCache,
    build_upsert_query,
    is_auto_synced_sleep,
    normalize_activity_type,
    sleep_entry_id,
    workout_entry_id,
)
from src.healthsync.tests.conftest import TODAY, YESTERDAY, local


class TestNormalizeActivityType:
    def test_lowercases_and_replaces_separators(self) -> None:
        assert normalize_activity_type("Strength Training") == "strength_training"
        assert normalize_activity_type("Cross-Country Ski") == "cross_country_ski"
        assert normalize_activity_type("run.outdoor") == "run_outdoor"

    def test_strips_surrounding_whitespace(self) -> None:
        assert normalize_activity_type("  Yoga ") == "yoga"


class TestSleepEntryId:
    def test_format(self) -> None:
        assert sleep_entry_id(GOOGLE_FIT_TAG, TODAY) == "google_fit_sleep_2026-06-10"

    def test_one_id_per_tag_and_date(self) -> None:
        assert sleep_entry_id(HEALTH_CONNECT_TAG, TODAY) == sleep_entry_id(HEALTH_CONNECT_TAG, TODAY)
        assert sleep_entry_id(HEALTH_CONNECT_TAG, TODAY) != sleep_entry_id(HEALTH_CONNECT_TAG, YESTERDAY)

    def test_auto_synced_prefix_detection(self) -> None:
        assert is_auto_synced_sleep("health_connect_sleep_2026-06-10")
        assert is_auto_synced_sleep("google_fit_sleep_2026-06-10")
        assert not is_auto_synced_sleep("manual_sleep_2026-06-10")
        assert not is_auto_synced_sleep("google_fit_workout_2026-06-10_1_running")


class TestWorkoutEntryId:
    def test_format(self) -> None:
        start = local(TODAY, 7, 15)
        entry_id = workout_entry_id(HEALTH_CONNECT_TAG, TODAY, start, "Strength Training")
        start_ms = int(start.timestamp() * 1000)
        assert entry_id == f"health_connect_workout_2026-06-10_{start_ms}_strength_training"

    def test_equal_for_same_logical_workout(self) -> None:
        start = local(TODAY, 7, 15)
        a = workout_entry_id(GOOGLE_FIT_TAG, TODAY, start, "Running")
        b = workout_entry_id(GOOGLE_FIT_TAG, TODAY, start, "running")
        assert a == b

    def test_distinct_start_instants_differ(self) -> None:
        start = local(TODAY, 7, 15)
        a = workout_entry_id(GOOGLE_FIT_TAG, TODAY, start, "Running")
        b = workout_entry_id(GOOGLE_FIT_TAG, TODAY, start + timedelta(milliseconds=1), "Running")
        assert a != b

    def test_distinct_types_and_tags_differ(self) -> None:
        start = local(TODAY, 7, 15)
        base = workout_entry_id(GOOGLE_FIT_TAG, TODAY, start, "Running")
        assert base != workout_entry_id(GOOGLE_FIT_TAG, TODAY, start, "Walking")
        assert base != workout_entry_id(HEALTH_CONNECT_TAG, TODAY, start, "Running")


class TestInMemoryDedupCache:
    def test_marks_and_clears(self) -> None:
        cache = InMemoryDedupCache()
        assert not cache.is_seen("a")
        cache.mark_seen("a")
        assert cache.is_seen("a")
        assert len(cache) == 1
        cache.clear()
        assert len(cache) == 0


class TestBuildUpsertQuery:
    def test_replace_upsert(self) -> None:
        sql = build_upsert_query("documents", ["path", "parent", "data"], ["path"])
        assert sql == (
            "INSERT INTO documents (path, parent, data) VALUES ($1, $2, $3) "
            "ON CONFLICT (path) DO UPDATE SET parent = EXCLUDED.parent, "
            "data = EXCLUDED.data, updated_at = NOW()"
        )

    def test_merge_columns_concatenate_jsonb(self) -> None:
        sql = build_upsert_query(
            "documents", ["path", "parent", "data"], ["path"], merge_columns=["data"]
        )
        assert "data = documents.data || EXCLUDED.data" in sql

    def test_no_update_columns_does_nothing(self) -> None:
        sql = build_upsert_query("seen", ["key"], ["key"])
        assert sql.endswith("ON CONFLICT (key) DO NOTHING")
