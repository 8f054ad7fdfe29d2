"""Tests for stitching raw sleep fragments into the night's main sleep."""

from __future__ import annotations

from datetime import timedelta

import pytest

from src.healthsync.base import SleepSession
from src.healthsync.config_loader import SyncConfig
from src.healthsync.sleep_stitcher import (
    SleepStitcher,
    dedupe_sessions,
    merge_fragments,
    select_main_sleep,
)
from src.healthsync.tests.conftest import TEST_TZ, TODAY, YESTERDAY, local
from src.healthsync.windows import day_bounds


@pytest.fixture
def stitcher(sync_config: SyncConfig) -> SleepStitcher:
    return SleepStitcher(sync_config)


@pytest.fixture
def today_target():
    return day_bounds(TODAY, TEST_TZ)


class TestDedupe:
    def test_near_duplicates_collapse(self) -> None:
        a = SleepSession(local(YESTERDAY, 23, 0), local(TODAY, 7, 0))
        b = SleepSession(local(YESTERDAY, 23, 1), local(TODAY, 6, 59))
        assert dedupe_sessions([a, b], tolerance_minutes=2) == [a]

    def test_sessions_outside_tolerance_kept(self) -> None:
        a = SleepSession(local(YESTERDAY, 23, 0), local(TODAY, 7, 0))
        b = SleepSession(local(YESTERDAY, 23, 5), local(TODAY, 7, 0))
        assert dedupe_sessions([a, b], tolerance_minutes=2) == [a, b]


class TestMergeFragments:
    def test_short_gap_merges(self) -> None:
        first = SleepSession(local(YESTERDAY, 23, 0), local(TODAY, 2, 0))
        second = SleepSession(local(TODAY, 2, 20), local(TODAY, 6, 30))
        merged = merge_fragments([second, first], gap_minutes=30, quality=3)
        assert merged == [SleepSession(local(YESTERDAY, 23, 0), local(TODAY, 6, 30), 3)]

    def test_long_gap_stays_split(self) -> None:
        nap = SleepSession(local(TODAY, 13, 0), local(TODAY, 13, 40))
        night = SleepSession(local(YESTERDAY, 23, 0), local(TODAY, 6, 30))
        assert len(merge_fragments([nap, night], gap_minutes=30, quality=3)) == 2

    def test_overlap_keeps_later_end(self) -> None:
        a = SleepSession(local(YESTERDAY, 23, 0), local(TODAY, 6, 0))
        b = SleepSession(local(TODAY, 1, 0), local(TODAY, 5, 0))
        merged = merge_fragments([a, b], gap_minutes=30, quality=3)
        assert merged[0].end_time == local(TODAY, 6, 0)


class TestSelectMainSleep:
    def test_longest_session_ending_on_target_wins(self, today_target) -> None:
        nap = SleepSession(local(TODAY, 13, 0), local(TODAY, 14, 0))
        night = SleepSession(local(YESTERDAY, 23, 0), local(TODAY, 6, 30))
        assert select_main_sleep([nap, night], today_target, TEST_TZ, 36) == night

    def test_previous_day_recent_session_counts(self, today_target) -> None:
        # Ended yesterday evening, well within 36h of today's start
        early = SleepSession(local(YESTERDAY, 14, 0), local(YESTERDAY, 22, 0))
        assert select_main_sleep([early], today_target, TEST_TZ, 36) == early

    def test_sessions_ending_two_days_back_ignored(self, today_target) -> None:
        day_before = YESTERDAY - timedelta(days=1)
        two_nights_ago = SleepSession(
            local(day_before - timedelta(days=1), 23, 0), local(day_before, 7, 0)
        )
        last_night_but_one = SleepSession(local(day_before, 23, 0), local(YESTERDAY, 6, 0))
        assert select_main_sleep([two_nights_ago], today_target, TEST_TZ, 36) is None
        assert (
            select_main_sleep([last_night_but_one], today_target, TEST_TZ, 36)
            == last_night_but_one
        )

    def test_empty_input(self, today_target) -> None:
        assert select_main_sleep([], today_target, TEST_TZ, 36) is None


class TestSleepStitcher:
    def test_search_window_pads_target(self, stitcher: SleepStitcher, today_target) -> None:
        window = stitcher.search_window(today_target)
        assert window.start == today_target.start - timedelta(hours=24)
        assert window.end == today_target.end + timedelta(hours=12)

    def test_fragmented_night_becomes_one_session(
        self, stitcher: SleepStitcher, today_target
    ) -> None:
        raw = [
            SleepSession(local(YESTERDAY, 22, 45), local(TODAY, 0, 0)),
            SleepSession(local(YESTERDAY, 22, 46), local(TODAY, 0, 1)),  # duplicate
            SleepSession(local(TODAY, 0, 10), local(TODAY, 6, 50)),
        ]
        result = stitcher.stitch(raw, today_target, TEST_TZ)
        assert len(result) == 1
        assert result[0].start_time == local(YESTERDAY, 22, 45)
        assert result[0].end_time == local(TODAY, 6, 50)
        assert result[0].quality == 3

    def test_no_candidates_returns_empty_list(
        self, stitcher: SleepStitcher, today_target
    ) -> None:
        assert stitcher.stitch([], today_target, TEST_TZ) == []
