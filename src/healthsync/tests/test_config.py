"""Tests for sync_config.yaml loading and validation."""

from __future__ import annotations

from datetime import time
from pathlib import Path

import pytest

from src.healthsync.config_loader import (
    ConfigValidationError,
    SyncConfig,
    _validate_and_build,
    load_sync_config,
    reload_sync_config,
)


class TestConfigLoading:
    """Tests for loading the bundled sync_config.yaml."""

    def test_load_default_config(self, sync_config: SyncConfig) -> None:
        assert sync_config.version == "1.0"
        assert sync_config.source_priority == ["health_connect", "google_fit"]

    def test_windows(self, sync_config: SyncConfig) -> None:
        assert sync_config.windows.finalization_cutoff == time(23, 59)
        assert sync_config.windows.sleep_query_pad_hours == 12
        assert sync_config.windows.workout_lookahead_hours == 1

    def test_retry_backoff_doubles(self, sync_config: SyncConfig) -> None:
        retry = sync_config.retry
        assert retry.max_attempts == 3
        assert [retry.backoff_seconds(a) for a in range(3)] == [1.0, 2.0, 4.0]

    def test_persistence(self, sync_config: SyncConfig) -> None:
        p = sync_config.persistence
        assert p.max_write_attempts == 5
        assert p.write_backoff_step_ms == 500
        assert p.verify_delay_ms == 500

    def test_legacy_recheck_delays(self, sync_config: SyncConfig) -> None:
        assert sync_config.legacy_source.settle_delay_seconds == 1.0
        assert sync_config.zero_recheck_delay("steps") == 3.0
        assert sync_config.zero_recheck_delay("calories") == 2.0
        assert sync_config.zero_recheck_delay("sleep") == 3.0
        assert sync_config.zero_recheck_delay("workouts") == 0.0

    def test_source_rank(self, sync_config: SyncConfig) -> None:
        assert sync_config.source_rank("health_connect") == 0
        assert sync_config.source_rank("google_fit") == 1
        assert sync_config.source_rank("fitbit") == 2


class TestConfigValidation:
    def test_minimal_config_uses_defaults(self) -> None:
        config = _validate_and_build({"sources": {"priority": ["google_fit"]}})
        assert config.version == "1.0"
        assert config.retry.max_attempts == 3
        assert config.sleep.default_quality == 3
        assert config.legacy_source.zero_recheck_delay_seconds == {}
        assert config.calorie_overlap_tolerance_minutes == 5

    def test_missing_priority_raises(self) -> None:
        with pytest.raises(ConfigValidationError, match="sources.priority"):
            _validate_and_build({"version": "1.0"})

    def test_duplicate_priority_raises(self) -> None:
        with pytest.raises(ConfigValidationError, match="duplicate"):
            _validate_and_build({"sources": {"priority": ["google_fit", "google_fit"]}})

    def test_bad_cutoff_raises(self) -> None:
        raw = {"sources": {"priority": ["google_fit"]}, "windows": {"finalization_cutoff": "late"}}
        with pytest.raises(ConfigValidationError, match="HH:MM"):
            _validate_and_build(raw)

    def test_non_numeric_value_raises(self) -> None:
        raw = {"sources": {"priority": ["google_fit"]}, "retry": {"max_attempts": "many"}}
        with pytest.raises(ConfigValidationError, match="retry.max_attempts"):
            _validate_and_build(raw)

    def test_zero_attempts_rejected(self) -> None:
        raw = {"sources": {"priority": ["google_fit"]}, "persistence": {"max_write_attempts": 0}}
        with pytest.raises(ConfigValidationError, match="max_write_attempts"):
            _validate_and_build(raw)

    def test_quality_out_of_range(self) -> None:
        raw = {"sources": {"priority": ["google_fit"]}, "sleep": {"default_quality": 7}}
        with pytest.raises(ConfigValidationError, match="out of range"):
            _validate_and_build(raw)

    def test_all_errors_reported_together(self) -> None:
        raw = {"retry": {"max_attempts": 0}, "sleep": {"merge_gap_minutes": -1}}
        with pytest.raises(ConfigValidationError, match="3 validation error"):
            _validate_and_build(raw)

    def test_hot_reload(self, tmp_path: Path) -> None:
        config_file = tmp_path / "sync_config.yaml"
        config_file.write_text(
            'version: "2.0-test"\n'
            "sources:\n"
            "  priority: [google_fit, health_connect]\n"
            "windows:\n"
            '  finalization_cutoff: "22:30"\n'
        )
        try:
            new_config = reload_sync_config(path=config_file)
            assert new_config.version == "2.0-test"
            assert new_config.windows.finalization_cutoff == time(22, 30)
        finally:
            reload_sync_config()

    def test_malformed_yaml_raises(self, tmp_path: Path) -> None:
        config_file = tmp_path / "broken.yaml"
        config_file.write_text("sources: [unclosed\n")
        with pytest.raises(ConfigValidationError, match="YAML parse error"):
            load_sync_config(path=config_file)

    def test_load_nonexistent_file_raises(self) -> None:
        with pytest.raises(FileNotFoundError):
            load_sync_config(path=Path("/nonexistent/path/sync_config.yaml"))
