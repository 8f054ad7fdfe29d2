"""Load, validate, and hot-reload the health sync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after an admin update — no restart required.

Usage::

    from src.healthsync.config_loader import get_sync_config

    config = get_sync_config()
    config.retry.max_attempts                 # 3
    config.zero_recheck_delay("calories")     # 2.0
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import time
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("coachie.healthsync.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class WindowConfig:
    """Query window settings for the temporal planner."""

    finalization_cutoff: time
    sleep_query_pad_hours: int
    workout_lookahead_hours: int


@dataclass
class RetryConfig:
    """Whole-run retry settings for the orchestrator."""

    max_attempts: int
    backoff_base_seconds: float

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before the attempt after ``attempt`` (0-based)."""
        return self.backoff_base_seconds * (2**attempt)


@dataclass
class PersistenceConfig:
    """Local write-retry settings for the persistence gateway."""

    max_write_attempts: int
    write_backoff_step_ms: int
    verify_delay_ms: int


@dataclass
class LegacySourceConfig:
    """Timing workarounds for the legacy provider's sync lag."""

    settle_delay_seconds: float
    zero_recheck_delay_seconds: dict[str, float]


@dataclass
class SleepConfig:
    """Sleep session stitching and filing settings."""

    default_quality: int
    duplicate_tolerance_minutes: int
    merge_gap_minutes: int
    lookback_hours: int
    lookahead_hours: int
    recent_hours: int


@dataclass
class SyncConfig:
    """Complete, validated sync engine configuration.

    Attributes:
        version:          Config schema version string.
        source_priority:  Source slugs, highest priority first.
        windows:          Temporal planner settings.
        retry:            Orchestrator retry settings.
        persistence:      Gateway write-retry settings.
        legacy_source:    Legacy provider delays.
        sleep:            Sleep stitching settings.
        calorie_overlap_tolerance_minutes: Slack when attributing calorie
                          records to a workout session.
    """

    version: str
    source_priority: list[str]
    windows: WindowConfig
    retry: RetryConfig
    persistence: PersistenceConfig
    legacy_source: LegacySourceConfig
    sleep: SleepConfig
    calorie_overlap_tolerance_minutes: int = 5
    _raw: dict = field(default_factory=dict, repr=False)

    def zero_recheck_delay(self, metric: str) -> float:
        """Seconds to wait before re-reading a zero (or an empty sleep result)
        from the legacy source.

        Returns 0.0 for metrics without a configured re-check.
        """
        return self.legacy_source.zero_recheck_delay_seconds.get(metric, 0.0)

    def source_rank(self, source: str) -> int:
        """Position of ``source`` in the priority list (unknown sources last)."""
        try:
            return self.source_priority.index(source)
        except ValueError:
            return len(self.source_priority)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _parse_cutoff(value: Any, errors: list[str]) -> time:
    try:
        hour, minute = str(value).split(":", 1)
        return time(int(hour), int(minute))
    except (TypeError, ValueError):
        errors.append(
            f"windows.finalization_cutoff must be 'HH:MM', got {value!r}"
        )
        return time(23, 59)


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Applies defaults for optional fields and collects every problem before
    raising.

    Raises:
        ConfigValidationError: If any value is missing or invalid.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, default: float, name: str, minimum: float = 0) -> float:
        value = section.get(key, default)
        try:
            number = float(value)
        except (TypeError, ValueError):
            errors.append(f"{name}.{key} must be a number, got {value!r}")
            return default
        if number < minimum:
            errors.append(f"{name}.{key} = {number} must be >= {minimum}")
        return number

    version = str(raw.get("version", "1.0"))

    # ── Sources ──
    priority = (raw.get("sources") or {}).get("priority") or []
    if not isinstance(priority, list) or not priority:
        errors.append("'sources.priority' must be a non-empty list of source slugs")
        priority = []
    elif len(set(priority)) != len(priority):
        errors.append("'sources.priority' contains duplicate sources")

    # ── Windows ──
    win_raw = raw.get("windows") or {}
    windows = WindowConfig(
        finalization_cutoff=_parse_cutoff(win_raw.get("finalization_cutoff", "23:59"), errors),
        sleep_query_pad_hours=int(_number(win_raw, "sleep_query_pad_hours", 12, "windows")),
        workout_lookahead_hours=int(_number(win_raw, "workout_lookahead_hours", 1, "windows")),
    )

    # ── Retry ──
    retry_raw = raw.get("retry") or {}
    retry = RetryConfig(
        max_attempts=int(_number(retry_raw, "max_attempts", 3, "retry", minimum=1)),
        backoff_base_seconds=_number(retry_raw, "backoff_base_seconds", 1.0, "retry"),
    )

    # ── Persistence ──
    pers_raw = raw.get("persistence") or {}
    persistence = PersistenceConfig(
        max_write_attempts=int(_number(pers_raw, "max_write_attempts", 5, "persistence", minimum=1)),
        write_backoff_step_ms=int(_number(pers_raw, "write_backoff_step_ms", 500, "persistence")),
        verify_delay_ms=int(_number(pers_raw, "verify_delay_ms", 500, "persistence")),
    )

    # ── Legacy source ──
    legacy_raw = raw.get("legacy_source") or {}
    recheck_raw = legacy_raw.get("zero_recheck_delay_seconds") or {}
    if not isinstance(recheck_raw, dict):
        errors.append("legacy_source.zero_recheck_delay_seconds must be a mapping")
        recheck_raw = {}
    legacy_source = LegacySourceConfig(
        settle_delay_seconds=_number(legacy_raw, "settle_delay_seconds", 1.0, "legacy_source"),
        zero_recheck_delay_seconds={
            metric: _number(recheck_raw, metric, 0.0, "legacy_source.zero_recheck_delay_seconds")
            for metric in recheck_raw
        },
    )

    # ── Sleep ──
    sleep_raw = raw.get("sleep") or {}
    sleep = SleepConfig(
        default_quality=int(_number(sleep_raw, "default_quality", 3, "sleep", minimum=1)),
        duplicate_tolerance_minutes=int(_number(sleep_raw, "duplicate_tolerance_minutes", 2, "sleep")),
        merge_gap_minutes=int(_number(sleep_raw, "merge_gap_minutes", 30, "sleep")),
        lookback_hours=int(_number(sleep_raw, "lookback_hours", 24, "sleep")),
        lookahead_hours=int(_number(sleep_raw, "lookahead_hours", 12, "sleep")),
        recent_hours=int(_number(sleep_raw, "recent_hours", 36, "sleep")),
    )
    if sleep.default_quality > 5:
        errors.append(f"sleep.default_quality = {sleep.default_quality} is out of range [1, 5]")

    # ── Workouts ──
    workouts_raw = raw.get("workouts") or {}
    overlap = int(_number(workouts_raw, "calorie_overlap_tolerance_minutes", 5, "workouts"))

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        source_priority=list(priority),
        windows=windows,
        retry=retry,
        persistence=persistence,
        legacy_source=legacy_source,
        sleep=sleep,
        calorie_overlap_tolerance_minutes=overlap,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_sync_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is
    re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
