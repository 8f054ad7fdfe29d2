"""Coachie health-data reconciliation and sync engine.

Pulls daily steps, calories, sleep and workouts from two upstream
providers, reconciles them into one record per user per calendar day, and
writes it idempotently under retries, partial failures and late data.

Subpackages:
    adapters/ — Source adapters (Health Connect, Google Fit)
    sync/     — Orchestrator, background scheduler, deterministic entry ids

Core modules:
    base           — SourceAdapter ABC and canonical data models
    windows        — Query window planner
    merge_policy   — Per-metric source selection and date routing
    gateway        — Idempotent persistence with read-back verification
    store          — Document store interface and in-memory store
    sleep_stitcher — Raw sleep fragments → the night's main sleep
    notifications  — User-facing advisories
    config_loader  — Load/validate/hot-reload sync_config.yaml
"""

from src.healthsync.base import (
    DailyRecord,
    SleepSession,
    SourceAdapter,
    WorkoutEntry,
)
from src.healthsync.config_loader import SyncConfig, get_sync_config

__all__ = [
    "SourceAdapter",
    "DailyRecord",
    "SleepSession",
    "WorkoutEntry",
    "SyncConfig",
    "get_sync_config",
]
