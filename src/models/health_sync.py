"""Pydantic models for the health sync API: daily records, entries, sync outcomes."""

from __future__ import annotations

from datetime import date as date_type, datetime

from pydantic import Field

from src.models.base import CoachieBase


# ---------- Daily record ----------

class DailyRecordRead(CoachieBase):
    user_id: str
    date: date_type
    steps: int | None = Field(default=None, ge=0)
    calories_burned: int | None = Field(default=None, ge=0)
    updated_at: datetime | None = None


# ---------- Entries ----------

class EntryRead(CoachieBase):
    """A sleep or workout entry filed under a daily record.

    Field names follow the stored document keys.
    """

    id: str
    type: str
    source: str | None = None
    date: date_type | None = None
    start_time: datetime | None = Field(default=None, alias="startTime")
    end_time: datetime | None = Field(default=None, alias="endTime")
    duration_minutes: int | None = Field(default=None, alias="durationMinutes")
    quality: int | None = Field(default=None, ge=1, le=5)
    activity_type: str | None = Field(default=None, alias="activityType")
    calories_burned: int | None = Field(default=None, alias="caloriesBurned")
    intensity: str | None = None


# ---------- Source connection ----------

class SourceConnectionUpdate(CoachieBase):
    timezone: str | None = None
    health_connect_enabled: bool | None = None
    health_connect_permissions_granted: bool | None = None
    health_connect_token: str | None = None
    google_fit_connected: bool | None = None
    activity_recognition_granted: bool | None = None
    google_fit_token: str | None = None


# ---------- Sync outcome ----------

class SyncOutcomeRead(CoachieBase):
    user_id: str
    success: bool
    status: str
    attempts: int
    advisory: str | None = None
    message: str | None = None
    missing_metrics: list[str] = Field(default_factory=list)
    sources_used: dict[str, str] = Field(default_factory=dict)
    zero_rechecks: int = 0
    sleep_rechecks: int = 0
    error: str | None = None
