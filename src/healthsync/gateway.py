"""Persistence gateway — idempotent writes of the canonical daily record and
its sleep / workout entries.

Every write that can fail transiently is retried here, independently of the
orchestrator's whole-run retry: up to ``persistence.max_write_attempts``
tries with an ``attempt × write_backoff_step_ms`` delay between them.

Daily-record writes merge only the fields computed by the current run and
are read back after ``persistence.verify_delay_ms``; a mismatch on the
numeric fields raises ``VerificationMismatch``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import date, datetime

from src.healthsync.base import DailyRecord, SleepSession, WorkoutEntry, utc_now
from src.healthsync.config_loader import SyncConfig, get_sync_config
from src.healthsync.errors import TransientStoreError, VerificationMismatch
from src.healthsync.merge_policy import late_sync_update
from src.healthsync.store import (
    DocumentStore,
    daily_path,
    entries_path,
    entry_path,
    settings_path,
)
from src.healthsync.sync.dedup import AUTO_SYNC_TAGS, is_auto_synced_sleep, sleep_entry_id

logger = logging.getLogger("coachie.healthsync.gateway")

Sleeper = Callable[[float], Awaitable[None]]

# DailyRecord attribute → document key
_DAILY_FIELDS = {
    "steps": "steps",
    "calories_burned": "caloriesBurned",
}

WORKOUT_INTENSITY = "Medium"


def sleep_document(entry_id: str, day: date, session: SleepSession, source_tag: str) -> dict:
    return {
        "id": entry_id,
        "type": "sleep",
        "source": source_tag,
        "date": day.isoformat(),
        "startTime": session.start_time.isoformat(),
        "endTime": session.end_time.isoformat(),
        "durationMinutes": session.duration_minutes,
        "quality": session.quality,
    }


def workout_document(entry_id: str, day: date, workout: WorkoutEntry, source_tag: str) -> dict:
    return {
        "id": entry_id,
        "type": "workout",
        "source": source_tag,
        "date": day.isoformat(),
        "activityType": workout.activity_type,
        "durationMinutes": workout.duration_minutes,
        "caloriesBurned": workout.calories_burned,
        "intensity": WORKOUT_INTENSITY,
        "startTime": workout.start_time.isoformat(),
    }


def _workout_unchanged(existing: dict, new: dict) -> bool:
    return all(
        existing.get(key) == new[key]
        for key in ("activityType", "durationMinutes", "caloriesBurned")
    )


class PersistenceGateway:
    """Read/write API for the canonical daily record and its entries.

    Usage::

        gateway = PersistenceGateway(store)
        await gateway.upsert_daily_record(record, fields=["steps"])
        await gateway.upsert_sleep_session(user_id, today, session, "google_fit")
    """

    def __init__(
        self,
        store: DocumentStore,
        config: SyncConfig | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._store = store
        self._config = (config or get_sync_config()).persistence
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Local write retry
    # ------------------------------------------------------------------

    async def _with_retry(self, description: str, operation: Callable[[], Awaitable]):
        max_attempts = self._config.max_write_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                return await operation()
            except TransientStoreError as exc:
                if attempt == max_attempts:
                    logger.warning(
                        "%s failed after %d attempts: %s", description, attempt, exc
                    )
                    raise
                delay = attempt * self._config.write_backoff_step_ms / 1000
                logger.debug(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    description,
                    attempt,
                    max_attempts,
                    delay,
                    exc,
                )
                await self._sleep(delay)

    # ------------------------------------------------------------------
    # Daily record
    # ------------------------------------------------------------------

    async def get_daily_record(self, user_id: str, day: date) -> DailyRecord | None:
        doc = await self._store.get(daily_path(user_id, day))
        if doc is None:
            return None
        return DailyRecord.from_document(user_id, day, doc)

    async def upsert_daily_record(
        self, record: DailyRecord, fields: Iterable[str], verify: bool = True
    ) -> DailyRecord:
        """Merge-write the named fields of ``record`` and verify the read-back.

        Nothing is written when every named field already matches the stored
        record, so ``updatedAt`` only moves when the data does.

        Args:
            record: Record carrying the values to write.
            fields: DailyRecord attributes computed this run
                    (``steps`` and/or ``calories_burned``).
            verify: Re-read after the write and compare the written fields.

        Raises:
            VerificationMismatch: The read-back differs from what was written.
            TransientStoreError:  The write kept failing after local retries.
        """
        fields = [f for f in fields if f in _DAILY_FIELDS]
        if record.updated_at is None:
            record.updated_at = utc_now()
        full = record.to_document()
        doc = {"uid": full["uid"], "date": full["date"], "updatedAt": full["updatedAt"]}
        for attr in fields:
            doc[_DAILY_FIELDS[attr]] = full[_DAILY_FIELDS[attr]]

        path = daily_path(record.user_id, record.date)
        stored = await self._with_retry(f"Daily record read {path}", lambda: self._store.get(path))
        if stored is not None and all(
            stored.get(k) == v for k, v in doc.items() if k != "updatedAt"
        ):
            logger.debug("Daily record %s unchanged, skipping write", path)
        else:
            await self._with_retry(
                f"Daily record write {path}", lambda: self._store.merge(path, doc)
            )
            logger.info(
                "Saved %s: %s", path, {k: doc[k] for k in doc if k in _DAILY_FIELDS.values()}
            )

        if verify and fields:
            await self.verify_daily_record(
                record.user_id, record.date, {f: getattr(record, f) for f in fields}
            )
        return record

    async def verify_daily_record(
        self, user_id: str, day: date, expected: dict[str, int | None]
    ) -> None:
        """Re-read the daily record after a short delay and compare fields.

        Args:
            expected: DailyRecord attribute → value that was just written.

        Raises:
            VerificationMismatch: Any expected field reads back differently.
        """
        if not expected:
            return
        await self._sleep(self._config.verify_delay_ms / 1000)
        path = daily_path(user_id, day)
        actual = await self._store.get(path)
        wanted = {_DAILY_FIELDS[f]: v for f, v in expected.items()}
        if actual is None or any(actual.get(k) != v for k, v in wanted.items()):
            logger.warning("Verification mismatch at %s: wrote %s, read %s", path, wanted, actual)
            raise VerificationMismatch(path, wanted, actual)
        logger.debug("Verified %s", path)

    async def apply_late_sync(
        self,
        user_id: str,
        day: date,
        steps: int | None,
        calories: int | None,
        updated_at: datetime | None = None,
    ) -> dict[str, int]:
        """Raise a past day's totals if newly discovered values are higher.

        Returns:
            The fields actually updated (empty when nothing changed).
        """
        stored = await self.get_daily_record(user_id, day)
        stored_steps = stored.steps if stored else None
        stored_calories = stored.calories_burned if stored else None

        updates: dict[str, int] = {}
        new_steps = late_sync_update(stored_steps, steps)
        if new_steps is not None:
            updates["steps"] = new_steps
        new_calories = late_sync_update(stored_calories, calories)
        if new_calories is not None:
            updates["calories_burned"] = new_calories

        if not updates:
            logger.debug(
                "Late sync for %s: nothing higher than stored (steps=%s calories=%s)",
                day,
                stored_steps,
                stored_calories,
            )
            return updates

        record = DailyRecord(
            user_id=user_id,
            date=day,
            steps=updates.get("steps"),
            calories_burned=updates.get("calories_burned"),
            updated_at=updated_at,
        )
        await self.upsert_daily_record(record, fields=updates.keys())
        logger.info(
            "Late sync for %s: steps %s→%s, calories %s→%s",
            day,
            stored_steps,
            updates.get("steps", stored_steps),
            stored_calories,
            updates.get("calories_burned", stored_calories),
        )
        return updates

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    async def list_entries(self, user_id: str, day: date) -> list[dict]:
        entries = await self._store.list(entries_path(user_id, day))
        return [{"id": entry_id, **doc} for entry_id, doc in entries.items()]

    async def get_entry(self, user_id: str, day: date, entry_id: str) -> dict | None:
        return await self._store.get(entry_path(user_id, day, entry_id))

    async def delete_entry(self, user_id: str, day: date, entry_id: str) -> None:
        path = entry_path(user_id, day, entry_id)
        await self._with_retry(f"Delete {path}", lambda: self._store.delete(path))

    async def upsert_sleep_session(
        self, user_id: str, day: date, session: SleepSession, source_tag: str
    ) -> str:
        """Replace the auto-synced sleep filed under ``day``.

        Every existing entry carrying an auto-sync sleep prefix is deleted
        first, so at most one synced session exists per date no matter
        which source wrote the previous one.
        """
        entry_id = sleep_entry_id(source_tag, day)
        for existing in await self.list_entries(user_id, day):
            if is_auto_synced_sleep(existing["id"], AUTO_SYNC_TAGS):
                await self.delete_entry(user_id, day, existing["id"])

        path = entry_path(user_id, day, entry_id)
        doc = sleep_document(entry_id, day, session, source_tag)
        await self._with_retry(f"Sleep write {path}", lambda: self._store.set(path, doc))
        logger.info("Saved sleep %s (%d min)", entry_id, session.duration_minutes)
        return entry_id

    async def upsert_workout(
        self,
        user_id: str,
        day: date,
        entry_id: str,
        workout: WorkoutEntry,
        source_tag: str,
    ) -> str:
        """Create, rewrite, or skip a workout entry under its deterministic id.

        Returns:
            ``"created"``, ``"updated"`` or ``"unchanged"``.
        """
        path = entry_path(user_id, day, entry_id)
        doc = workout_document(entry_id, day, workout, source_tag)
        existing = await self._store.get(path)

        if existing is not None and _workout_unchanged(existing, doc):
            logger.debug("Workout %s unchanged, skipping", entry_id)
            return "unchanged"

        if existing is not None:
            await self.delete_entry(user_id, day, entry_id)
        await self._with_retry(f"Workout write {path}", lambda: self._store.set(path, doc))

        status = "updated" if existing is not None else "created"
        logger.info("Workout %s %s", entry_id, status)
        return status

    # ------------------------------------------------------------------
    # Source connection settings
    # ------------------------------------------------------------------

    async def list_user_ids(self) -> list[str]:
        return await self._store.list_user_ids()

    async def get_source_settings(self, user_id: str) -> dict:
        return await self._store.get(settings_path(user_id)) or {}

    async def save_source_settings(self, user_id: str, settings: dict) -> None:
        path = settings_path(user_id)
        await self._with_retry(f"Settings write {path}", lambda: self._store.merge(path, settings))
