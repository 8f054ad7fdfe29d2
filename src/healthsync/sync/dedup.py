"""Deterministic entry ids and dedup helpers for synced health entries.

Re-running a sync for the same day must update entries in place rather
than duplicate them, so every auto-synced entry is stored under an id
derived only from stable fields.

Entry ids:
    sleep:   {source_tag}_sleep_{date}
             — one auto-synced sleep session per date.
    workout: {source_tag}_workout_{date}_{start_epoch_ms}_{normalized_type}
             — equal iff tag, local date, start instant (ms precision) and
               normalized activity type are all equal.  Two distinct
               workouts only collide if they share a start millisecond and
               activity type, i.e. they are the same logical workout.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime

logger = logging.getLogger("coachie.healthsync.sync.dedup")

HEALTH_CONNECT_TAG = "health_connect"
GOOGLE_FIT_TAG = "google_fit"

#: Tags whose entries are owned by the sync engine.  Manual user entries
#: never start with one of these prefixes.
AUTO_SYNC_TAGS: tuple[str, ...] = (HEALTH_CONNECT_TAG, GOOGLE_FIT_TAG)

_NORMALIZE_RE = re.compile(r"[\s\-.]")


def normalize_activity_type(activity_type: str) -> str:
    """Lower-case an activity name and replace spaces, hyphens and dots with ``_``.

    >>> normalize_activity_type("Strength Training")
    'strength_training'
    """
    return _NORMALIZE_RE.sub("_", activity_type.strip().lower())


def sleep_entry_prefix(source_tag: str) -> str:
    return f"{source_tag}_sleep_"


def sleep_entry_id(source_tag: str, day: date) -> str:
    """Deterministic id for the auto-synced sleep session filed under ``day``."""
    return f"{sleep_entry_prefix(source_tag)}{day.isoformat()}"


def workout_entry_id(
    source_tag: str, day: date, start_time: datetime, activity_type: str
) -> str:
    """Deterministic id for a synced workout.

    Args:
        source_tag:    Tag of the source the workout came from.
        day:           Local calendar date the workout is filed under.
        start_time:    Aware start instant.
        activity_type: Provider activity name (normalized here).

    Returns:
        Stable entry id string.
    """
    start_ms = int(start_time.timestamp() * 1000)
    return (
        f"{source_tag}_workout_{day.isoformat()}_{start_ms}_"
        f"{normalize_activity_type(activity_type)}"
    )


def is_auto_synced_sleep(entry_id: str, tags: tuple[str, ...] = AUTO_SYNC_TAGS) -> bool:
    """Return True if ``entry_id`` names a sleep session written by the sync engine."""
    return any(entry_id.startswith(sleep_entry_prefix(tag)) for tag in tags)


class InMemoryDedupCache:
    """In-process dedup cache for one sync run.

    Not a replacement for deterministic ids — those are the authoritative
    dedup mechanism.  This cache prevents redundant writes within a single
    run when two windows return the same workout.

    Usage::

        cache = InMemoryDedupCache()
        if cache.is_seen(key):
            logger.debug("Skipping duplicate: %s", key)
        else:
            cache.mark_seen(key)
            # process the record
    """

    def __init__(self) -> None:
        self._seen: set[str] = set()

    def is_seen(self, key: str) -> bool:
        return key in self._seen

    def mark_seen(self, key: str) -> None:
        self._seen.add(key)

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
    merge_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Generates idempotent writes — safe to call multiple times with the same
    data.  On conflict, updates the non-key columns.  Columns listed in
    ``merge_columns`` are JSONB and are merged key-by-key (``||``) instead
    of replaced, so unrelated fields of an existing document survive.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).
        merge_columns:    Subset of update_columns merged as JSONB.

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]
    merge = set(merge_columns or [])

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        assignments = []
        for col in update_columns:
            if col in merge:
                assignments.append(f"{col} = {table}.{col} || EXCLUDED.{col}")
            else:
                assignments.append(f"{col} = EXCLUDED.{col}")
        update_set = ", ".join(assignments) + ", updated_at = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )
