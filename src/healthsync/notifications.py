"""User-facing advisory channel for the sync engine.

The orchestrator emits one of four fixed categories when it cannot proceed
or cannot find data.  Advisories are fire-and-forget: a failing notifier is
logged and never changes the outcome of a sync run.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Protocol

logger = logging.getLogger("coachie.healthsync.notifications")


class Advisory(str, Enum):
    PERMISSION_REQUIRED = "permission_required"
    SOURCE_NOT_CONNECTED = "source_not_connected"
    NO_DATA_SOURCES = "no_data_sources"
    SYNC_FAILED = "sync_failed"

    @property
    def message(self) -> str:
        return _MESSAGES[self]


_MESSAGES: dict[Advisory, str] = {
    Advisory.PERMISSION_REQUIRED: (
        "Health sync needs permission to read your activity data. Grant "
        "the Health Connect permissions or Google Fit's Activity "
        "Recognition permission in Settings, then sync again."
    ),
    Advisory.SOURCE_NOT_CONNECTED: (
        "Google Fit is not connected. Connect it in Settings to sync "
        "steps, calories, sleep and workouts."
    ),
    Advisory.NO_DATA_SOURCES: (
        "No health data sources connected. Enable Health Connect or "
        "connect Google Fit to sync your activity."
    ),
    Advisory.SYNC_FAILED: (
        "Health sync failed. We'll try again later, or you can pull to "
        "refresh."
    ),
}


class Notifier(Protocol):
    async def notify(self, user_id: str, advisory: Advisory) -> None: ...


class LoggingNotifier:
    """Default notifier: records advisories in the application log."""

    async def notify(self, user_id: str, advisory: Advisory) -> None:
        logger.info("Advisory for user %s [%s]: %s", user_id, advisory.value, advisory.message)


async def emit(notifier: Notifier | None, user_id: str, advisory: Advisory) -> None:
    """Deliver ``advisory`` through ``notifier``, swallowing delivery failures."""
    if notifier is None:
        return
    try:
        await notifier.notify(user_id, advisory)
    except Exception:
        logger.warning(
            "Notifier failed to deliver %s to user %s", advisory.value, user_id, exc_info=True
        )
