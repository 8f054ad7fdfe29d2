"""Document store interface and the in-memory implementation.

Documents are JSON-like dicts addressed by slash-separated paths:

    users/{uid}/daily/{date}                      canonical daily record
    users/{uid}/daily/{date}/entries/{entry_id}   sleep / workout entries
    users/{uid}/settings/health_sources           source connection state

``merge`` updates only the keys it is given; ``set`` replaces the whole
document.  The Postgres-backed store lives in ``src.services.database``.
"""

from __future__ import annotations

import copy
import logging
from datetime import date
from typing import Protocol

logger = logging.getLogger("coachie.healthsync.store")


def daily_path(user_id: str, day: date) -> str:
    return f"users/{user_id}/daily/{day.isoformat()}"


def entries_path(user_id: str, day: date) -> str:
    return f"{daily_path(user_id, day)}/entries"


def entry_path(user_id: str, day: date, entry_id: str) -> str:
    return f"{entries_path(user_id, day)}/{entry_id}"


_SETTINGS_SUFFIX = "/settings/health_sources"


def settings_path(user_id: str) -> str:
    return f"users/{user_id}{_SETTINGS_SUFFIX}"


def parent_of(path: str) -> str:
    return path.rsplit("/", 1)[0]


class DocumentStore(Protocol):
    """Minimal async document-store surface used by the gateway."""

    async def get(self, path: str) -> dict | None: ...

    async def set(self, path: str, data: dict) -> None: ...

    async def merge(self, path: str, data: dict) -> None: ...

    async def delete(self, path: str) -> None: ...

    async def list(self, collection: str) -> dict[str, dict]: ...

    async def list_user_ids(self) -> list[str]: ...


class InMemoryDocumentStore:
    """Process-local store used by tests and when no database is configured.

    Values are deep-copied on the way in and out so callers can never
    mutate stored state by accident.
    """

    def __init__(self) -> None:
        self._docs: dict[str, dict] = {}

    async def get(self, path: str) -> dict | None:
        doc = self._docs.get(path)
        return copy.deepcopy(doc) if doc is not None else None

    async def set(self, path: str, data: dict) -> None:
        self._docs[path] = copy.deepcopy(data)

    async def merge(self, path: str, data: dict) -> None:
        existing = self._docs.setdefault(path, {})
        existing.update(copy.deepcopy(data))

    async def delete(self, path: str) -> None:
        self._docs.pop(path, None)

    async def list(self, collection: str) -> dict[str, dict]:
        prefix = collection.rstrip("/") + "/"
        return {
            path[len(prefix):]: copy.deepcopy(doc)
            for path, doc in sorted(self._docs.items())
            if path.startswith(prefix) and "/" not in path[len(prefix):]
        }

    async def list_user_ids(self) -> list[str]:
        """Users that have stored source connection settings."""
        return sorted(
            path.split("/")[1]
            for path in self._docs
            if path.startswith("users/") and path.endswith(_SETTINGS_SUFFIX)
        )

    def snapshot(self) -> dict[str, dict]:
        """Copy of every stored document, keyed by path."""
        return copy.deepcopy(self._docs)
