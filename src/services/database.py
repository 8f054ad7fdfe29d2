"""Postgres-backed document store.

All sync documents live in a single ``documents`` table keyed by path, with
the document body in a ``jsonb`` column.  Merge writes use
``INSERT ... ON CONFLICT DO UPDATE`` with ``data = documents.data || EXCLUDED.data``
so untouched keys of an existing document survive.

Uses ``asyncpg`` directly; a jsonb codec is registered on every pooled
connection so documents go in and come out as plain dicts.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import asyncpg

from src.config import Settings, get_settings
from src.healthsync.errors import StoreError, TransientStoreError
from src.healthsync.store import parent_of
from src.healthsync.sync.dedup import build_upsert_query

logger = logging.getLogger("coachie.db")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    path        TEXT PRIMARY KEY,
    parent      TEXT NOT NULL,
    data        JSONB NOT NULL DEFAULT '{}'::jsonb,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS documents_parent_idx ON documents (parent);
"""

_MERGE_SQL = build_upsert_query(
    "documents", ["path", "parent", "data"], ["path"], merge_columns=["data"]
)
_SET_SQL = build_upsert_query("documents", ["path", "parent", "data"], ["path"])

# Errors that may clear if the same statement is retried.
_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.InterfaceError,
    asyncio.TimeoutError,
    OSError,
)

# Module-level connection pool: initialized once at app startup
_pool: asyncpg.Pool | None = None


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
    )


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool and ensure the schema exists."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=s.database_pool_min,
        max_size=s.database_pool_max,
        command_timeout=30,
        init=_init_connection,
    )
    async with _pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)
    logger.info(
        "Database pool initialized (min=%d, max=%d)",
        s.database_pool_min,
        s.database_pool_max,
    )
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized — call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection(pool: asyncpg.Pool | None = None) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a pooled connection, translating driver errors to store errors.

    Usage::

        async with get_connection() as conn:
            row = await conn.fetchrow("SELECT data FROM documents WHERE path = $1", path)
    """
    try:
        async with (pool or get_pool()).acquire() as conn:
            yield conn
    except _TRANSIENT_ERRORS as exc:
        raise TransientStoreError(f"{type(exc).__name__}: {exc}") from exc
    except asyncpg.PostgresError as exc:
        raise StoreError(f"{type(exc).__name__}: {exc}") from exc


class PostgresDocumentStore:
    """DocumentStore over the ``documents`` table."""

    def __init__(self, pool: asyncpg.Pool | None = None) -> None:
        self._pool = pool

    async def get(self, path: str) -> dict | None:
        async with get_connection(self._pool) as conn:
            return await conn.fetchval("SELECT data FROM documents WHERE path = $1", path)

    async def set(self, path: str, data: dict) -> None:
        async with get_connection(self._pool) as conn:
            await conn.execute(_SET_SQL, path, parent_of(path), data)

    async def merge(self, path: str, data: dict) -> None:
        async with get_connection(self._pool) as conn:
            await conn.execute(_MERGE_SQL, path, parent_of(path), data)

    async def delete(self, path: str) -> None:
        async with get_connection(self._pool) as conn:
            await conn.execute("DELETE FROM documents WHERE path = $1", path)

    async def list(self, collection: str) -> dict[str, dict]:
        collection = collection.rstrip("/")
        async with get_connection(self._pool) as conn:
            rows = await conn.fetch(
                "SELECT path, data FROM documents WHERE parent = $1 ORDER BY path",
                collection,
            )
        return {row["path"].rsplit("/", 1)[1]: row["data"] for row in rows}

    async def list_user_ids(self) -> list[str]:
        async with get_connection(self._pool) as conn:
            rows = await conn.fetch(
                "SELECT split_part(path, '/', 2) AS user_id FROM documents "
                "WHERE path LIKE 'users/%/settings/health_sources' ORDER BY 1"
            )
        return [row["user_id"] for row in rows]
