"""Coachie Health Sync API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager, suppress
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import Settings, get_settings
from src.healthsync.adapters import SourceConnection, build_sources
from src.healthsync.config_loader import get_sync_config
from src.healthsync.gateway import PersistenceGateway
from src.healthsync.store import InMemoryDocumentStore
from src.healthsync.sync.orchestrator import SyncOrchestrator
from src.healthsync.sync.scheduler import SyncScheduler, parse_run_times
from src.healthsync.windows import resolve_timezone
from src.routers import health, health_sync
from src.services.database import PostgresDocumentStore, close_pool, init_pool

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("coachie")


def build_orchestrator(
    settings: Settings, gateway: PersistenceGateway, http_client: httpx.AsyncClient
) -> SyncOrchestrator:
    config = get_sync_config()

    def _sources(connection: SourceConnection):
        return build_sources(
            connection,
            http_client=http_client,
            config=config,
            health_connect_base_url=settings.health_connect_base_url,
            google_fit_base_url=settings.google_fit_base_url,
            timeout=settings.source_http_timeout_seconds,
        )

    return SyncOrchestrator(gateway, source_factory=_sources, config=config)


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting %s v%s [%s]",
        settings.app_name,
        settings.app_version,
        settings.environment,
    )

    if settings.database_url:
        store = PostgresDocumentStore(await init_pool(settings))
    else:
        logger.warning("DATABASE_URL not set — using the in-memory document store")
        store = InMemoryDocumentStore()

    http_client = httpx.AsyncClient(timeout=settings.source_http_timeout_seconds)
    gateway = PersistenceGateway(store)
    orchestrator = build_orchestrator(settings, gateway, http_client)
    app.state.gateway = gateway
    app.state.orchestrator = orchestrator

    scheduler_task: asyncio.Task | None = None
    if settings.sync_schedule_enabled:
        scheduler = SyncScheduler(
            orchestrator,
            run_times=parse_run_times(settings.sync_schedule_times),
            tz=resolve_timezone(settings.sync_schedule_timezone),
            max_concurrent=settings.sync_max_concurrent,
        )
        scheduler_task = asyncio.create_task(scheduler.run_forever(gateway.list_user_ids))

    yield

    if scheduler_task is not None:
        scheduler_task.cancel()
        with suppress(asyncio.CancelledError):
            await scheduler_task
    await http_client.aclose()
    if settings.database_url:
        await close_pool()
    logger.info("%s shut down", settings.app_name)


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Coachie Health Sync API",
        description=(
            "Reconciles steps, calories, sleep and workouts from Health Connect "
            "and Google Fit into one daily record per user."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside v1 prefix always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"
    app.include_router(health_sync.router, prefix=v1_prefix)

    return app


app = create_app()
