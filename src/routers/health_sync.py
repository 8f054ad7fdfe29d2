"""Health sync endpoints: on-demand trigger, canonical daily record, entries,
and source connection settings."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from fastapi import APIRouter, HTTPException

from src.dependencies import Gateway, Orchestrator
from src.healthsync.adapters import SourceConnection
from src.healthsync.errors import StoreError
from src.models.base import ErrorDetail
from src.models.health_sync import (
    DailyRecordRead,
    EntryRead,
    SourceConnectionUpdate,
    SyncOutcomeRead,
)

router = APIRouter(prefix="/users/{user_id}", tags=["health-sync"])
logger = logging.getLogger("coachie.routers.health_sync")


# ---------- Sync trigger ----------

@router.post("/health-sync", response_model=SyncOutcomeRead)
async def trigger_sync(user_id: str, orchestrator: Orchestrator) -> Any:
    outcome = await orchestrator.sync(user_id)
    return SyncOutcomeRead(
        user_id=outcome.user_id,
        success=outcome.success,
        status=outcome.status.value,
        attempts=outcome.attempts,
        advisory=outcome.advisory.value if outcome.advisory else None,
        message=outcome.advisory.message if outcome.advisory else None,
        missing_metrics=outcome.missing_metrics,
        sources_used=outcome.sources_used,
        zero_rechecks=outcome.zero_rechecks,
        sleep_rechecks=outcome.sleep_rechecks,
        error=outcome.error,
    )


# ---------- Daily record ----------

@router.get(
    "/daily/{day}", response_model=DailyRecordRead, responses={404: {"model": ErrorDetail}}
)
async def get_daily(user_id: str, day: date, gateway: Gateway) -> Any:
    record = await gateway.get_daily_record(user_id, day)
    if record is None:
        raise HTTPException(status_code=404, detail="No record for this date")
    return record


@router.get("/daily/{day}/entries", response_model=list[EntryRead])
async def list_entries(user_id: str, day: date, gateway: Gateway) -> Any:
    return await gateway.list_entries(user_id, day)


@router.delete(
    "/daily/{day}/entries/{entry_id}",
    status_code=204,
    responses={404: {"model": ErrorDetail}, 503: {"model": ErrorDetail}},
)
async def delete_entry(user_id: str, day: date, entry_id: str, gateway: Gateway) -> None:
    if await gateway.get_entry(user_id, day, entry_id) is None:
        raise HTTPException(status_code=404, detail="Entry not found")
    try:
        await gateway.delete_entry(user_id, day, entry_id)
    except StoreError as exc:
        logger.warning("Delete of %s for user %s failed: %s", entry_id, user_id, exc)
        raise HTTPException(status_code=503, detail="Storage temporarily unavailable") from exc


# ---------- Source connection ----------

@router.get("/health-sources", response_model=SourceConnection)
async def get_sources(user_id: str, gateway: Gateway) -> Any:
    return SourceConnection.model_validate(await gateway.get_source_settings(user_id))


@router.patch("/health-sources", response_model=SourceConnection)
async def update_sources(
    user_id: str, body: SourceConnectionUpdate, gateway: Gateway
) -> Any:
    updates = body.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    await gateway.save_source_settings(user_id, updates)
    return SourceConnection.model_validate(await gateway.get_source_settings(user_id))
