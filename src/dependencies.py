"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from src.config import Settings, get_settings
from src.healthsync.gateway import PersistenceGateway
from src.healthsync.sync.orchestrator import SyncOrchestrator


def get_gateway(request: Request) -> PersistenceGateway:
    """The process-wide persistence gateway created in the app lifespan."""
    return request.app.state.gateway


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """The process-wide orchestrator; one instance so single-flight holds."""
    return request.app.state.orchestrator


# Annotated shortcuts for route signatures
Gateway = Annotated[PersistenceGateway, Depends(get_gateway)]
Orchestrator = Annotated[SyncOrchestrator, Depends(get_orchestrator)]
AppSettings = Annotated[Settings, Depends(get_settings)]
