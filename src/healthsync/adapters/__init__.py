"""Upstream health-data source adapters.

Each adapter implements the SourceAdapter ABC and handles:
- Reporting whether it may be read for the user (opt-in, grants, account)
- Reading steps, calories, sleep and workouts for a time range
- Translating provider failures into PermissionDenied / SourceUnavailable

Available adapters:
    HealthConnectSource — Health Connect records bridge (structured)
    GoogleFitSource     — Google Fit REST API (legacy)
"""

from __future__ import annotations

import httpx

from src.healthsync.adapters import google_fit, health_connect
from src.healthsync.adapters.connection import SourceConnection
from src.healthsync.adapters.google_fit import GoogleFitSource
from src.healthsync.adapters.health_connect import HealthConnectSource
from src.healthsync.adapters.http import DEFAULT_TIMEOUT
from src.healthsync.base import SourceAdapter
from src.healthsync.config_loader import SyncConfig, get_sync_config

__all__ = [
    "GoogleFitSource",
    "HealthConnectSource",
    "SourceConnection",
    "build_sources",
    "get_source_class",
]

# Registry: source_id → adapter class
SOURCE_REGISTRY: dict[str, type[SourceAdapter]] = {
    HealthConnectSource.SOURCE_ID: HealthConnectSource,
    GoogleFitSource.SOURCE_ID: GoogleFitSource,
}


def get_source_class(source_id: str) -> type[SourceAdapter]:
    """Return the adapter class for a given source slug.

    Raises:
        KeyError: If the source_id is not registered.
    """
    if source_id not in SOURCE_REGISTRY:
        raise KeyError(
            f"No adapter registered for source '{source_id}'. "
            f"Available: {list(SOURCE_REGISTRY)}"
        )
    return SOURCE_REGISTRY[source_id]


def build_sources(
    connection: SourceConnection,
    http_client: httpx.AsyncClient | None = None,
    config: SyncConfig | None = None,
    health_connect_base_url: str = health_connect.DEFAULT_BASE_URL,
    google_fit_base_url: str = google_fit.DEFAULT_BASE_URL,
    timeout: float = DEFAULT_TIMEOUT,
) -> list[SourceAdapter]:
    """Instantiate every registered source for a user, in priority order."""
    config = config or get_sync_config()
    sources: list[SourceAdapter] = [
        HealthConnectSource(
            enabled=connection.health_connect_enabled,
            permissions_granted=connection.health_connect_permissions_granted,
            access_token=connection.health_connect_token,
            base_url=health_connect_base_url,
            http_client=http_client,
            timeout=timeout,
            config=config,
        ),
        GoogleFitSource(
            connected=connection.google_fit_connected,
            activity_recognition_granted=connection.activity_recognition_granted,
            access_token=connection.google_fit_token,
            base_url=google_fit_base_url,
            http_client=http_client,
            timeout=timeout,
            config=config,
        ),
    ]
    return sorted(sources, key=lambda s: config.source_rank(s.SOURCE_ID))
