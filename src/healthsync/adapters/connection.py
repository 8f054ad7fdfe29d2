"""Per-user source connection state.

Stored at ``users/{uid}/settings/health_sources`` and written by the mobile
client when the user opts in, grants permissions, or links an account.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class SourceConnection(BaseModel):
    """Which sources a user has enabled, and with what grants."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    timezone: str | None = None

    health_connect_enabled: bool = False
    health_connect_permissions_granted: bool = False
    health_connect_token: str | None = None

    google_fit_connected: bool = False
    activity_recognition_granted: bool = False
    google_fit_token: str | None = None
