"""Shared HTTP plumbing for REST-backed source adapters."""

from __future__ import annotations

import logging

import httpx

from src.healthsync.base import SourceAdapter
from src.healthsync.errors import PermissionDenied, SourceError, SourceUnavailable

logger = logging.getLogger("coachie.healthsync.adapters.http")

DEFAULT_TIMEOUT = 15.0


class HttpSourceAdapter(SourceAdapter):
    """SourceAdapter that talks to its provider over authenticated HTTP.

    Subclasses call ``_request`` and receive parsed JSON.  Transport and
    status failures are translated into the sync engine's error taxonomy:

        401 / 403                 → PermissionDenied
        429 / 5xx / network error → SourceUnavailable
        any other non-2xx         → SourceError
    """

    def __init__(
        self,
        base_url: str,
        access_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """
        Args:
            base_url:     Provider API root, without a trailing slash.
            access_token: Bearer token for the user.
            http_client:  Optional pre-configured httpx client (for testing).
            timeout:      Per-request timeout in seconds.
        """
        self._base_url = base_url.rstrip("/")
        self._access_token = access_token or ""
        self._http_client = http_client
        self._timeout = timeout

    def _build_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> dict:
        """Make an authenticated request and return the JSON body.

        Raises:
            PermissionDenied:  On 401 / 403.
            SourceUnavailable: On 429, 5xx, timeouts and transport errors.
            SourceError:       On any other non-2xx status.
        """
        url = f"{self._base_url}{path}"
        headers = self._build_headers()
        try:
            if self._http_client:
                response = await self._http_client.request(
                    method, url, params=params, json=json, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(
                        method, url, params=params, json=json, headers=headers
                    )
        except httpx.TimeoutException as exc:
            raise SourceUnavailable(self.SOURCE_ID, f"timeout calling {path}") from exc
        except httpx.TransportError as exc:
            raise SourceUnavailable(self.SOURCE_ID, f"transport error calling {path}: {exc}") from exc

        status = response.status_code
        if status in (401, 403):
            raise PermissionDenied(self.SOURCE_ID, f"HTTP {status} from {path}")
        if status == 429 or status >= 500:
            raise SourceUnavailable(self.SOURCE_ID, f"HTTP {status} from {path}")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SourceError(self.SOURCE_ID, f"HTTP {status} from {path}") from exc

        logger.debug("%s %s → %d", method, path, status)
        return response.json()
