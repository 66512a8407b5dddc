"""
Location Setup Collaborator

Runs the post-install setup (pipelines, calendars, initial sync) for a
location. The setup itself is owned by another service; this module only
calls it.
"""
from typing import Any, Dict, Optional, Protocol

import httpx

from crm_sync.config import get_settings
from crm_sync.errors import TransientError, ValidationError
from crm_sync.utils.observability import logger


class LocationSetup(Protocol):

    async def run_setup(self, location_id: str, access_token: str, full_sync: bool = True) -> Dict[str, Any]:
        """Run setup for a location and return a results summary."""
        ...


class HttpLocationSetup:

    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None):
        settings = get_settings()
        self._url = url or settings.location_setup_url
        # Setup runs much longer than a notification call
        self._timeout = timeout or settings.http_timeout_seconds * 6

    @property
    def is_configured(self) -> bool:
        return self._url is not None

    async def run_setup(self, location_id: str, access_token: str, full_sync: bool = True) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self._url,
                    json={"locationId": location_id, "fullSync": full_sync},
                    headers={"Authorization": f"Bearer {access_token}"},
                    timeout=self._timeout,
                )
        except httpx.HTTPError as e:
            raise TransientError(f"Location setup unreachable: {e}") from e

        if response.status_code >= 500:
            raise TransientError(f"Location setup failed with {response.status_code}")
        if response.status_code >= 400:
            raise ValidationError(f"Location setup rejected with {response.status_code}")

        return response.json()


class SkippedLocationSetup:
    """Used when no setup service is configured."""

    async def run_setup(self, location_id: str, access_token: str, full_sync: bool = True) -> Dict[str, Any]:
        logger.warning(
            "Location setup service not configured, skipping",
            extra={"location_id": location_id}
        )
        return {"skipped": True}


def build_location_setup() -> LocationSetup:
    http = HttpLocationSetup()
    return http if http.is_configured else SkippedLocationSetup()
