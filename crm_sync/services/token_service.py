"""
Token Capability

OAuth acquisition and refresh live outside this service. The pipeline only
asks: "give me a bearer credential for this tenant", and handles
ReauthorizationRequired when the answer is no.
"""
from typing import Optional, Protocol

import httpx

from crm_sync.config import get_settings
from crm_sync.errors import ReauthorizationRequired, TransientError
from crm_sync.utils.observability import logger


class TokenProvider(Protocol):

    async def get_access_token(self, tenant_id: str) -> str:
        """
        Return a bearer credential for `tenant_id`.

        Raises:
            ReauthorizationRequired: tenant must re-authorize the app
            TransientError: token service unavailable
        """
        ...

    async def provision_location(self, company_id: str, location_id: str) -> bool:
        """Ask the token service to mint location credentials from a company grant."""
        ...


class HttpTokenProvider:
    """Client for the external token service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self._base_url = (base_url or settings.token_service_url or "").rstrip("/")
        self._api_key = api_key or settings.token_service_key
        self._timeout = timeout or settings.http_timeout_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self._base_url)

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}

    async def get_access_token(self, tenant_id: str) -> str:
        if not self._base_url:
            raise ReauthorizationRequired(tenant_id, "token service not configured")

        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    f"{self._base_url}/tenants/{tenant_id}/token",
                    headers=self._headers(),
                    timeout=self._timeout,
                )
        except httpx.HTTPError as e:
            raise TransientError(f"Token service unreachable: {e}") from e

        if response.status_code in (401, 403, 404):
            raise ReauthorizationRequired(tenant_id, f"token service answered {response.status_code}")
        if response.status_code >= 400:
            raise TransientError(f"Token service error {response.status_code}")

        token = response.json().get("access_token")
        if not token:
            raise ReauthorizationRequired(tenant_id, "empty credential")
        return token

    async def provision_location(self, company_id: str, location_id: str) -> bool:
        if not self._base_url:
            logger.warning("Token service not configured, cannot provision location credentials")
            return False

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self._base_url}/locations/provision",
                    json={"companyId": company_id, "locationId": location_id},
                    headers=self._headers(),
                    timeout=self._timeout,
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                f"Location credential provisioning failed: {e}",
                extra={"company_id": company_id, "location_id": location_id}
            )
            return False

        logger.info(
            "Location credentials provisioned",
            extra={"company_id": company_id, "location_id": location_id}
        )
        return True
