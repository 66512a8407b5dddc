"""
Welcome Notification Service

Sends the "finish setting up your account" notification for newly
provisioned users. Pluggable: an HTTP notification API when configured,
otherwise a log-only fallback. Delivery is best-effort and never blocks
user provisioning.
"""
import datetime as dt
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from crm_sync.config import get_settings
from crm_sync.utils.observability import logger


@dataclass
class WelcomeNotification:
    """Details for one welcome message."""
    user_id: str
    email: str
    name: str
    location_id: str
    location_name: Optional[str]
    setup_url: str
    expires_at: dt.datetime


class WelcomeNotifier(Protocol):
    """
    Protocol for welcome notification channels.

    Implement this to add new channels (SMS, in-app, ...).
    """

    async def send_welcome(self, notification: WelcomeNotification) -> bool:
        """
        Send a welcome notification.

        Returns:
            True if the notification was accepted by the channel
        """
        ...


class HttpWelcomeNotifier:
    """Posts welcome notifications to an external notification API."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self._api_url = api_url or settings.notification_api_url
        self._api_key = api_key or settings.notification_api_key
        self._timeout = timeout or settings.http_timeout_seconds

    @property
    def is_configured(self) -> bool:
        return self._api_url is not None

    async def send_welcome(self, notification: WelcomeNotification) -> bool:
        if not self._api_url:
            logger.warning("Notification API not configured, skipping welcome notification")
            return False

        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        payload = {
            "template": "welcome",
            "to": notification.email,
            "data": {
                "name": notification.name,
                "locationName": notification.location_name,
                "setupUrl": notification.setup_url,
                "expiresAt": notification.expires_at.isoformat(),
            },
        }

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self._api_url,
                    json=payload,
                    headers=headers,
                    timeout=self._timeout
                )
                response.raise_for_status()

            logger.info(
                f"Welcome notification sent to {notification.email}",
                extra={"user_id": notification.user_id, "location_id": notification.location_id}
            )
            return True

        except httpx.HTTPError as e:
            logger.error(
                f"Failed to send welcome notification: {e}",
                extra={"user_id": notification.user_id, "error": str(e)}
            )
            return False


class LogOnlyNotifier:
    """
    Fallback notifier that only logs.

    Used when no notification API is configured.
    """

    async def send_welcome(self, notification: WelcomeNotification) -> bool:
        logger.warning(
            f"Welcome notification (no notifier configured): {notification.email}",
            extra={
                "user_id": notification.user_id,
                "location_id": notification.location_id,
                "setup_url": notification.setup_url,
            }
        )
        return True


def build_notifier() -> WelcomeNotifier:
    http = HttpWelcomeNotifier()
    return http if http.is_configured else LogOnlyNotifier()
