"""
FastAPI Dependencies

Reusable dependencies for request authentication.
"""
import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request, status
from loguru import logger

from crm_sync.config import Settings
from crm_sync.utils.metrics import metrics
from crm_sync.utils.webhook_signature import validate_webhook_signature


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


async def require_cron_auth(
    request: Request,
    authorization: Optional[str] = Header(None)
) -> None:
    """
    Dependency guarding scheduler-triggered and operator endpoints.

    Accepts `Authorization: Bearer <CRON_SECRET>`, or the scheduler's own
    header when TRUST_SCHEDULER_HEADER is enabled.

    Raises:
        HTTPException: 401 if the caller is not authorized
    """
    settings = get_app_settings(request)

    if settings.trust_scheduler_header and request.headers.get(settings.scheduler_header_name):
        logger.debug("Cron request authorized by scheduler header")
        return

    if not settings.cron_secret:
        logger.error("CRON_SECRET not configured, rejecting cron request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Cron authentication not configured"
        )

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), settings.cron_secret):
        logger.warning("Unauthorized cron request", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )


async def verify_webhook_signature(
    request: Request,
    x_webhook_signature: Optional[str] = Header(None)
) -> None:
    """
    Dependency to validate the native webhook signature.

    Verifies the X-Webhook-Signature header against an HMAC-SHA256 of the
    raw body using WEBHOOK_SIGNING_SECRET.

    Raises:
        HTTPException: 401 if signature is invalid or missing,
            500 if verification is enabled without a secret

    Note:
        Disabled unless VERIFY_WEBHOOK_SIGNATURE=true
    """
    settings = get_app_settings(request)

    if not settings.verify_webhook_signature:
        return

    if not settings.webhook_signing_secret:
        logger.error("WEBHOOK_SIGNING_SECRET not configured but signature verification is enabled")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook authentication not configured"
        )

    if not x_webhook_signature:
        logger.warning("Missing X-Webhook-Signature header")
        metrics.webhooks_rejected.inc(reason="missing_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing signature header"
        )

    body = await request.body()
    if not validate_webhook_signature(body, x_webhook_signature, settings.webhook_signing_secret):
        logger.warning(
            "Invalid webhook signature",
            extra={"signature": x_webhook_signature[:12] + "..."}
        )
        metrics.webhooks_rejected.inc(reason="invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature"
        )

    logger.debug("Webhook signature validated successfully")
