"""
Structured Logging & Observability
Production-grade logging that's both human-readable and machine-parseable.
"""
import sys
from loguru import logger
from typing import Any, Dict
from crm_sync.config import get_settings


def configure_logging():
    """
    Configure loguru for production observability.

    In development: Human-readable colorized output
    In production: Structured JSON logs for ingestion (ELK, Datadog, etc.)
    """
    settings = get_settings()

    # Remove default handler
    logger.remove()

    if not settings.enable_structured_logging:
        logger.add(
            sys.stderr,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                "{message}"
            ),
            level=settings.log_level,
            colorize=True,
        )
    else:
        logger.add(
            sys.stderr,
            format="{message}",
            level=settings.log_level,
            serialize=True,  # Output as JSON
        )

    logger.info(f"Logging configured: level={settings.log_level}, structured={settings.enable_structured_logging}")


def log_queue_event(
    action: str,
    queue_type: str,
    event_id: str,
    event_type: str | None = None,
    duration_ms: float | None = None,
    **context
):
    """
    Structured logging for queue item lifecycle changes.

    Args:
        action: What happened to the item (e.g., "claimed", "completed", "retry_scheduled")
        queue_type: Queue the item belongs to
        event_id: Platform event identifier
        event_type: Platform event type
        duration_ms: Processing time in milliseconds
        **context: Additional context (attempts, error, tenant_id, ...)

    Example:
        >>> log_queue_event(
        ...     action="completed",
        ...     queue_type="financial",
        ...     event_id="evt-1",
        ...     event_type="InvoicePaid",
        ...     duration_ms=41.2,
        ... )
    """
    log_data = {
        "queue_type": str(queue_type),
        "event_id": event_id,
        "action": action,
    }

    if event_type is not None:
        log_data["event_type"] = event_type

    if duration_ms is not None:
        log_data["duration_ms"] = round(duration_ms, 2)

    log_data.update(context)

    level = "WARNING" if context.get("error") else "INFO"
    logger.bind(**log_data).log(level, f"Queue | {queue_type} | {action} | {event_id}")


def log_business_event(
    event_type: str,
    tenant_id: str,
    **details: Dict[str, Any]
):
    """
    Log business-critical events for analytics.

    Examples:
        - App installed / uninstalled on a location
        - Invoice paid
        - Project status changed

    Args:
        event_type: Type of event (e.g., "app_installed", "invoice_paid")
        tenant_id: The tenant (location or company) involved
        **details: Event-specific data
    """
    log_data = {
        "event_type": event_type,
        "tenant_id": tenant_id,
        **details
    }

    logger.bind(**log_data).success(f"Business Event: {event_type}")
