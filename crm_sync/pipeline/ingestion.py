"""
Webhook Ingestion

Validates an envelope, classifies it and stores it on the durable queue.
Returns as soon as the item is persisted; processing happens in later
scheduled runs.
"""
import datetime as dt
import hashlib
import json
from typing import Any, Dict, Optional

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from crm_sync.config import get_settings
from crm_sync.errors import ValidationError
from crm_sync.models.base import ensure_utc, utcnow
from crm_sync.models.events import IngestResult, WebhookEnvelope
from crm_sync.models.queue import QueueItem
from crm_sync.pipeline.routing import infer_event_type, route_for
from crm_sync.repositories.events import DiscoveryRepository
from crm_sync.repositories.queue import QueueRepository
from crm_sync.utils.metrics import metrics
from crm_sync.utils.observability import logger

_DATETIME = TypeAdapter(dt.datetime)


def parse_envelope(body: Any) -> WebhookEnvelope:
    """Validate a raw request body, raising the pipeline ValidationError on failure."""
    if not isinstance(body, dict):
        raise ValidationError("Webhook body must be a JSON object")
    try:
        return WebhookEnvelope.model_validate(body)
    except PydanticValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ValidationError(f"Malformed webhook envelope: {fields}") from e


def fingerprint(body: Dict[str, Any]) -> str:
    """Stable id for bodies that carry no webhook id, so identical replays dedupe."""
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def envelope_from_native(
    body: Dict[str, Any],
    now: Optional[dt.datetime] = None,
    max_age_seconds: Optional[int] = None,
) -> WebhookEnvelope:
    """
    Adapt a native platform body (flat JSON with `type`, `locationId`, ...)
    into an ingestion envelope.

    Raises:
        ValidationError: missing tenant/type, or a timestamp older than the
            replay window
    """
    if not isinstance(body, dict):
        raise ValidationError("Webhook body must be a JSON object")

    now = now or utcnow()
    max_age = max_age_seconds if max_age_seconds is not None else get_settings().native_max_age_seconds

    timestamp = body.get("timestamp")
    if timestamp is not None and max_age > 0:
        try:
            sent_at = ensure_utc(_DATETIME.validate_python(timestamp))
        except PydanticValidationError as e:
            raise ValidationError(f"Unparseable webhook timestamp: {timestamp!r}") from e
        if (now - sent_at).total_seconds() > max_age:
            raise ValidationError("Webhook timestamp outside replay window")

    inner = body.get("webhookPayload") if isinstance(body.get("webhookPayload"), dict) else {}
    event_type = body.get("type") or inner.get("type") or infer_event_type(body)
    tenant_id = (
        body.get("locationId")
        or inner.get("locationId")
        or body.get("companyId")
        or inner.get("companyId")
    )
    event_id = body.get("webhookId") or inner.get("webhookId") or fingerprint(body)

    return parse_envelope({
        "eventId": event_id,
        "tenantId": tenant_id or "",
        "eventType": event_type or "",
        "payload": body,
    })


class IngestionService:
    """
    Stores each distinct (event_id, tenant_id) exactly once.

    Usage:
        service = IngestionService(QueueRepository(db), DiscoveryRepository(db))
        result = await service.ingest(envelope)
    """

    def __init__(
        self,
        queue_repo: QueueRepository,
        discovery_repo: Optional[DiscoveryRepository] = None,
        max_attempts: Optional[int] = None,
    ):
        self.queue_repo = queue_repo
        self.discovery_repo = discovery_repo
        self.max_attempts = max_attempts or get_settings().default_max_attempts

    async def ingest(self, envelope: WebhookEnvelope, now: Optional[dt.datetime] = None) -> IngestResult:
        now = now or utcnow()
        route = route_for(envelope.event_type)

        item = QueueItem(
            event_id=envelope.event_id,
            tenant_id=envelope.tenant_id,
            queue_type=route.queue_type,
            event_type=envelope.event_type,
            payload=envelope.payload,
            priority=route.priority,
            max_attempts=self.max_attempts,
            received_at=now,
            next_retry_at=now,
            recognized=route.recognized,
            created_at=now,
            updated_at=now,
        )

        stored = await self.queue_repo.insert_if_absent(item)

        if not route.recognized and stored and self.discovery_repo is not None:
            await self.discovery_repo.observe(envelope.event_type, envelope.tenant_id, now)
            logger.warning(
                f"Unrecognized event type routed to general: {envelope.event_type}",
                extra={"event_id": envelope.event_id, "tenant_id": envelope.tenant_id}
            )

        metrics.webhooks_received.inc(
            queue_type=route.queue_type.value,
            outcome="accepted" if stored else "duplicate",
        )

        logger.info(
            "Webhook ingested" if stored else "Duplicate webhook ignored",
            extra={
                "event_id": envelope.event_id,
                "tenant_id": envelope.tenant_id,
                "event_type": envelope.event_type,
                "queue_type": route.queue_type.value,
                "priority": route.priority,
            }
        )

        return IngestResult(
            accepted=True,
            duplicate=not stored,
            event_id=envelope.event_id,
            tenant_id=envelope.tenant_id,
            event_type=envelope.event_type,
            queue_type=route.queue_type,
            priority=route.priority,
            recognized=route.recognized,
        )
