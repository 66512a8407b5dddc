"""
Payload Normalization

The platform delivers the same logical event either flat or wrapped in a
`webhookPayload` envelope. Processors only ever see the flat form.
"""
from typing import Any, Dict

from crm_sync.errors import ValidationError
from crm_sync.models.base import ensure_utc
from crm_sync.models.events import NormalizedEvent
from crm_sync.models.queue import QueueItem

ENVELOPE_KEY = "webhookPayload"


def flatten_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return the flat event body.

    Outer keys (e.g. `locationId`, `timestamp`) fill in anything the inner
    body lacks; inner values win on conflict.
    """
    inner = payload.get(ENVELOPE_KEY)
    if not isinstance(inner, dict):
        return dict(payload)

    outer = {k: v for k, v in payload.items() if k != ENVELOPE_KEY}
    return {**outer, **{k: v for k, v in inner.items() if v is not None}}


def check_tenant(item: QueueItem, data: Dict[str, Any]) -> None:
    """
    The item tenant scopes every write. A body naming another location is
    rejected, unless the item is scoped to the company that owns it.
    """
    location_id = data.get("locationId")
    if not location_id or location_id == item.tenant_id:
        return
    if data.get("companyId") == item.tenant_id:
        return
    raise ValidationError(
        f"Payload locationId {location_id} does not match tenant {item.tenant_id}",
        event_type=item.event_type,
    )


def normalize_event(item: QueueItem) -> NormalizedEvent:
    """
    Build the canonical event for a claimed queue item.

    Raises:
        ValidationError: the payload belongs to a different tenant
    """
    data = flatten_payload(item.payload or {})
    check_tenant(item, data)

    return NormalizedEvent(
        event_id=item.event_id,
        tenant_id=item.tenant_id,
        event_type=item.event_type,
        queue_type=item.queue_type,
        received_at=ensure_utc(item.received_at),
        attempt=item.attempts + 1,
        data=data,
    )
