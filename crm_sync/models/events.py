"""
Event Models

Inbound webhook envelope, ingestion result and the canonical event shape
handed to processors.
"""
import datetime as dt
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from crm_sync.errors import ValidationError
from crm_sync.models.queue import QueueType


class WebhookEnvelope(BaseModel):
    """Envelope accepted by the ingestion endpoint."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    event_id: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)


class IngestResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    accepted: bool = True
    duplicate: bool = False
    event_id: str
    tenant_id: str
    event_type: str
    queue_type: QueueType
    priority: int
    recognized: bool = True


class NormalizedEvent(BaseModel):
    """
    Canonical view of a queue item's payload.

    `data` is always the flat event body regardless of whether the platform
    delivered it directly or wrapped in a `webhookPayload` envelope.
    """
    event_id: str
    tenant_id: str
    event_type: str
    queue_type: QueueType
    received_at: dt.datetime
    attempt: int = 1
    data: Dict[str, Any] = Field(default_factory=dict)

    def get(self, *keys: str, default: Any = None) -> Any:
        """Return the first present, non-None value among `keys`."""
        for key in keys:
            value = self.data.get(key)
            if value is not None:
                return value
        return default

    def require(self, *keys: str, label: Optional[str] = None) -> Any:
        """Like `get`, but raise ValidationError when every key is absent."""
        value = self.get(*keys)
        if value is None or value == "":
            raise ValidationError(
                f"{self.event_type} is missing required field '{label or keys[0]}'",
                event_type=self.event_type,
            )
        return value

    def section(self, name: str) -> Dict[str, Any]:
        """Nested object (e.g. `invoice`, `opportunity`) or the flat body itself."""
        nested = self.data.get(name)
        if isinstance(nested, dict):
            return nested
        return self.data
