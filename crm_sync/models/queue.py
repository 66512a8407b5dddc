"""
Queue Models

Durable queue item, its closed status lifecycle and per-run summaries.
"""
import datetime as dt
from enum import StrEnum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from crm_sync.errors import InvalidStatusTransition
from crm_sync.models.base import MongoBaseModel, utcnow


class QueueType(StrEnum):
    """Processing lanes. Each lane is drained by its own scheduled run."""
    CRITICAL = "critical"
    FINANCIAL = "financial"
    GENERAL = "general"
    MESSAGES = "messages"
    APPOINTMENTS = "appointments"
    CONTACTS = "contacts"
    PROJECTS = "projects"
    INSTALL = "install"


class QueueStatus(StrEnum):
    """Queue item lifecycle status."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    def can_transition_to(self, target: "QueueStatus") -> bool:
        return QueueStatus(target) in _ALLOWED_TRANSITIONS[self]

    def transition_to(self, target: "QueueStatus") -> "QueueStatus":
        """Return `target` if the move is legal, else raise InvalidStatusTransition."""
        target = QueueStatus(target)
        if not self.can_transition_to(target):
            raise InvalidStatusTransition(self.value, target.value)
        return target

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.COMPLETED, QueueStatus.FAILED)


_ALLOWED_TRANSITIONS: Dict[QueueStatus, frozenset] = {
    QueueStatus.PENDING: frozenset({QueueStatus.PROCESSING}),
    QueueStatus.PROCESSING: frozenset({
        QueueStatus.COMPLETED,
        QueueStatus.FAILED,
        QueueStatus.PENDING,  # retry or expired lease
    }),
    QueueStatus.COMPLETED: frozenset(),
    QueueStatus.FAILED: frozenset({QueueStatus.PENDING}),  # explicit requeue only
}


class QueueItem(MongoBaseModel):
    """
    A persisted webhook awaiting or undergoing processing.

    Attributes:
        event_id: Platform event identifier, unique per tenant
        tenant_id: Location or company the event belongs to
        queue_type: Processing lane
        event_type: Platform event type (e.g., "InvoicePaid")
        payload: Opaque event body
        status: Lifecycle status
        priority: 1 (highest) to 5
        attempts: Failed processing attempts so far
        max_attempts: Attempts allowed before permanent failure
        received_at: When the item was ingested
        next_retry_at: Earliest time the item may be claimed
        processing_started_at: When the current claim was taken
        claimed_by: Run identifier holding the claim
        recognized: False when routed to general by the catch-all
    """

    event_id: str
    tenant_id: str
    queue_type: QueueType
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: QueueStatus = QueueStatus.PENDING
    priority: int = Field(default=5, ge=1, le=5)
    attempts: int = 0
    max_attempts: int = 3
    received_at: dt.datetime = Field(default_factory=utcnow)
    next_retry_at: dt.datetime = Field(default_factory=utcnow)
    processing_started_at: Optional[dt.datetime] = None
    completed_at: Optional[dt.datetime] = None
    failed_at: Optional[dt.datetime] = None
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    claimed_by: Optional[str] = None
    recognized: bool = True


class QueueStats(BaseModel):
    """Point-in-time item counts for one queue type."""
    queue_type: QueueType
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class RunSummary(BaseModel):
    """Outcome of one bounded batch run."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    queue_type: QueueType
    run_id: str
    runtime_seconds: float = 0.0
    items_claimed: int = 0
    items_processed: int = 0
    items_failed: int = 0
    items_retried: int = 0
    items_released: int = 0
    items_lost: int = 0
    budget_exhausted: bool = False
