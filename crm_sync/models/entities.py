"""
Projected Entity Models

Project (opportunity) status machine and timeline entries.
"""
import datetime as dt
from enum import StrEnum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


# Projection collection -> (external id field, tenant field). Entities are
# always addressed by these, never by `_id`.
ENTITY_ANCHORS: Dict[str, tuple[str, Optional[str]]] = {
    "contacts": ("ghl_contact_id", "location_id"),
    "projects": ("ghl_opportunity_id", "location_id"),
    "invoices": ("ghl_invoice_id", "location_id"),
    "orders": ("ghl_order_id", "location_id"),
    "products": ("ghl_product_id", "location_id"),
    "prices": ("ghl_price_id", "location_id"),
    "tasks": ("ghl_task_id", "location_id"),
    "notes": ("ghl_note_id", "location_id"),
    "users": ("ghl_user_id", "location_id"),
    "appointments": ("ghl_appointment_id", "location_id"),
    "conversations": ("ghl_conversation_id", "location_id"),
    "messages": ("ghl_message_id", "location_id"),
    "locations": ("ghl_location_id", None),
    "companies": ("ghl_company_id", None),
}

# Insert-once raw event logs, keyed by webhook id.
EVENT_STORES = (
    "app_events",
    "product_events",
    "price_events",
    "campaign_events",
    "custom_object_events",
    "association_events",
    "email_stats",
    "unhandled_webhooks",
)


class ProjectStatus(StrEnum):
    """Local status of a project mirrored from a platform opportunity."""
    OPEN = "open"
    WON = "won"
    LOST = "lost"
    ABANDONED = "abandoned"
    DELETED = "deleted"

    @classmethod
    def from_platform(cls, value: Optional[str]) -> "ProjectStatus":
        """Map a platform status string; anything unrecognized is treated as open."""
        if not value:
            return cls.OPEN
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.OPEN

    def can_transition_to(self, target: "ProjectStatus") -> bool:
        return ProjectStatus(target) in _PROJECT_TRANSITIONS[self]


_CLOSED = frozenset({ProjectStatus.WON, ProjectStatus.LOST, ProjectStatus.ABANDONED})

_PROJECT_TRANSITIONS: Dict[ProjectStatus, frozenset] = {
    ProjectStatus.OPEN: _CLOSED | {ProjectStatus.DELETED},
    ProjectStatus.WON: (_CLOSED - {ProjectStatus.WON}) | {ProjectStatus.OPEN, ProjectStatus.DELETED},
    ProjectStatus.LOST: (_CLOSED - {ProjectStatus.LOST}) | {ProjectStatus.OPEN, ProjectStatus.DELETED},
    ProjectStatus.ABANDONED: (_CLOSED - {ProjectStatus.ABANDONED}) | {ProjectStatus.OPEN, ProjectStatus.DELETED},
    ProjectStatus.DELETED: frozenset(),
}


class TimelineEntry(BaseModel):
    """
    One append-only entry on a project's timeline.

    The id is derived from the triggering webhook so re-applying the same
    event never produces a second entry.
    """
    id: str
    event: str
    description: str
    timestamp: dt.datetime
    webhook_id: str
    cause: Optional[str] = None
    previous: Optional[str] = None
    new: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_webhook(
        cls,
        webhook_id: str,
        event: str,
        description: str,
        timestamp: dt.datetime,
        **kwargs: Any,
    ) -> "TimelineEntry":
        return cls(
            id=f"{webhook_id}:{event}",
            event=event,
            description=description,
            timestamp=timestamp,
            webhook_id=webhook_id,
            **kwargs,
        )
