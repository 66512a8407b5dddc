"""
Event Routing Table

Static mapping from platform event type to (queue type, priority). Event
types missing from the table land on the general queue at the lowest
priority; nothing is ever dropped at classification time.
"""
from typing import Any, Dict, NamedTuple, Optional

from crm_sync.models.queue import QueueType


class Route(NamedTuple):
    queue_type: QueueType
    priority: int
    recognized: bool = True


DEFAULT_ROUTE = Route(QueueType.GENERAL, 5, recognized=False)


def _routes(queue_type: QueueType, priorities: Dict[str, int]) -> Dict[str, Route]:
    return {event_type: Route(queue_type, priority) for event_type, priority in priorities.items()}


EVENT_ROUTES: Dict[str, Route] = {
    # ============================================
    # CRITICAL - app lifecycle and user provisioning
    # ============================================
    **_routes(QueueType.CRITICAL, {
        "INSTALL": 1,
        "UNINSTALL": 1,
        "PLAN_CHANGE": 1,
        "UserCreate": 2,
    }),

    # ============================================
    # MESSAGES
    # ============================================
    **_routes(QueueType.MESSAGES, {
        "InboundMessage": 2,
        "OutboundMessage": 3,
        "ConversationUnreadUpdate": 5,
        "LCEmailStats": 5,
    }),

    # ============================================
    # APPOINTMENTS
    # ============================================
    **_routes(QueueType.APPOINTMENTS, {
        "AppointmentCreate": 2,
        "AppointmentUpdate": 3,
        "AppointmentDelete": 3,
    }),

    # ============================================
    # CONTACTS
    # ============================================
    **_routes(QueueType.CONTACTS, {
        "ContactCreate": 3,
        "ContactUpdate": 4,
        "ContactDelete": 4,
        "ContactDndUpdate": 4,
        "ContactTagUpdate": 5,
    }),

    # ============================================
    # FINANCIAL
    # ============================================
    **_routes(QueueType.FINANCIAL, {
        "InvoiceCreate": 3,
        "InvoiceUpdate": 3,
        "InvoiceDelete": 3,
        "InvoiceVoid": 3,
        "InvoicePaid": 2,
        "InvoicePartiallyPaid": 2,
        "OrderCreate": 3,
        "OrderStatusUpdate": 3,
        "ProductCreate": 4,
        "ProductUpdate": 4,
        "ProductDelete": 4,
        "PriceCreate": 4,
        "PriceUpdate": 4,
        "PriceDelete": 4,
    }),

    # ============================================
    # PROJECTS - opportunity projections
    # ============================================
    **_routes(QueueType.PROJECTS, {
        "OpportunityCreate": 3,
        "OpportunityUpdate": 4,
        "OpportunityDelete": 4,
        "OpportunityStageUpdate": 3,
        "OpportunityStatusUpdate": 3,
        "OpportunityMonetaryValueUpdate": 4,
        "OpportunityAssignedToUpdate": 4,
    }),

    # ============================================
    # GENERAL
    # ============================================
    **_routes(QueueType.GENERAL, {
        "TaskCreate": 5,
        "TaskComplete": 5,
        "TaskDelete": 5,
        "NoteCreate": 5,
        "NoteUpdate": 5,
        "NoteDelete": 5,
        "CampaignStatusUpdate": 5,
        "UserUpdate": 4,
        "UserDelete": 4,
        "LocationCreate": 3,
        "LocationUpdate": 4,
        "ObjectSchemaCreate": 5,
        "UpdateCustomObject": 5,
        "RecordCreate": 5,
        "RecordUpdate": 5,
        "DeleteRecord": 5,
        "AssociationCreated": 5,
        "AssociationUpdated": 5,
        "AssociationDeleted": 5,
        "RelationCreate": 5,
        "RelationDelete": 5,
    }),
}


def route_for(event_type: str) -> Route:
    """Classify an event type. Unknown types fall through to the general queue."""
    return EVENT_ROUTES.get(event_type, DEFAULT_ROUTE)


def infer_event_type(body: Dict[str, Any]) -> Optional[str]:
    """
    Best-effort event type for native bodies that omit `type`.
    Mirrors the shapes the platform is known to send.
    """
    if body.get("appointment"):
        return "AppointmentCreate"
    if isinstance(body.get("contact"), dict) and body["contact"].get("id"):
        return "ContactUpdate"
    if body.get("message") and body.get("direction") == "inbound":
        return "InboundMessage"
    if body.get("message") and body.get("direction") == "outbound":
        return "OutboundMessage"
    if body.get("invoice"):
        return "InvoiceUpdate"
    if body.get("opportunity"):
        return "OpportunityUpdate"
    if body.get("installType"):
        return "INSTALL"
    if body.get("uninstallReason"):
        return "UNINSTALL"
    return None
