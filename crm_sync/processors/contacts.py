"""
Contacts Processor

Contact lifecycle plus do-not-disturb and tag changes.
"""
from typing import Any, Dict, Optional

from crm_sync.errors import TransientError, ValidationError
from crm_sync.models.events import NormalizedEvent
from crm_sync.models.queue import QueueType
from crm_sync.processors.base import BaseProcessor, HandlerContext, HandlerRegistry
from crm_sync.processors.projector import parse_timestamp, pick
from crm_sync.utils.phone_normalizer import get_phone_normalizer

CONTACT_FIELDS = {
    "email": "email",
    "firstName": "first_name",
    "lastName": "last_name",
    "phone": "phone",
    "tags": "tags",
    "source": "source",
    "address1": "address1",
    "city": "city",
    "state": "state",
    "country": "country",
    "postalCode": "postal_code",
    "companyName": "company_name",
    "website": "website",
    "timezone": "timezone",
    "dnd": "dnd",
    "dndSettings": "dnd_settings",
    "customFields": "custom_fields",
    "contactType": "type",
}


def contact_fields(contact: Dict[str, Any], region: Optional[str] = None) -> Dict[str, Any]:
    """Map a platform contact body to stored fields (present keys only)."""
    fields = pick(contact, CONTACT_FIELDS)

    if fields.get("phone"):
        fields["phone"] = get_phone_normalizer().normalize_or_keep(fields["phone"], region)
    if contact.get("firstName") is not None or contact.get("lastName") is not None:
        full_name = f"{contact.get('firstName') or ''} {contact.get('lastName') or ''}".strip()
        fields["full_name"] = full_name or "Unknown"
    if contact.get("dateOfBirth"):
        fields["date_of_birth"] = parse_timestamp(contact.get("dateOfBirth"))
    return fields


class ContactsProcessor(BaseProcessor):
    queue_type = QueueType.CONTACTS

    def build_registry(self) -> HandlerRegistry:
        return (
            HandlerRegistry("contacts")
            .register(self.handle_upsert, "ContactCreate", "ContactUpdate")
            .register(self.handle_delete, "ContactDelete")
            .register(self.handle_dnd_update, "ContactDndUpdate")
            .register(self.handle_tag_update, "ContactTagUpdate")
        )

    @staticmethod
    def _contact(event: NormalizedEvent) -> tuple[Dict[str, Any], str]:
        contact = event.section("contact")
        contact_id = contact.get("id") or event.get("contactId", "id")
        if not contact_id:
            raise ValidationError(f"{event.event_type} is missing the contact id", event_type=event.event_type)
        return contact, contact_id

    async def handle_upsert(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        contact, contact_id = self._contact(event)
        await ctx.projector.upsert(
            "contacts",
            contact_id,
            event.tenant_id,
            event=event,
            fields=contact_fields(contact, ctx.settings.default_phone_region),
            insert_fields={
                "full_name": "Unknown",
                "tags": [],
                "source": "webhook",
                "type": "lead",
                "dnd": False,
            },
        )

    async def handle_delete(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        _, contact_id = self._contact(event)
        await ctx.projector.soft_delete(
            "contacts",
            contact_id,
            event.tenant_id,
            event=event,
            extra={"deleted_by_webhook": event.event_id},
        )

    async def handle_dnd_update(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        contact, contact_id = self._contact(event)
        result = await ctx.projector.upsert(
            "contacts",
            contact_id,
            event.tenant_id,
            event=event,
            fields={
                "dnd": bool(contact.get("dnd")),
                "dnd_settings": contact.get("dndSettings") or {},
            },
            upsert=False,
        )
        if not result.matched:
            # The create may still be queued behind this item
            raise TransientError(f"Contact not found: {contact_id}", event_type=event.event_type)

    async def handle_tag_update(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        contact, contact_id = self._contact(event)
        await ctx.projector.upsert(
            "contacts",
            contact_id,
            event.tenant_id,
            event=event,
            fields={"tags": contact.get("tags") or []},
            insert_fields={"full_name": "Unknown", "source": "webhook", "type": "lead"},
        )
