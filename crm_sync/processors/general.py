"""
General Processor

Catch-all queue. Dispatch is by event family (prefix or substring) rather
than exact name; anything unmatched is stored in `unhandled_webhooks` and
failed without retry.
"""
from crm_sync.errors import ValidationError
from crm_sync.models.events import NormalizedEvent
from crm_sync.models.queue import QueueType
from crm_sync.processors.base import BaseProcessor, HandlerContext, HandlerRegistry, store_unhandled
from crm_sync.processors.opportunities import opportunity_registry
from crm_sync.processors.projector import parse_timestamp, pick

TASK_FIELDS = {
    "title": "title",
    "body": "description",
    "description": "description",
    "contactId": "contact_id",
    "assignedTo": "assigned_to",
    "priority": "priority",
}

NOTE_FIELDS = {
    "body": "body",
    "contactId": "contact_id",
    "opportunityId": "opportunity_id",
    "userId": "created_by",
}

USER_FIELDS = {
    "name": "name",
    "firstName": "first_name",
    "lastName": "last_name",
    "email": "email",
    "phone": "phone",
    "role": "role",
    "permissions": "permissions",
}

LOCATION_FIELDS = {
    "name": "name",
    "email": "email",
    "phone": "phone",
    "address": "address",
    "city": "city",
    "state": "state",
    "country": "country",
    "postalCode": "postal_code",
    "website": "website",
    "timezone": "timezone",
    "companyId": "company_id",
}


def _entity_id(event: NormalizedEvent, section: str) -> str:
    body = event.section(section)
    entity_id = body.get("id") or event.get(f"{section}Id")
    if not entity_id:
        raise ValidationError(f"{event.event_type} is missing the {section} id", event_type=event.event_type)
    return entity_id


class GeneralProcessor(BaseProcessor):
    queue_type = QueueType.GENERAL

    def build_registry(self) -> HandlerRegistry:
        return (
            HandlerRegistry("general")
            .register_prefix("Opportunity", opportunity_registry().dispatch)
            .register_prefix("Task", self.handle_task)
            .register_prefix("Note", self.handle_note)
            .register_prefix("Campaign", self.handle_campaign)
            .register_prefix("User", self.handle_user)
            .register_prefix("Location", self.handle_location)
            .register_contains(("Object", "Record"), self.handle_custom_object)
            .register_contains(("Association", "Relation"), self.handle_association)
            .set_fallback(store_unhandled)
        )

    async def handle_task(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        if event.event_type not in ("TaskCreate", "TaskComplete", "TaskDelete"):
            await store_unhandled(event, ctx)

        task = event.section("task")
        task_id = _entity_id(event, "task")

        if event.event_type == "TaskDelete":
            await ctx.projector.soft_delete("tasks", task_id, event.tenant_id, event=event)
            return

        if event.event_type == "TaskComplete":
            await ctx.projector.upsert(
                "tasks",
                task_id,
                event.tenant_id,
                event=event,
                fields={
                    "status": "completed",
                    "completed_at": event.received_at,
                    "completed_by_webhook": event.event_id,
                },
            )
            return

        fields = pick(task, TASK_FIELDS)
        if task.get("dueDate"):
            fields["due_date"] = parse_timestamp(task.get("dueDate"))
        # Status only on insert so a completion that arrived first is kept
        await ctx.projector.upsert(
            "tasks",
            task_id,
            event.tenant_id,
            event=event,
            fields=fields,
            insert_fields={
                "title": "Task",
                "status": "completed" if task.get("completed") else "pending",
                "priority": "normal",
            },
        )

    async def handle_note(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        if event.event_type not in ("NoteCreate", "NoteUpdate", "NoteDelete"):
            await store_unhandled(event, ctx)

        note_id = _entity_id(event, "note")
        if event.event_type == "NoteDelete":
            await ctx.projector.soft_delete("notes", note_id, event.tenant_id, event=event)
            return

        await ctx.projector.upsert(
            "notes",
            note_id,
            event.tenant_id,
            event=event,
            fields=pick(event.section("note"), NOTE_FIELDS),
        )

    async def handle_campaign(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        await ctx.projector.record_event(
            "campaign_events",
            event,
            {"type": event.event_type, "campaign_id": event.get("campaignId", "id"), "payload": event.data},
        )

    async def handle_user(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        if event.event_type not in ("UserCreate", "UserUpdate", "UserDelete"):
            await store_unhandled(event, ctx)

        user_id = _entity_id(event, "user")
        if event.event_type == "UserDelete":
            await ctx.projector.soft_delete(
                "users", user_id, event.tenant_id, event=event, extra={"is_active": False}
            )
            return

        await ctx.projector.upsert(
            "users",
            user_id,
            event.tenant_id,
            event=event,
            fields=pick(event.section("user"), USER_FIELDS),
        )

    async def handle_location(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        if event.event_type not in ("LocationCreate", "LocationUpdate"):
            await store_unhandled(event, ctx)

        location = event.section("location")
        location_id = location.get("id") or event.get("locationId")
        if not location_id:
            raise ValidationError(f"{event.event_type} is missing the location id", event_type=event.event_type)

        await ctx.projector.upsert(
            "locations",
            location_id,
            None,
            event=event,
            fields=pick(location, LOCATION_FIELDS),
        )

    async def handle_custom_object(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        await ctx.projector.record_event(
            "custom_object_events",
            event,
            {
                "type": event.event_type,
                "object_key": event.get("objectKey", "schemaKey", "key"),
                "record_id": event.get("recordId", "id"),
                "payload": event.data,
            },
        )

    async def handle_association(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        await ctx.projector.record_event(
            "association_events",
            event,
            {
                "type": event.event_type,
                "association_id": event.get("associationId", "id"),
                "payload": event.data,
            },
        )
