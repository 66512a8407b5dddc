"""
Appointments Processor
"""
from typing import Any, Dict, Optional

from crm_sync.errors import ValidationError
from crm_sync.models.entities import ProjectStatus, TimelineEntry
from crm_sync.models.events import NormalizedEvent
from crm_sync.models.queue import QueueType
from crm_sync.processors.base import BaseProcessor, HandlerContext, HandlerRegistry
from crm_sync.processors.projector import parse_timestamp, pick

APPOINTMENT_FIELDS = {
    "title": "title",
    "calendarId": "calendar_id",
    "groupId": "group_id",
    "appointmentStatus": "appointment_status",
    "assignedUserId": "assigned_user_id",
    "users": "users",
    "notes": "notes",
    "source": "source",
    "address": "address",
    "contactId": "ghl_contact_id",
}


async def find_active_project(ctx: HandlerContext, tenant_id: str, contact_ghl_id: str, session: Any = None) -> Optional[Dict[str, Any]]:
    """Most recently updated open project for a contact."""
    cursor = ctx.db.projects.find(
        {
            "ghl_contact_id": contact_ghl_id,
            "location_id": tenant_id,
            "status": ProjectStatus.OPEN.value,
            "deleted": {"$ne": True},
        },
        sort=[("updated_at", -1)],
        limit=1,
        session=session,
    )
    projects = await cursor.to_list(length=1)
    return projects[0] if projects else None


class AppointmentsProcessor(BaseProcessor):
    queue_type = QueueType.APPOINTMENTS

    def build_registry(self) -> HandlerRegistry:
        return (
            HandlerRegistry("appointments")
            .register(self.handle_create, "AppointmentCreate")
            .register(self.handle_update, "AppointmentUpdate")
            .register(self.handle_delete, "AppointmentDelete")
        )

    @staticmethod
    def _appointment(event: NormalizedEvent) -> tuple[Dict[str, Any], str]:
        appointment = event.section("appointment")
        appointment_id = appointment.get("id") or event.get("appointmentId")
        if not appointment_id:
            raise ValidationError(f"{event.event_type} is missing the appointment id", event_type=event.event_type)
        return appointment, appointment_id

    @staticmethod
    def _fields(appointment: Dict[str, Any]) -> Dict[str, Any]:
        fields = pick(appointment, APPOINTMENT_FIELDS)
        for key, name in (("startTime", "start_time"), ("endTime", "end_time")):
            if appointment.get(key):
                fields[name] = parse_timestamp(appointment.get(key))
        return fields

    async def handle_create(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        appointment, appointment_id = self._appointment(event)
        fields = self._fields(appointment)
        contact_ghl_id = appointment.get("contactId")

        async with ctx.transaction() as session:
            if contact_ghl_id:
                contact = await ctx.projector.find("contacts", contact_ghl_id, event.tenant_id, session=session)
                if contact is not None:
                    fields["contact_id"] = str(contact["_id"])

            await ctx.projector.upsert(
                "appointments",
                appointment_id,
                event.tenant_id,
                event=event,
                fields=fields,
                insert_fields={
                    "title": "Appointment",
                    "source": "webhook",
                    "date_added": parse_timestamp(appointment.get("dateAdded")) or event.received_at,
                },
                session=session,
            )

            if not contact_ghl_id:
                return

            project = await find_active_project(ctx, event.tenant_id, contact_ghl_id, session=session)
            if project is None:
                return

            title = appointment.get("title") or "Appointment"
            await ctx.projector.append_timeline(
                event.tenant_id,
                project["ghl_opportunity_id"],
                TimelineEntry.for_webhook(
                    event.event_id,
                    "appointment_scheduled",
                    f"{title} scheduled",
                    event.received_at,
                    cause=event.event_type,
                    metadata={
                        "appointment_id": appointment_id,
                        "start_time": appointment.get("startTime"),
                    },
                ),
                session=session,
            )

    async def handle_update(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        appointment, appointment_id = self._appointment(event)

        result = await ctx.projector.upsert(
            "appointments",
            appointment_id,
            event.tenant_id,
            event=event,
            fields=self._fields(appointment),
            upsert=False,
        )
        if not result.matched:
            await self.handle_create(event, ctx)

    async def handle_delete(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        _, appointment_id = self._appointment(event)
        await ctx.projector.soft_delete(
            "appointments",
            appointment_id,
            event.tenant_id,
            event=event,
            extra={"appointment_status": "cancelled", "deleted_by_webhook": event.event_id},
        )
