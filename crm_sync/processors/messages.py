"""
Messages Processor

Inbound/outbound conversation messages and email delivery stats. Messages
have the tightest latency target of any queue.
"""
from typing import Any, Dict

from crm_sync.errors import ValidationError
from crm_sync.models.events import NormalizedEvent
from crm_sync.models.queue import QueueType
from crm_sync.processors.appointments import find_active_project
from crm_sync.processors.base import BaseProcessor, HandlerContext, HandlerRegistry
from crm_sync.processors.projector import parse_timestamp

CONVERSATION_TYPES = {
    1: "TYPE_PHONE",
    3: "TYPE_EMAIL",
    4: "TYPE_WHATSAPP",
    5: "TYPE_GMB",
    6: "TYPE_FB",
    7: "TYPE_IG",
}

MESSAGE_TYPE_NAMES = {
    1: "SMS",
    3: "Email",
    4: "WhatsApp",
    5: "Google My Business",
    6: "Facebook",
    7: "Instagram",
    24: "Activity - Appointment",
    25: "Activity - Contact",
    26: "Activity - Invoice",
    27: "Activity - Opportunity",
}

PREVIEW_LENGTH = 200


def message_text(message: Dict[str, Any], event_type: str) -> str:
    """Message body as text; a non-string body is malformed."""
    body = message.get("body")
    if body is None:
        return ""
    if not isinstance(body, str):
        raise ValidationError(f"{event_type} message body must be a string", event_type=event_type)
    return body


def unread_count(event: NormalizedEvent) -> int:
    value = event.get("unreadCount", default=0)
    if isinstance(value, bool):
        value = None
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise ValidationError(
            f"{event.event_type} has a non-numeric unreadCount: {value!r}", event_type=event.event_type
        ) from None
    if count < 0:
        raise ValidationError(f"{event.event_type} has a negative unreadCount", event_type=event.event_type)
    return count


def message_body_fields(message: Dict[str, Any]) -> Dict[str, Any]:
    """Channel-specific message content."""
    kind = message.get("type")
    fields: Dict[str, Any] = {}

    if kind == 3:
        fields["subject"] = message.get("subject") or "No subject"
        email_ids = ((message.get("meta") or {}).get("email") or {}).get("messageIds") or []
        if email_ids:
            fields["email_message_id"] = email_ids[0]
            fields["needs_content_fetch"] = True
        else:
            fields["body"] = message.get("body") or ""
            if message.get("htmlBody"):
                fields["html_body"] = message["htmlBody"]
        return fields

    fields["body"] = message.get("body") or ""
    if kind == 1:
        fields["segments"] = message.get("segments") or 1
    elif kind == 4:
        fields["media_url"] = message.get("mediaUrl")
        fields["media_type"] = message.get("mediaType")
    elif message.get("meta"):
        fields["meta"] = message["meta"]
    return fields


class MessagesProcessor(BaseProcessor):
    queue_type = QueueType.MESSAGES

    def build_registry(self) -> HandlerRegistry:
        return (
            HandlerRegistry("messages")
            .register(self.handle_message, "InboundMessage", "OutboundMessage")
            .register(self.handle_unread_update, "ConversationUnreadUpdate")
            .register(self.handle_email_stats, "LCEmailStats")
        )

    async def handle_message(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        inbound = event.event_type == "InboundMessage"
        contact_ghl_id = event.require("contactId")
        message = event.get("message")
        if not isinstance(message, dict):
            # Flat delivery: the event body is the message
            message = event.data
        message_id = message.get("id") or event.get("messageId")
        if not message_id:
            raise ValidationError(f"{event.event_type} is missing the message id", event_type=event.event_type)
        body = message_text(message, event.event_type)

        conversation_id = event.get("conversationId") or message.get("conversationId")
        sent_at = parse_timestamp(message.get("dateAdded") or event.get("dateAdded")) or event.received_at
        kind = message.get("type") if isinstance(message.get("type"), int) else event.get("messageType")
        direction = "inbound" if inbound else "outbound"

        async with ctx.transaction() as session:
            contact = await ctx.projector.find("contacts", contact_ghl_id, event.tenant_id, session=session)
            if contact is None:
                await ctx.projector.upsert(
                    "contacts",
                    contact_ghl_id,
                    event.tenant_id,
                    event=event,
                    insert_fields={
                        "first_name": event.get("firstName", default=""),
                        "last_name": event.get("lastName", default=""),
                        "full_name": f"{event.get('firstName', default='')} {event.get('lastName', default='')}".strip() or "Unknown",
                        "email": event.get("email", default=""),
                        "phone": event.get("phone", default=""),
                        "source": "message_webhook",
                    },
                    session=session,
                )
                contact = await ctx.projector.find("contacts", contact_ghl_id, event.tenant_id, session=session)

            message_fields = {
                "ghl_conversation_id": conversation_id,
                "contact_id": str(contact["_id"]),
                "ghl_contact_id": contact_ghl_id,
                "type": kind,
                "message_type": message.get("messageType") or MESSAGE_TYPE_NAMES.get(kind, f"Type {kind}"),
                "direction": direction,
                "date_added": sent_at,
                "status": message.get("status") or ("received" if inbound else "sent"),
                **message_body_fields(message),
            }
            if not inbound and event.get("userId"):
                message_fields["ghl_user_id"] = event.get("userId")

            project = await find_active_project(ctx, event.tenant_id, contact_ghl_id, session=session)
            if project is not None:
                message_fields["project_id"] = str(project["_id"])

            result = await ctx.projector.upsert(
                "messages",
                message_id,
                event.tenant_id,
                event=event,
                fields=message_fields,
                insert_fields={"read": not inbound},
                session=session,
            )

            if not conversation_id:
                return

            conversation_fields = {
                "contact_id": str(contact["_id"]),
                "ghl_contact_id": contact_ghl_id,
                "type": CONVERSATION_TYPES.get(kind, "TYPE_OTHER"),
                "last_message_date": sent_at,
                "last_message_body": body[:PREVIEW_LENGTH],
                "last_message_type": message_fields["message_type"],
                "last_message_direction": direction,
                "contact_name": contact.get("full_name"),
                "contact_email": contact.get("email"),
                "contact_phone": contact.get("phone"),
            }
            if not inbound:
                conversation_fields["last_outbound_message_date"] = sent_at

            await ctx.projector.upsert(
                "conversations",
                conversation_id,
                event.tenant_id,
                event=event,
                fields=conversation_fields,
                insert_fields={"unread_count": 0},
                session=session,
            )

            # Only a newly stored inbound message counts as unread
            if inbound and result.created:
                await ctx.db.conversations.update_one(
                    ctx.projector.anchor("conversations", conversation_id, event.tenant_id),
                    {"$inc": {"unread_count": 1}},
                    session=session,
                )

    async def handle_unread_update(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        conversation_id = event.require("conversationId", "id", label="conversationId")
        await ctx.projector.upsert(
            "conversations",
            conversation_id,
            event.tenant_id,
            event=event,
            fields={"unread_count": unread_count(event)},
        )

    async def handle_email_stats(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        email_id = event.require("id", "emailId", label="id")
        status = event.require("event")
        details = event.get("message") if isinstance(event.get("message"), dict) else event.data
        occurred_at = parse_timestamp(event.get("timestamp")) or event.received_at

        async with ctx.transaction() as session:
            await ctx.projector.record_event(
                "email_stats",
                event,
                {
                    "email_id": email_id,
                    "event": status,
                    "timestamp": occurred_at,
                    "recipient": details.get("recipient"),
                    "recipient_domain": details.get("recipient-domain"),
                    "recipient_provider": details.get("recipient-provider"),
                    "tags": details.get("tags") or [],
                    "campaigns": details.get("campaigns") or [],
                    "delivery_status": details.get("delivery-status"),
                    "payload": event.data,
                },
                session=session,
            )
            await ctx.db.messages.update_many(
                {"email_message_id": email_id, "location_id": event.tenant_id},
                {
                    "$set": {
                        "email_status": status,
                        "email_status_updated_at": occurred_at,
                        f"email_events.{status}": occurred_at,
                    }
                },
                session=session,
            )
