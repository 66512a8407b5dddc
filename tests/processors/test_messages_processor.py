"""
Tests for conversation messages and unread counts.
"""
import pytest

from crm_sync.errors import ValidationError
from crm_sync.processors.messages import MessagesProcessor


@pytest.fixture
def processor(deps):
    return MessagesProcessor(deps)


def message(direction, message_id, body="Hi, is Tuesday still good?"):
    return {
        "type": f"{direction}Message",
        "messageType": "SMS",
        "contactId": "c-1",
        "conversationId": "conv-1",
        "messageId": message_id,
        "body": body,
        "firstName": "Ada",
        "lastName": "Lovelace",
    }


async def get_conversation(storage):
    return await storage.database.conversations.find_one({"ghl_conversation_id": "conv-1"})


class TestUnreadCount:
    """Tests for unread accounting."""

    async def test_replayed_inbound_message_counts_once(self, processor, make_item, storage):
        item = make_item("InboundMessage", message("Inbound", "m-1"))

        await processor.process_item(item)
        await processor.process_item(item)

        conversation = await get_conversation(storage)
        assert conversation["unread_count"] == 1
        assert await storage.database.messages.count_documents({}) == 1

    async def test_each_new_inbound_message_increments(self, processor, make_item, storage):
        await processor.process_item(make_item("InboundMessage", message("Inbound", "m-1"), event_id="wh-1"))
        await processor.process_item(make_item("InboundMessage", message("Inbound", "m-2"), event_id="wh-2"))

        assert (await get_conversation(storage))["unread_count"] == 2

    async def test_outbound_message_leaves_unread_alone(self, processor, make_item, storage):
        await processor.process_item(make_item("InboundMessage", message("Inbound", "m-1"), event_id="wh-1"))
        await processor.process_item(make_item("OutboundMessage", message("Outbound", "m-2", "Yes!"), event_id="wh-2"))

        conversation = await get_conversation(storage)
        outbound = await storage.database.messages.find_one({"ghl_message_id": "m-2"})
        assert conversation["unread_count"] == 1
        assert conversation["last_message_direction"] == "outbound"
        assert outbound["read"] is True

    async def test_unread_update_sets_absolute_count(self, processor, make_item, storage):
        await processor.process_item(make_item("InboundMessage", message("Inbound", "m-1"), event_id="wh-1"))
        await processor.process_item(make_item("ConversationUnreadUpdate", {
            "conversationId": "conv-1", "unreadCount": 0,
        }, event_id="wh-2"))

        assert (await get_conversation(storage))["unread_count"] == 0


class TestMessageProjection:

    async def test_unknown_contact_is_created(self, processor, make_item, storage):
        """A message from a contact not yet synced creates a minimal contact."""
        await processor.process_item(make_item("InboundMessage", message("Inbound", "m-1")))

        contact = await storage.database.contacts.find_one({"ghl_contact_id": "c-1"})
        stored = await storage.database.messages.find_one({"ghl_message_id": "m-1"})
        assert contact["full_name"] == "Ada Lovelace"
        assert stored["contact_id"] == str(contact["_id"])
        assert stored["direction"] == "inbound"
        assert stored["read"] is False

    async def test_missing_contact_id_is_rejected(self, processor, make_item):
        payload = message("Inbound", "m-1")
        del payload["contactId"]

        with pytest.raises(ValidationError):
            await processor.process_item(make_item("InboundMessage", payload))


class TestMalformedPayloads:
    """Malformed fields fail validation instead of looking transient."""

    @pytest.mark.parametrize("count", ["lots", {"value": 3}, [], True, -1])
    async def test_malformed_unread_count(self, processor, make_item, count):
        payload = {"conversationId": "conv-1", "unreadCount": count}

        with pytest.raises(ValidationError, match="unreadCount"):
            await processor.process_item(make_item("ConversationUnreadUpdate", payload))

    async def test_numeric_string_unread_count(self, processor, make_item, storage):
        await processor.process_item(make_item("ConversationUnreadUpdate", {
            "conversationId": "conv-1", "unreadCount": "4",
        }))

        assert (await get_conversation(storage))["unread_count"] == 4

    async def test_non_string_body_writes_nothing(self, processor, make_item, storage):
        payload = message("Inbound", "m-1", body={"text": "Hi"})

        with pytest.raises(ValidationError, match="body"):
            await processor.process_item(make_item("InboundMessage", payload))

        assert await storage.database.messages.count_documents({}) == 0
        assert await storage.database.contacts.count_documents({}) == 0
