"""
Tests for the catch-all general queue.
"""
import datetime as dt

import pytest

from crm_sync.errors import UnsupportedEventError
from crm_sync.models.queue import QueueStatus, QueueType
from crm_sync.pipeline.ingestion import IngestionService, parse_envelope
from crm_sync.pipeline.manager import QueueManager
from crm_sync.pipeline.retry import RetryPolicy
from crm_sync.processors.general import GeneralProcessor
from crm_sync.processors.registry import ProcessorRegistry

T0 = dt.datetime(2026, 1, 15, 12, 0, tzinfo=dt.UTC)


@pytest.fixture
def processor(deps):
    return GeneralProcessor(deps)


class TestUnhandled:
    """Tests for event types nobody handles."""

    async def test_unknown_type_is_stored_and_unsupported(self, processor, make_item, storage):
        with pytest.raises(UnsupportedEventError):
            await processor.process_item(make_item("SomeNewType", {"locationId": "loc-1", "foo": "bar"}))

        stored = await storage.database.unhandled_webhooks.find_one({"webhook_id": "evt-1"})
        assert stored["type"] == "SomeNewType"
        assert stored["payload"]["foo"] == "bar"

    async def test_unknown_type_fails_without_retry(self, processor, queue_repo, settings):
        """Through the manager the item fails once with kind unsupported."""
        await IngestionService(queue_repo, max_attempts=3).ingest(
            parse_envelope({"eventId": "evt-1", "tenantId": "loc-1", "eventType": "SomeNewType"}), now=T0
        )
        manager = QueueManager(
            queue_repo, ProcessorRegistry([processor]), retry_policy=RetryPolicy(60, 3600),
            settings=settings, clock=lambda: T0,
        )

        summary = await manager.run_batch(QueueType.GENERAL)

        item = await queue_repo.get("loc-1", "evt-1")
        assert summary.items_failed == 1
        assert item.status == QueueStatus.FAILED
        assert item.error_kind == "unsupported"
        assert item.attempts == 1

    async def test_unknown_subtype_in_known_family(self, processor, make_item, storage):
        with pytest.raises(UnsupportedEventError):
            await processor.process_item(make_item("TaskReassigned", {"task": {"id": "t-1"}}))

        assert await storage.database.unhandled_webhooks.count_documents({}) == 1


class TestFamilies:
    """Tests for prefix and substring dispatch."""

    async def test_task_complete_before_create_stays_completed(self, processor, make_item, storage):
        await processor.process_item(make_item("TaskComplete", {"task": {"id": "t-1"}}, event_id="wh-2"))
        await processor.process_item(make_item("TaskCreate", {"task": {"id": "t-1", "title": "Call back"}}, event_id="wh-1"))

        task = await storage.database.tasks.find_one({"ghl_task_id": "t-1"})
        assert task["status"] == "completed"
        assert task["title"] == "Call back"

    async def test_note_and_delete(self, processor, make_item, storage):
        await processor.process_item(make_item("NoteCreate", {"note": {"id": "n-1", "body": "Measured"}}, event_id="wh-1"))
        await processor.process_item(make_item("NoteDelete", {"note": {"id": "n-1"}}, event_id="wh-2"))

        note = await storage.database.notes.find_one({"ghl_note_id": "n-1"})
        assert note["body"] == "Measured"
        assert note["deleted"] is True

    async def test_custom_object_events_are_logged(self, processor, make_item, storage):
        await processor.process_item(make_item("ObjectRecordCreate", {"objectKey": "custom_objects.pets", "id": "r-1"}))

        logged = await storage.database.custom_object_events.find_one({"webhook_id": "evt-1"})
        assert logged["object_key"] == "custom_objects.pets"
        assert logged["record_id"] == "r-1"

    async def test_opportunity_on_general_queue(self, processor, make_item, storage):
        await processor.process_item(make_item("OpportunityCreate", {"opportunity": {"id": "opp-1", "name": "Patio"}}))

        assert (await storage.database.projects.find_one({"ghl_opportunity_id": "opp-1"}))["title"] == "Patio"
