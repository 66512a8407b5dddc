"""
Tests for webhook ingestion: validation, classification and idempotency.
"""
import datetime as dt

import pytest

from crm_sync.errors import ValidationError
from crm_sync.models.queue import QueueStatus, QueueType
from crm_sync.pipeline.ingestion import (
    IngestionService,
    envelope_from_native,
    fingerprint,
    parse_envelope,
)
from crm_sync.repositories import DiscoveryRepository
from crm_sync.utils.metrics import metrics

NOW = dt.datetime(2026, 1, 15, 12, 0, tzinfo=dt.UTC)


@pytest.fixture
def discovery_repo(storage):
    return DiscoveryRepository(storage.database)


@pytest.fixture
def service(queue_repo, discovery_repo):
    return IngestionService(queue_repo, discovery_repo, max_attempts=3)


class TestParseEnvelope:
    """Tests for envelope validation."""

    def test_valid_envelope(self):
        envelope = parse_envelope({
            "eventId": "evt-1",
            "tenantId": "loc-1",
            "eventType": "ContactCreate",
            "payload": {"id": "c1"},
        })

        assert envelope.event_id == "evt-1"
        assert envelope.payload == {"id": "c1"}

    @pytest.mark.parametrize("body", [
        {"tenantId": "loc-1", "eventType": "ContactCreate"},
        {"eventId": "", "tenantId": "loc-1", "eventType": "ContactCreate"},
        {"eventId": "evt-1", "tenantId": "   ", "eventType": "ContactCreate"},
        {"eventId": "evt-1", "tenantId": "loc-1"},
    ])
    def test_missing_identity_is_rejected(self, body):
        """Blank or missing eventId/tenantId/eventType is a validation error."""
        with pytest.raises(ValidationError):
            parse_envelope(body)

    def test_non_object_body_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_envelope(["not", "an", "object"])


class TestIngest:
    """Tests for IngestionService.ingest."""

    async def test_stores_pending_item_on_routed_queue(self, service, queue_repo):
        """A new event becomes a pending item with the routed priority."""
        envelope = parse_envelope({"eventId": "evt-1", "tenantId": "loc-1", "eventType": "InvoicePaid", "payload": {}})

        result = await service.ingest(envelope, now=NOW)

        item = await queue_repo.get("loc-1", "evt-1")
        assert result.duplicate is False
        assert result.queue_type == QueueType.FINANCIAL
        assert item.status == QueueStatus.PENDING
        assert item.priority == 2
        assert item.attempts == 0
        assert item.next_retry_at == NOW

    async def test_duplicate_delivery_is_acknowledged_not_stored(self, service, queue_repo):
        """Redelivery reports duplicate and leaves one item."""
        envelope = parse_envelope({"eventId": "evt-1", "tenantId": "loc-1", "eventType": "InvoicePaid"})

        await service.ingest(envelope, now=NOW)
        result = await service.ingest(envelope, now=NOW + dt.timedelta(seconds=5))

        assert result.accepted is True
        assert result.duplicate is True
        assert await queue_repo.count() == 1
        assert metrics.webhooks_received.value(queue_type="financial", outcome="duplicate") == 1

    async def test_unknown_type_is_kept_and_discovered(self, service, queue_repo, discovery_repo):
        """Unknown types land on general and are counted for discovery."""
        for i in range(2):
            envelope = parse_envelope({"eventId": f"evt-{i}", "tenantId": "loc-1", "eventType": "SomeNewType"})
            result = await service.ingest(envelope, now=NOW)

        discovered = await discovery_repo.list_types()
        assert result.queue_type == QueueType.GENERAL
        assert result.recognized is False
        assert await queue_repo.count() == 2
        assert discovered[0]["event_type"] == "SomeNewType"
        assert discovered[0]["count"] == 2


class TestNativeEnvelope:
    """Tests for adapting native platform bodies."""

    def test_uses_webhook_id_when_present(self):
        envelope = envelope_from_native(
            {"type": "ContactCreate", "locationId": "loc-1", "webhookId": "wh-1", "id": "c1"},
            now=NOW,
        )

        assert envelope.event_id == "wh-1"
        assert envelope.tenant_id == "loc-1"
        assert envelope.event_type == "ContactCreate"
        assert envelope.payload["id"] == "c1"

    def test_fingerprint_is_stable_for_identical_bodies(self):
        """Bodies without a webhook id dedupe by content."""
        body = {"type": "ContactCreate", "locationId": "loc-1", "id": "c1"}
        reordered = {"id": "c1", "locationId": "loc-1", "type": "ContactCreate"}

        first = envelope_from_native(body, now=NOW)
        second = envelope_from_native(reordered, now=NOW)

        assert first.event_id == second.event_id == fingerprint(body)

    def test_reads_wrapped_body(self):
        """Identity may sit inside webhookPayload."""
        envelope = envelope_from_native(
            {"webhookPayload": {"type": "InvoicePaid", "locationId": "loc-1", "webhookId": "wh-2"}},
            now=NOW,
        )

        assert (envelope.event_id, envelope.tenant_id, envelope.event_type) == ("wh-2", "loc-1", "InvoicePaid")

    def test_company_id_is_tenant_fallback(self):
        envelope = envelope_from_native({"type": "INSTALL", "companyId": "co-1", "webhookId": "wh-3"}, now=NOW)

        assert envelope.tenant_id == "co-1"

    def test_stale_timestamp_is_rejected(self):
        """Bodies older than the replay window are refused."""
        body = {
            "type": "ContactCreate",
            "locationId": "loc-1",
            "timestamp": (NOW - dt.timedelta(minutes=10)).isoformat(),
        }

        with pytest.raises(ValidationError, match="replay window"):
            envelope_from_native(body, now=NOW, max_age_seconds=300)

    def test_fresh_timestamp_is_accepted(self):
        body = {
            "type": "ContactCreate",
            "locationId": "loc-1",
            "timestamp": (NOW - dt.timedelta(seconds=30)).isoformat(),
        }

        assert envelope_from_native(body, now=NOW, max_age_seconds=300).tenant_id == "loc-1"

    def test_missing_tenant_is_rejected(self):
        with pytest.raises(ValidationError):
            envelope_from_native({"type": "ContactCreate", "id": "c1"}, now=NOW)
