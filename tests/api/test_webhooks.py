"""
Tests for webhook ingestion endpoints.
"""
import json

import pytest
from fastapi.testclient import TestClient

from crm_sync.api.main import create_app
from crm_sync.models.queue import QueueStatus
from crm_sync.repositories import QueueRepository
from crm_sync.utils.metrics import metrics
from crm_sync.utils.webhook_signature import WebhookSignatureValidator


@pytest.fixture
def envelope():
    return {
        "eventId": "evt-1",
        "tenantId": "loc-1",
        "eventType": "InvoicePaid",
        "payload": {"invoice": {"id": "inv-1", "amount": 100}},
    }


class TestEnvelopeWebhook:
    """Tests for /webhooks/events endpoint."""

    def test_valid_envelope_is_accepted(self, client, envelope, api_storage):
        """A valid envelope is queued and acknowledged with 202."""
        response = client.post("/webhooks/events", json=envelope)

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "accepted"
        assert data["queueType"] == "financial"
        assert data["duplicate"] is False

        item = client.portal.call(QueueRepository(api_storage.database).get, "loc-1", "evt-1")
        assert item.status == QueueStatus.PENDING

    def test_duplicate_is_acknowledged(self, client, envelope):
        """Redelivery is a 202 flagged as duplicate."""
        client.post("/webhooks/events", json=envelope)
        response = client.post("/webhooks/events", json=envelope)

        assert response.status_code == 202
        assert response.json()["duplicate"] is True

    def test_unknown_type_goes_to_general(self, client, envelope):
        envelope["eventType"] = "SomeNewType"

        response = client.post("/webhooks/events", json=envelope)

        assert response.status_code == 202
        assert response.json()["queueType"] == "general"

    @pytest.mark.parametrize("missing", ["eventId", "tenantId", "eventType"])
    def test_missing_field_is_rejected(self, client, envelope, missing):
        """Malformed envelopes are rejected with 400 and nothing is stored."""
        del envelope[missing]

        response = client.post("/webhooks/events", json=envelope)

        assert response.status_code == 400
        assert response.json()["status"] == "rejected"
        assert metrics.webhooks_rejected.value(reason="validation") == 1

    def test_invalid_json_is_rejected(self, client):
        response = client.post(
            "/webhooks/events", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert "JSON" in response.json()["error"]


class TestNativeWebhook:
    """Tests for /webhooks/native endpoint."""

    def test_native_body_is_accepted(self, client):
        response = client.post("/webhooks/native", json={
            "type": "ContactCreate",
            "locationId": "loc-1",
            "webhookId": "wh-1",
            "id": "c-1",
        })

        assert response.status_code == 202
        assert response.json()["eventId"] == "wh-1"
        assert response.json()["queueType"] == "contacts"

    def test_native_without_tenant_is_rejected(self, client):
        response = client.post("/webhooks/native", json={"type": "ContactCreate", "id": "c-1"})

        assert response.status_code == 400


class TestNativeSignature:
    """Tests for HMAC verification on /webhooks/native."""

    @pytest.fixture
    def signed_client(self, settings, api_storage, services):
        signed = settings.model_copy(update={
            "verify_webhook_signature": True,
            "webhook_signing_secret": "signing-secret",
        })
        with TestClient(create_app(settings=signed, storage=api_storage, services=services)) as client:
            yield client

    @pytest.fixture
    def body(self):
        return json.dumps({"type": "ContactCreate", "locationId": "loc-1", "webhookId": "wh-1"}).encode()

    def test_valid_signature_is_accepted(self, signed_client, body):
        signature = WebhookSignatureValidator("signing-secret").compute_signature(body)

        response = signed_client.post(
            "/webhooks/native",
            content=body,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": signature},
        )

        assert response.status_code == 202

    def test_missing_signature_is_401(self, signed_client, body):
        response = signed_client.post("/webhooks/native", content=body, headers={"Content-Type": "application/json"})

        assert response.status_code == 401
        assert metrics.webhooks_rejected.value(reason="missing_signature") == 1

    def test_wrong_signature_is_401(self, signed_client, body):
        signature = WebhookSignatureValidator("other-secret").compute_signature(body)

        response = signed_client.post(
            "/webhooks/native",
            content=body,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": signature},
        )

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid signature"

    def test_envelope_endpoint_is_not_signed(self, signed_client):
        response = signed_client.post("/webhooks/events", json={
            "eventId": "evt-1", "tenantId": "loc-1", "eventType": "ContactCreate",
        })

        assert response.status_code == 202
