"""
Tests for application assembly and lifespan wiring.
"""
from fastapi.testclient import TestClient

from crm_sync.api.main import create_app
from crm_sync.models.queue import QueueType
from crm_sync.pipeline.manager import QueueManager


class TestCreateApp:

    def test_routes_are_mounted(self, settings):
        paths = set(create_app(settings=settings).openapi()["paths"])

        assert {
            "/health",
            "/ready",
            "/webhooks/events",
            "/webhooks/native",
            "/cron/queues/{queue_type}/run",
            "/queues/{queue_type}/failed",
            "/queues/items/{tenant_id}/{event_id}/requeue",
            "/analytics/dashboard",
            "/analytics/unhandled",
            "/metrics",
        } <= paths

    def test_lifespan_wires_pipeline(self, client):
        """Every queue type has a processor once the app has started."""
        manager = client.app.state.queue_manager

        assert isinstance(manager, QueueManager)
        assert manager.registry.queue_types == frozenset(QueueType)

    def test_memory_backend_without_injected_storage(self, settings, services):
        """STORAGE_BACKEND=memory builds its own in-memory database."""
        with TestClient(create_app(settings=settings, services=services)) as client:
            response = client.post("/webhooks/events", json={
                "eventId": "evt-1", "tenantId": "loc-1", "eventType": "ContactCreate",
            })

            assert response.status_code == 202
            assert client.get("/ready").json()["storage"] == "memory"
