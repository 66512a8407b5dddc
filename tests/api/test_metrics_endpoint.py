"""
Tests for the Prometheus metrics endpoint.
"""


class TestMetricsEndpoint:
    """Tests for /metrics endpoint."""

    def test_returns_prometheus_text(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "# TYPE crm_queue_items gauge" in response.text

    def test_reflects_ingestion_and_depth(self, client):
        client.post("/webhooks/events", json={
            "eventId": "evt-1", "tenantId": "loc-1", "eventType": "ContactCreate", "payload": {"id": "c-1"},
        })

        body = client.get("/metrics").text

        assert 'crm_webhooks_received_total{outcome="accepted",queue_type="contacts"} 1' in body
        assert 'crm_queue_items{queue_type="contacts",status="pending"} 1' in body
