"""
Tests for the per-item metrics recorder.
"""
import datetime as dt
from unittest.mock import AsyncMock

import pytest

from crm_sync.analytics.recorder import MetricsRecorder
from crm_sync.models.queue import QueueType
from crm_sync.repositories import MetricsRepository
from crm_sync.utils.metrics import metrics

T0 = dt.datetime(2026, 1, 15, 12, 0, tzinfo=dt.UTC)


class TestMetricsRecorder:

    @pytest.fixture
    def metrics_repo(self, storage):
        return MetricsRepository(storage.database)

    async def test_sample_timings(self, metrics_repo, make_item):
        """wait, processing and total are measured from received/claimed/completed."""
        recorder = MetricsRecorder(metrics_repo)
        item = make_item("InboundMessage", {}, received_at=T0)

        sample = await recorder.record(
            item,
            claimed_at=T0 + dt.timedelta(milliseconds=300),
            completed_at=T0 + dt.timedelta(milliseconds=500),
            outcome="completed",
        )

        assert sample.wait_ms == pytest.approx(300)
        assert sample.processing_ms == pytest.approx(200)
        assert sample.total_ms == pytest.approx(500)
        assert sample.attempt == 1
        assert len(await metrics_repo.find_since(T0)) == 1
        assert metrics.items_processed.value(queue_type="messages", outcome="completed") == 1

    async def test_failed_attempt_is_recorded_as_unsuccessful(self, metrics_repo, make_item):
        recorder = MetricsRecorder(metrics_repo)

        sample = await recorder.record(
            make_item("InboundMessage", {}, attempts=1),
            claimed_at=T0,
            completed_at=T0,
            outcome="retried",
            error="timeout",
            error_kind="transient",
        )

        assert sample.success is False
        assert sample.attempt == 2
        assert metrics.items_processed.value(queue_type="messages", outcome="retried") == 1

    async def test_storage_failure_does_not_raise(self, make_item):
        """A lost sample is logged; the item outcome stands."""
        repo = AsyncMock()
        repo.record = AsyncMock(side_effect=RuntimeError("disk full"))

        sample = await MetricsRecorder(repo).record(
            make_item("InboundMessage", {}), claimed_at=T0, completed_at=T0, outcome="completed"
        )

        assert sample.success is True

    async def test_refresh_queue_depth(self, metrics_repo, queue_repo, make_item):
        await queue_repo.insert_if_absent(make_item("InboundMessage", {}))

        await MetricsRecorder(metrics_repo, queue_repo).refresh_queue_depth(QueueType.MESSAGES)

        assert metrics.queue_depth.value(queue_type="messages", status="pending") == 1
        assert metrics.queue_depth.value(queue_type="messages", status="failed") == 0
