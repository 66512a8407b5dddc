"""
Metrics Recorder

Writes one MetricSample per processed queue item and mirrors it into the
in-process Prometheus registry.
"""
import datetime as dt
from typing import Optional

from crm_sync.models.base import ensure_utc
from crm_sync.models.metrics import MetricSample
from crm_sync.models.queue import QueueItem, QueueType
from crm_sync.repositories.metrics import MetricsRepository
from crm_sync.repositories.queue import QueueRepository
from crm_sync.utils.metrics import metrics
from crm_sync.utils.observability import logger


def _ms(start: Optional[dt.datetime], end: Optional[dt.datetime]) -> float:
    if start is None or end is None:
        return 0.0
    return max((ensure_utc(end) - ensure_utc(start)).total_seconds() * 1000, 0.0)


class MetricsRecorder:

    def __init__(self, metrics_repo: MetricsRepository, queue_repo: Optional[QueueRepository] = None):
        self.metrics_repo = metrics_repo
        self.queue_repo = queue_repo

    async def record(
        self,
        item: QueueItem,
        *,
        claimed_at: dt.datetime,
        completed_at: dt.datetime,
        outcome: str,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
    ) -> MetricSample:
        """
        Record one processing attempt.

        Args:
            outcome: completed, retried or failed
        """
        sample = MetricSample(
            event_id=item.event_id,
            tenant_id=item.tenant_id,
            queue_type=str(item.queue_type),
            event_type=item.event_type,
            attempt=item.attempts + 1,
            received_at=item.received_at,
            claimed_at=claimed_at,
            completed_at=completed_at,
            wait_ms=_ms(item.received_at, claimed_at),
            processing_ms=_ms(claimed_at, completed_at),
            total_ms=_ms(item.received_at, completed_at),
            success=outcome == "completed",
            error=error,
            error_kind=error_kind,
        )

        queue_type = str(item.queue_type)
        metrics.items_processed.inc(queue_type=queue_type, outcome=outcome)
        metrics.processing_duration.observe(sample.processing_ms / 1000, queue_type=queue_type)
        if sample.success:
            metrics.end_to_end_latency.observe(sample.total_ms / 1000, queue_type=queue_type)

        try:
            await self.metrics_repo.record(sample)
        except Exception as e:
            # Losing a sample must not change the item's outcome
            logger.error(
                f"Failed to store metric sample: {e}",
                extra={"event_id": item.event_id, "queue_type": queue_type}
            )
        return sample

    async def refresh_queue_depth(self, queue_type: QueueType) -> None:
        """Update the depth gauges for one queue."""
        if self.queue_repo is None:
            return
        stats = await self.queue_repo.stats(queue_type)
        for status in ("pending", "processing", "completed", "failed"):
            metrics.queue_depth.set(getattr(stats, status), queue_type=str(queue_type), status=status)
