"""
Metric Sample Store
Append-only `webhook_metrics` collection read by the SLA aggregator.
"""
import datetime as dt
from typing import Any, List, Optional

from pydantic import ValidationError

from ..models.metrics import MetricSample
from ..utils.observability import logger
from .base import BaseRepository


class MetricsRepository(BaseRepository[MetricSample]):
    """Samples are inserted once and never updated."""

    def __init__(self, database: Any):
        super().__init__(database, "webhook_metrics", MetricSample)

    async def record(self, sample: MetricSample) -> str:
        return await self.insert(sample)

    async def find_since(
        self,
        since: dt.datetime,
        queue_type: Optional[str] = None,
        limit: int = 10_000,
    ) -> List[MetricSample]:
        """
        Samples completed at or after `since`, newest first.

        Partial documents (e.g. written by an older version) are skipped.
        """
        query: dict = {"completed_at": {"$gte": since}}
        if queue_type:
            query["queue_type"] = str(queue_type)

        cursor = self.collection.find(query).sort([("completed_at", -1)]).limit(limit)
        samples = []
        skipped = 0
        for doc in await cursor.to_list(length=limit):
            try:
                samples.append(self._to_model(doc))
            except ValidationError:
                skipped += 1

        if skipped:
            logger.warning(f"Skipped {skipped} unreadable metric samples", extra={"since": since.isoformat()})
        return samples
