"""
Queue Store

Durable webhook queue on the `webhook_queue` collection. Every status change
is a single conditional update guarded by the current status (and, for
claimed items, by the claiming run), so concurrent runs never both own an
item.
"""
import datetime as dt
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from ..models.queue import QueueItem, QueueStats, QueueStatus, QueueType
from ..utils.observability import logger
from .base import BaseRepository

_CLAIM_ORDER = [("priority", 1), ("received_at", 1)]


class QueueRepository(BaseRepository[QueueItem]):
    """Persistence and state transitions for queue items."""

    def __init__(self, database: Any):
        super().__init__(database, "webhook_queue", QueueItem)

    @staticmethod
    def _key(item: QueueItem) -> Dict[str, Any]:
        return {"_id": ObjectId(item.id)}

    # ============================================
    # INGESTION
    # ============================================

    async def insert_if_absent(self, item: QueueItem, session: Any = None) -> bool:
        """
        Insert `item` unless (event_id, tenant_id) already exists.

        Returns:
            True if a new item was stored, False for a duplicate
        """
        doc = self._to_document(item)
        doc.pop("event_id", None)
        doc.pop("tenant_id", None)

        try:
            result = await self.collection.update_one(
                {"event_id": item.event_id, "tenant_id": item.tenant_id},
                {"$setOnInsert": doc},
                upsert=True,
                session=session,
            )
        except DuplicateKeyError:
            # Lost an insert race against an identical delivery
            return False

        return result.upserted_id is not None

    async def get(self, tenant_id: str, event_id: str) -> Optional[QueueItem]:
        return await self.find_one({"event_id": event_id, "tenant_id": tenant_id})

    # ============================================
    # CLAIM & OUTCOMES
    # ============================================

    async def claim_next(self, queue_type: QueueType, run_id: str, now: dt.datetime) -> Optional[QueueItem]:
        """
        Atomically move the next eligible pending item to processing.

        Eligible means pending with `next_retry_at <= now`; ordering is by
        priority then arrival.
        """
        target = QueueStatus.PENDING.transition_to(QueueStatus.PROCESSING)
        doc = await self.collection.find_one_and_update(
            {
                "queue_type": str(queue_type),
                "status": QueueStatus.PENDING.value,
                "next_retry_at": {"$lte": now},
            },
            {
                "$set": {
                    "status": target.value,
                    "processing_started_at": now,
                    "claimed_by": run_id,
                    "updated_at": now,
                }
            },
            sort=_CLAIM_ORDER,
            return_document=ReturnDocument.AFTER,
        )
        return self._to_model(doc) if doc else None

    async def _transition(
        self,
        item: QueueItem,
        target: QueueStatus,
        claimed_by: Optional[str],
        fields: Dict[str, Any],
        unset: Optional[List[str]] = None,
    ) -> bool:
        current = QueueStatus(item.status)
        target = current.transition_to(target)

        guard: Dict[str, Any] = {**self._key(item), "status": current.value}
        if claimed_by is not None:
            guard["claimed_by"] = claimed_by

        update: Dict[str, Any] = {"$set": {"status": target.value, **fields}}
        if unset:
            update["$unset"] = {name: "" for name in unset}

        result = await self.collection.update_one(guard, update)
        if result.matched_count == 0:
            logger.warning(
                "Queue item no longer in expected state",
                extra={"event_id": item.event_id, "expected": current.value, "target": target.value}
            )
            return False
        return True

    async def mark_completed(self, item: QueueItem, run_id: str, now: dt.datetime) -> bool:
        return await self._transition(
            item,
            QueueStatus.COMPLETED,
            run_id,
            {"completed_at": now, "updated_at": now},
        )

    async def schedule_retry(
        self,
        item: QueueItem,
        run_id: Optional[str],
        *,
        attempts: int,
        next_retry_at: dt.datetime,
        error: str,
        error_kind: str,
        now: dt.datetime,
    ) -> bool:
        return await self._transition(
            item,
            QueueStatus.PENDING,
            run_id,
            {
                "attempts": attempts,
                "next_retry_at": next_retry_at,
                "last_error": error,
                "error_kind": error_kind,
                "updated_at": now,
            },
            unset=["processing_started_at", "claimed_by"],
        )

    async def mark_failed(
        self,
        item: QueueItem,
        run_id: Optional[str],
        *,
        attempts: int,
        error: str,
        error_kind: str,
        now: dt.datetime,
    ) -> bool:
        return await self._transition(
            item,
            QueueStatus.FAILED,
            run_id,
            {
                "attempts": attempts,
                "failed_at": now,
                "last_error": error,
                "error_kind": error_kind,
                "updated_at": now,
            },
        )

    async def find_expired_claims(self, queue_type: QueueType, cutoff: dt.datetime, limit: int = 100) -> List[QueueItem]:
        """Processing items whose claim was taken before `cutoff`."""
        return await self.find_many(
            {
                "queue_type": str(queue_type),
                "status": QueueStatus.PROCESSING.value,
                "processing_started_at": {"$lt": cutoff},
            },
            limit=limit,
            sort=[("processing_started_at", 1)],
        )

    # ============================================
    # OPERATOR ACTIONS
    # ============================================

    async def requeue(self, tenant_id: str, event_id: str, now: dt.datetime) -> Optional[QueueItem]:
        """
        Resurrect a permanently failed item. The only path out of `failed`.

        Returns:
            The requeued item, or None if no failed item matched
        """
        target = QueueStatus.FAILED.transition_to(QueueStatus.PENDING)
        doc = await self.collection.find_one_and_update(
            {"event_id": event_id, "tenant_id": tenant_id, "status": QueueStatus.FAILED.value},
            {
                "$set": {
                    "status": target.value,
                    "attempts": 0,
                    "next_retry_at": now,
                    "updated_at": now,
                },
                "$unset": {"failed_at": "", "claimed_by": "", "processing_started_at": ""},
            },
            return_document=ReturnDocument.AFTER,
        )
        return self._to_model(doc) if doc else None

    async def list_failed(self, queue_type: QueueType, limit: int = 50) -> List[QueueItem]:
        return await self.find_many(
            {"queue_type": str(queue_type), "status": QueueStatus.FAILED.value},
            limit=limit,
            sort=[("failed_at", -1)],
        )

    async def purge_completed(self, older_than: dt.datetime) -> int:
        result = await self.collection.delete_many(
            {"status": QueueStatus.COMPLETED.value, "completed_at": {"$lt": older_than}}
        )
        return result.deleted_count

    # ============================================
    # READ MODELS
    # ============================================

    async def stats(self, queue_type: QueueType) -> QueueStats:
        counts = {}
        for status in QueueStatus:
            counts[status.value] = await self.count({"queue_type": str(queue_type), "status": status.value})
        return QueueStats(queue_type=queue_type, **counts)

    async def pending_received_times(self, queue_type: QueueType, limit: int = 1000) -> List[dt.datetime]:
        """Arrival times of pending items, oldest first."""
        cursor = self.collection.find(
            {"queue_type": str(queue_type), "status": QueueStatus.PENDING.value},
            {"received_at": 1},
        ).sort([("received_at", 1)]).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [doc["received_at"] for doc in docs if doc.get("received_at")]
