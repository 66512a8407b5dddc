"""
Event Stores

Insert-once raw event logs (app events, product/price events, unhandled
webhooks, ...) and the discovery counter for unrecognized event types.
"""
import datetime as dt
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from ..utils.observability import logger


class EventStoreRepository:
    """Append-only, idempotent event log keyed by webhook id."""

    def __init__(self, database: Any, collection_name: str):
        self.collection = database[collection_name]
        self.collection_name = collection_name

    async def record(self, webhook_id: str, document: Dict[str, Any], session: Any = None) -> bool:
        """
        Store `document` once per webhook id.

        Returns:
            True if stored, False if this webhook was already recorded
        """
        try:
            result = await self.collection.update_one(
                {"webhook_id": webhook_id},
                {"$setOnInsert": document},
                upsert=True,
                session=session,
            )
        except DuplicateKeyError:
            return False

        stored = result.upserted_id is not None
        if stored:
            logger.debug(
                f"Recorded event in {self.collection_name}",
                extra={"webhook_id": webhook_id}
            )
        return stored

    async def recent(self, limit: int = 50, tenant_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = {"location_id": tenant_id} if tenant_id else {}
        cursor = self.collection.find(query).sort([("received_at", -1)]).limit(limit)
        docs = await cursor.to_list(length=limit)
        for doc in docs:
            doc["_id"] = str(doc["_id"])
        return docs


class DiscoveryRepository:
    """Counts sightings of event types the routing table does not know."""

    def __init__(self, database: Any):
        self.collection = database["webhook_discovery"]

    async def observe(self, event_type: str, tenant_id: str, now: dt.datetime) -> None:
        await self.collection.update_one(
            {"event_type": event_type},
            {
                "$setOnInsert": {"first_seen": now},
                "$set": {"last_seen": now, "last_tenant_id": tenant_id},
                "$inc": {"count": 1},
            },
            upsert=True,
        )

    async def list_types(self, limit: int = 100) -> List[Dict[str, Any]]:
        cursor = self.collection.find({}).sort([("count", -1)]).limit(limit)
        docs = await cursor.to_list(length=limit)
        for doc in docs:
            doc["_id"] = str(doc["_id"])
        return docs
