"""
Analytics Endpoints

Read-only SLA dashboard and diagnostics over unhandled and undiscovered
event types.
"""
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger

from crm_sync.analytics.sla import SLAAggregator
from crm_sync.repositories.events import DiscoveryRepository, EventStoreRepository

router = APIRouter(prefix="/analytics", tags=["Analytics"])


@router.get("/dashboard")
async def dashboard(request: Request):
    """
    SLA and health snapshot across every queue type.

    Includes per-queue depth, error rate, wait percentiles and SLA
    compliance, windowed performance, top errors and a 0-100 health score.
    """
    aggregator: SLAAggregator = request.app.state.sla

    try:
        snapshot = await aggregator.snapshot()
    except Exception as e:
        logger.error(f"Failed to build dashboard snapshot: {e}")
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "error": str(e)
            }
        )

    return snapshot.model_dump(mode="json")


@router.get("/unhandled")
async def unhandled_events(
    request: Request,
    limit: int = Query(50, ge=1, le=500),
    tenant_id: str | None = Query(None, alias="tenantId"),
):
    """
    Recent events no handler understood, plus the discovery counts for
    event types the routing table does not know.
    """
    unhandled: EventStoreRepository = request.app.state.unhandled_store
    discovery: DiscoveryRepository = request.app.state.discovery_repo

    events = await unhandled.recent(limit=limit, tenant_id=tenant_id)
    discovered = await discovery.list_types(limit=limit)

    return {
        "count": len(events),
        "events": [
            {
                "webhookId": e.get("webhook_id"),
                "type": e.get("type"),
                "queueType": e.get("queue_type"),
                "locationId": e.get("location_id"),
                "receivedAt": e["received_at"].isoformat() if e.get("received_at") else None,
            }
            for e in events
        ],
        "discovered": [
            {
                "eventType": d["event_type"],
                "count": d.get("count", 0),
                "firstSeen": d["first_seen"].isoformat() if d.get("first_seen") else None,
                "lastSeen": d["last_seen"].isoformat() if d.get("last_seen") else None,
            }
            for d in discovered
        ],
    }
