"""
Queue Operations Endpoints

Operator view of permanently failed items and explicit requeue, the only
path out of the failed state.
"""
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger

from crm_sync.api.dependencies import require_cron_auth
from crm_sync.models.base import utcnow
from crm_sync.models.queue import QueueType
from crm_sync.repositories.queue import QueueRepository

router = APIRouter(prefix="/queues", tags=["Queues"], dependencies=[Depends(require_cron_auth)])


def _item_view(item) -> dict:
    return {
        "eventId": item.event_id,
        "tenantId": item.tenant_id,
        "queueType": str(item.queue_type),
        "eventType": item.event_type,
        "status": str(item.status),
        "attempts": item.attempts,
        "maxAttempts": item.max_attempts,
        "lastError": item.last_error,
        "errorKind": item.error_kind,
        "receivedAt": item.received_at.isoformat() if item.received_at else None,
        "failedAt": item.failed_at.isoformat() if item.failed_at else None,
    }


@router.get("/{queue_type}/failed")
async def list_failed(
    request: Request,
    queue_type: str,
    limit: int = Query(50, ge=1, le=500),
):
    """Permanently failed items for one queue, most recent first."""
    try:
        queue = QueueType(queue_type)
    except ValueError:
        return JSONResponse(status_code=404, content={"error": f"Unknown queue type '{queue_type}'"})

    repo: QueueRepository = request.app.state.queue_repo
    items = await repo.list_failed(queue, limit=limit)
    return {
        "queueType": queue.value,
        "count": len(items),
        "items": [_item_view(item) for item in items],
    }


@router.post("/items/{tenant_id}/{event_id}/requeue")
async def requeue_item(request: Request, tenant_id: str, event_id: str):
    """
    Return a failed item to pending with its attempt counter reset.

    Returns:
        200 with the requeued item, 404 if no failed item matched
    """
    repo: QueueRepository = request.app.state.queue_repo
    item = await repo.requeue(tenant_id, event_id, utcnow())

    if item is None:
        return JSONResponse(
            status_code=404,
            content={"error": "No failed item with that id"}
        )

    logger.info(
        "Queue item requeued by operator",
        extra={"event_id": event_id, "tenant_id": tenant_id, "queue_type": str(item.queue_type)}
    )
    return {"status": "requeued", "item": _item_view(item)}
