"""
Cron Trigger Endpoints

One bounded batch run per request. An external scheduler calls these on a
fixed cadence per queue type.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger

from crm_sync.api.dependencies import require_cron_auth
from crm_sync.models.queue import QueueType
from crm_sync.pipeline.manager import QueueManager
from crm_sync.utils.metrics import metrics

router = APIRouter(prefix="/cron", tags=["Cron"], dependencies=[Depends(require_cron_auth)])


@router.api_route("/queues/{queue_type}/run", methods=["GET", "POST"])
async def run_queue(
    request: Request,
    queue_type: str,
    batch_size: Optional[int] = Query(None, alias="batchSize", ge=1, le=1000),
    max_runtime: Optional[float] = Query(None, alias="maxRuntime", gt=0, le=900),
):
    """
    Run one batch for `queue_type`, then purge expired completed items.

    Returns:
        200 with the run summary, 404 for an unknown queue type,
        500 {success: false, queueType, error} if the run itself failed
    """
    try:
        queue = QueueType(queue_type)
    except ValueError:
        return JSONResponse(
            status_code=404,
            content={
                "success": False,
                "queueType": queue_type,
                "error": f"Unknown queue type '{queue_type}'"
            }
        )

    manager: QueueManager = request.app.state.queue_manager

    try:
        summary = await manager.run_batch(queue, batch_size=batch_size, max_runtime=max_runtime)
        await manager.purge_completed()
    except Exception as e:
        metrics.runs_total.inc(queue_type=queue.value, result="error")
        logger.opt(exception=e).error(f"Batch run failed for {queue.value}: {e}")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "queueType": queue.value,
                "error": str(e)
            }
        )

    return summary.model_dump(mode="json", by_alias=True)
