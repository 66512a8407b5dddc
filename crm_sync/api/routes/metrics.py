"""
Metrics Endpoints

Prometheus-compatible metrics for observability.
"""
from fastapi import APIRouter, Request
from fastapi.responses import Response
from loguru import logger

from crm_sync.analytics.recorder import MetricsRecorder
from crm_sync.models.queue import QueueType
from crm_sync.utils.metrics import metrics

router = APIRouter(tags=["Metrics"])


@router.get("/metrics")
async def prometheus_metrics(request: Request):
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text exposition format for scraping.
    Includes:
    - Webhooks received, duplicated and rejected
    - Queue depth by queue type and status
    - Processing outcomes, durations and end-to-end latency
    - Batch runs and post-commit hook failures

    Content-Type: text/plain; version=0.0.4; charset=utf-8
    """
    try:
        # Update queue gauges from current state
        recorder: MetricsRecorder = request.app.state.recorder
        for queue_type in QueueType:
            await recorder.refresh_queue_depth(queue_type)

        output = metrics.export()

        return Response(
            content=output,
            media_type="text/plain; version=0.0.4; charset=utf-8"
        )

    except Exception as e:
        logger.error(f"Failed to export metrics: {e}")
        return Response(
            content=f"# Error exporting metrics: {e}\n",
            media_type="text/plain",
            status_code=500
        )
