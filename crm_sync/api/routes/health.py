"""
Health and Readiness Endpoints

Kubernetes-compatible health probes for load balancers and orchestration.
"""
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from loguru import logger

from crm_sync import __version__
from crm_sync.models.queue import QueueType

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check():
    """
    Basic health check endpoint.

    Returns 200 if service is running.
    """
    return {
        "status": "healthy",
        "service": "crm-sync",
        "version": __version__
    }


@router.get("/ready")
async def readiness_check(request: Request):
    """
    Readiness probe - checks if service can handle requests.

    Verifies:
    - Queue manager is wired
    - Storage answers a ping

    Returns 200 if ready, 503 if not ready.
    """
    try:
        if getattr(request.app.state, "queue_manager", None) is None:
            return JSONResponse(
                status_code=503,
                content={
                    "status": "not_ready",
                    "reason": "Pipeline not initialized"
                }
            )

        await request.app.state.storage.database.command("ping")

        return {
            "status": "ready",
            "storage": request.app.state.settings.storage_backend,
            "processors": sorted(str(q) for q in request.app.state.queue_manager.registry.queue_types)
        }

    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "reason": str(e)
            }
        )


@router.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": "crm-sync",
        "version": __version__,
        "queues": [q.value for q in QueueType],
        "endpoints": {
            "health": "/health",
            "ready": "/ready",
            "metrics": "/metrics",
            "webhook": "/webhooks/events (POST)",
            "native_webhook": "/webhooks/native (POST)",
            "run_queue": "/cron/queues/{queue_type}/run",
            "dashboard": "/analytics/dashboard"
        }
    }
