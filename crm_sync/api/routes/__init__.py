"""
API Routes

Modular route definitions for the crm-sync API.
"""
from crm_sync.api.routes.health import router as health_router
from crm_sync.api.routes.webhooks import router as webhooks_router
from crm_sync.api.routes.cron import router as cron_router
from crm_sync.api.routes.analytics import router as analytics_router
from crm_sync.api.routes.queues import router as queues_router
from crm_sync.api.routes.metrics import router as metrics_router

__all__ = [
    "health_router",
    "webhooks_router",
    "cron_router",
    "analytics_router",
    "queues_router",
    "metrics_router",
]
