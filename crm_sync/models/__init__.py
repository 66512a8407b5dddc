"""
Domain Models
Queue items, webhook events, projected entities and metric samples.
"""
from crm_sync.models.base import MongoBaseModel, PyObjectId, utcnow, ensure_utc
from crm_sync.models.queue import QueueType, QueueStatus, QueueItem, QueueStats, RunSummary
from crm_sync.models.events import WebhookEnvelope, IngestResult, NormalizedEvent
from crm_sync.models.entities import ProjectStatus, TimelineEntry
from crm_sync.models.metrics import (
    MetricSample,
    QueueHealth,
    SystemHealth,
    HealthStatus,
    Trend,
    WindowPerformance,
    ErrorSummary,
    DashboardSnapshot,
)

__all__ = [
    "MongoBaseModel",
    "PyObjectId",
    "utcnow",
    "ensure_utc",
    "QueueType",
    "QueueStatus",
    "QueueItem",
    "QueueStats",
    "RunSummary",
    "WebhookEnvelope",
    "IngestResult",
    "NormalizedEvent",
    "ProjectStatus",
    "TimelineEntry",
    "MetricSample",
    "QueueHealth",
    "SystemHealth",
    "HealthStatus",
    "Trend",
    "WindowPerformance",
    "ErrorSummary",
    "DashboardSnapshot",
]
