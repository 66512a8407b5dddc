"""
Metrics Models

Append-only processing samples and the dashboard snapshot derived from them.
"""
import datetime as dt
from enum import StrEnum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from crm_sync.models.base import utcnow


class MetricSample(BaseModel):
    """
    One record per processed queue item. Written once, never updated.

    Attributes:
        wait_ms: Time from ingestion to claim
        processing_ms: Time from claim to completion
        total_ms: Time from ingestion to completion
    """
    event_id: str
    tenant_id: str
    queue_type: str
    event_type: str
    attempt: int = 1
    received_at: dt.datetime
    claimed_at: dt.datetime
    completed_at: dt.datetime
    wait_ms: float = 0.0
    processing_ms: float = 0.0
    total_ms: float = 0.0
    success: bool = True
    error: Optional[str] = None
    error_kind: Optional[str] = None


class Trend(StrEnum):
    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class QueueHealth(BaseModel):
    """Rolled-up figures for one queue type."""
    queue_type: str
    pending: int = 0
    processing: int = 0
    failed: int = 0
    completed_last_hour: int = 0
    throughput_per_minute: float = 0.0
    error_rate: float = 0.0           # percent
    avg_wait_ms: float = 0.0
    p95_wait_ms: float = 0.0
    avg_processing_ms: float = 0.0
    oldest_pending_age_ms: float = 0.0
    sla_target_ms: int
    sla_compliance: float = 100.0     # percent of samples within target
    trend: Trend = Trend.STABLE


class WindowPerformance(BaseModel):
    window: str
    processed: int = 0
    failed: int = 0
    success_rate: float = 100.0
    avg_total_ms: float = 0.0


class ErrorSummary(BaseModel):
    error: str
    count: int
    queue_types: List[str] = Field(default_factory=list)
    last_seen: Optional[dt.datetime] = None


class SystemHealth(BaseModel):
    status: HealthStatus = HealthStatus.HEALTHY
    score: int = 100
    issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class DashboardSnapshot(BaseModel):
    generated_at: dt.datetime = Field(default_factory=utcnow)
    system_health: SystemHealth = Field(default_factory=SystemHealth)
    queues: Dict[str, QueueHealth] = Field(default_factory=dict)
    performance: List[WindowPerformance] = Field(default_factory=list)
    top_errors: List[ErrorSummary] = Field(default_factory=list)
