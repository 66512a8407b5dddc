"""
SLA Aggregator

Read-only roll-up of queue state and metric samples into the dashboard
snapshot: per-queue health, windowed performance, top errors and an overall
health score.
"""
import datetime as dt
import math
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from crm_sync.config import Settings, get_settings
from crm_sync.models.base import ensure_utc, utcnow
from crm_sync.models.metrics import (
    DashboardSnapshot,
    ErrorSummary,
    HealthStatus,
    MetricSample,
    QueueHealth,
    SystemHealth,
    Trend,
    WindowPerformance,
)
from crm_sync.models.queue import QueueType
from crm_sync.repositories.metrics import MetricsRepository
from crm_sync.repositories.queue import QueueRepository

WINDOWS = (
    ("last_5_minutes", dt.timedelta(minutes=5)),
    ("last_hour", dt.timedelta(hours=1)),
    ("last_24_hours", dt.timedelta(hours=24)),
)

DEPTH_ALERT = 1000
ERROR_RATE_ALERT = 5.0
SLA_COMPLIANCE_ALERT = 95.0
TOP_ERRORS = 10


def percentile(values: List[float], pct: float) -> float:
    """Nearest-rank percentile; 0.0 for no values."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(math.ceil(pct / 100 * len(ordered)) - 1, 0)
    return float(ordered[min(rank, len(ordered) - 1)])


def _mean(values: List[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def determine_trend(pending: int, error_rate: float) -> Trend:
    if pending > 500 or error_rate > 10:
        return Trend.DEGRADING
    if pending < 50 and error_rate < 2:
        return Trend.IMPROVING
    return Trend.STABLE


def calculate_system_health(queues: Iterable[QueueHealth]) -> SystemHealth:
    """
    Start at 100 and deduct per queue:
    -10 for a backlog over 1000, -15 for an error rate over 5%,
    -5 for SLA compliance under 95%.
    """
    score = 100
    issues: List[str] = []
    recommendations: List[str] = []

    for queue in queues:
        if queue.pending > DEPTH_ALERT:
            score -= 10
            issues.append(f"{queue.queue_type} queue has {queue.pending} pending items")
            recommendations.append(f"Increase run frequency or batch size for {queue.queue_type}")
        if queue.error_rate > ERROR_RATE_ALERT:
            score -= 15
            issues.append(f"{queue.queue_type} error rate is {queue.error_rate}%")
            recommendations.append(f"Inspect failed {queue.queue_type} items and requeue after fixing")
        if queue.sla_compliance < SLA_COMPLIANCE_ALERT:
            score -= 5
            issues.append(f"{queue.queue_type} SLA compliance is only {queue.sla_compliance}%")

    if score < 70:
        status = HealthStatus.CRITICAL
    elif score < 85:
        status = HealthStatus.DEGRADED
    else:
        status = HealthStatus.HEALTHY

    return SystemHealth(status=status, score=max(score, 0), issues=issues, recommendations=recommendations)


class SLAAggregator:

    def __init__(
        self,
        queue_repo: QueueRepository,
        metrics_repo: MetricsRepository,
        settings: Optional[Settings] = None,
    ):
        self.queue_repo = queue_repo
        self.metrics_repo = metrics_repo
        self.settings = settings or get_settings()

    async def snapshot(self, now: Optional[dt.datetime] = None) -> DashboardSnapshot:
        now = now or utcnow()
        samples = await self.metrics_repo.find_since(now - dt.timedelta(hours=24))

        by_queue: Dict[str, List[MetricSample]] = defaultdict(list)
        hour_ago = now - dt.timedelta(hours=1)
        for sample in samples:
            if ensure_utc(sample.completed_at) >= hour_ago:
                by_queue[sample.queue_type].append(sample)

        queues: Dict[str, QueueHealth] = {}
        for queue_type in QueueType:
            queues[queue_type.value] = await self._queue_health(queue_type, by_queue.get(queue_type.value, []), now)

        return DashboardSnapshot(
            generated_at=now,
            system_health=calculate_system_health(queues.values()),
            queues=queues,
            performance=[self._window(name, span, samples, now) for name, span in WINDOWS],
            top_errors=self._top_errors(samples),
        )

    async def _queue_health(self, queue_type: QueueType, samples: List[MetricSample], now: dt.datetime) -> QueueHealth:
        stats = await self.queue_repo.stats(queue_type)
        pending_times = await self.queue_repo.pending_received_times(queue_type, limit=1)
        target = self.settings.sla_target_for(queue_type)

        succeeded = [s for s in samples if s.success]
        failed = len(samples) - len(succeeded)
        error_rate = round(failed / len(samples) * 100, 2) if samples else 0.0
        within = sum(1 for s in succeeded if s.total_ms <= target)
        compliance = round(within / len(succeeded) * 100, 2) if succeeded else 100.0

        oldest = 0.0
        if pending_times:
            oldest = max((now - ensure_utc(pending_times[0])).total_seconds() * 1000, 0.0)

        waits = [s.wait_ms for s in samples]
        return QueueHealth(
            queue_type=queue_type.value,
            pending=stats.pending,
            processing=stats.processing,
            failed=stats.failed,
            completed_last_hour=len(succeeded),
            throughput_per_minute=round(len(samples) / 60, 2),
            error_rate=error_rate,
            avg_wait_ms=_mean(waits),
            p95_wait_ms=percentile(waits, 95),
            avg_processing_ms=_mean([s.processing_ms for s in samples]),
            oldest_pending_age_ms=round(oldest, 2),
            sla_target_ms=target,
            sla_compliance=compliance,
            trend=determine_trend(stats.pending, error_rate),
        )

    @staticmethod
    def _window(name: str, span: dt.timedelta, samples: List[MetricSample], now: dt.datetime) -> WindowPerformance:
        since = now - span
        in_window = [s for s in samples if ensure_utc(s.completed_at) >= since]
        processed = sum(1 for s in in_window if s.success)
        failed = len(in_window) - processed
        return WindowPerformance(
            window=name,
            processed=processed,
            failed=failed,
            success_rate=round(processed / len(in_window) * 100, 2) if in_window else 100.0,
            avg_total_ms=_mean([s.total_ms for s in in_window]),
        )

    @staticmethod
    def _top_errors(samples: List[MetricSample]) -> List[ErrorSummary]:
        grouped: Dict[str, ErrorSummary] = {}
        for sample in samples:
            if sample.success:
                continue
            error = sample.error or "unknown error"
            summary = grouped.setdefault(error, ErrorSummary(error=error, count=0))
            summary.count += 1
            if sample.queue_type not in summary.queue_types:
                summary.queue_types.append(sample.queue_type)
            completed_at = ensure_utc(sample.completed_at)
            if summary.last_seen is None or completed_at > summary.last_seen:
                summary.last_seen = completed_at

        return sorted(grouped.values(), key=lambda e: e.count, reverse=True)[:TOP_ERRORS]
