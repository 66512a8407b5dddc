"""
Queue Manager

Drives one bounded batch run for a queue type:

1. Release claims whose lease expired (a crashed run left them processing)
2. Claim items one at a time, checking the runtime budget before each claim
3. Dispatch each item to its processor and apply the retry policy to failures

Runs are cooperative: nothing is long-lived, and a run that stops early
leaves the rest of the backlog pending for the next trigger.
"""
import datetime as dt
import time
import uuid
from typing import Callable, Optional

from crm_sync.analytics.recorder import MetricsRecorder
from crm_sync.config import Settings, get_settings
from crm_sync.errors import FatalError, PipelineError, classify_exception
from crm_sync.models.base import utcnow
from crm_sync.models.queue import QueueItem, QueueType, RunSummary
from crm_sync.pipeline.retry import RetryPolicy
from crm_sync.processors.base import BaseProcessor
from crm_sync.processors.registry import ProcessorRegistry
from crm_sync.repositories.queue import QueueRepository
from crm_sync.utils.metrics import metrics
from crm_sync.utils.observability import log_queue_event, logger


class QueueManager:

    def __init__(
        self,
        queue_repo: QueueRepository,
        registry: ProcessorRegistry,
        recorder: Optional[MetricsRecorder] = None,
        retry_policy: Optional[RetryPolicy] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self.queue_repo = queue_repo
        self.registry = registry
        self.recorder = recorder
        self.retry_policy = retry_policy or RetryPolicy()
        self.settings = settings or get_settings()
        self.clock = clock

    async def run_batch(
        self,
        queue_type: QueueType,
        batch_size: Optional[int] = None,
        max_runtime: Optional[float] = None,
    ) -> RunSummary:
        """
        Process up to `batch_size` items of `queue_type` within `max_runtime` seconds.

        Raises:
            ProcessorNotFound: no processor registered for the queue type
        """
        queue_type = QueueType(queue_type)
        processor = self.registry.get(queue_type)

        batch_size = batch_size or self.settings.batch_size_for(queue_type)
        max_runtime = max_runtime if max_runtime is not None else self.settings.default_max_runtime_seconds

        summary = RunSummary(queue_type=queue_type, run_id=f"{queue_type}-{uuid.uuid4().hex[:12]}")
        started = time.monotonic()

        logger.info(
            f"[{processor.name}] Starting run {summary.run_id}",
            extra={"queue_type": str(queue_type), "batch_size": batch_size, "max_runtime": max_runtime}
        )

        summary.items_released = await self.release_expired_claims(queue_type)

        while summary.items_claimed < batch_size:
            if time.monotonic() - started >= max_runtime:
                summary.budget_exhausted = True
                logger.info(
                    f"[{processor.name}] Runtime budget exhausted after {summary.items_claimed} items",
                    extra={"run_id": summary.run_id}
                )
                break

            item = await self.queue_repo.claim_next(queue_type, summary.run_id, self.clock())
            if item is None:
                break

            summary.items_claimed += 1
            outcome = await self._process(processor, item, summary.run_id)
            if outcome == "completed":
                summary.items_processed += 1
            elif outcome == "retried":
                summary.items_retried += 1
            elif outcome == "lost":
                summary.items_lost += 1
            else:
                summary.items_failed += 1

        summary.runtime_seconds = round(time.monotonic() - started, 3)
        metrics.runs_total.inc(queue_type=str(queue_type), result="success")
        if self.recorder is not None:
            await self.recorder.refresh_queue_depth(queue_type)

        logger.info(
            f"[{processor.name}] Run {summary.run_id} finished: "
            f"{summary.items_processed} processed, {summary.items_retried} retried, "
            f"{summary.items_failed} failed in {summary.runtime_seconds}s",
            extra=summary.model_dump(mode="json")
        )
        return summary

    async def _process(self, processor: BaseProcessor, item: QueueItem, run_id: str) -> str:
        """Process one claimed item; returns completed, retried, failed or lost."""
        claimed_at = item.processing_started_at or self.clock()
        started = time.perf_counter()

        try:
            await processor.process_item(item)
        except Exception as e:
            now = self.clock()
            kind, retryable = classify_exception(e)
            decision = self.retry_policy.decide(item.attempts, item.max_attempts, retryable, now)
            error = str(e) or type(e).__name__

            if decision.retry:
                moved = await self.queue_repo.schedule_retry(
                    item,
                    run_id,
                    attempts=decision.attempts,
                    next_retry_at=decision.next_retry_at,
                    error=error,
                    error_kind=kind,
                    now=now,
                )
                outcome = "retried"
            else:
                if retryable:
                    # Out of attempts
                    kind = FatalError.kind
                moved = await self.queue_repo.mark_failed(
                    item, run_id, attempts=decision.attempts, error=error, error_kind=kind, now=now
                )
                outcome = "failed"

            if not moved:
                return self._claim_lost(processor, item, run_id)

            log_queue_event(
                "retry_scheduled" if decision.retry else "failed",
                item.queue_type,
                item.event_id,
                event_type=item.event_type,
                duration_ms=(time.perf_counter() - started) * 1000,
                tenant_id=item.tenant_id,
                attempts=decision.attempts,
                error=error,
                error_kind=kind,
                next_retry_at=decision.next_retry_at.isoformat() if decision.next_retry_at else None,
            )
            if not isinstance(e, PipelineError):
                logger.opt(exception=e).error(f"[{processor.name}] Unexpected error processing {item.event_id}")

            if self.recorder is not None:
                await self.recorder.record(
                    item, claimed_at=claimed_at, completed_at=now, outcome=outcome, error=error, error_kind=kind
                )
            return outcome

        now = self.clock()
        if not await self.queue_repo.mark_completed(item, run_id, now):
            return self._claim_lost(processor, item, run_id)
        log_queue_event(
            "completed",
            item.queue_type,
            item.event_id,
            event_type=item.event_type,
            duration_ms=(time.perf_counter() - started) * 1000,
            tenant_id=item.tenant_id,
        )
        if self.recorder is not None:
            await self.recorder.record(item, claimed_at=claimed_at, completed_at=now, outcome="completed")
        return "completed"

    def _claim_lost(self, processor: BaseProcessor, item: QueueItem, run_id: str) -> str:
        """The claim was released under this run; another run owns the item now."""
        logger.warning(
            f"[{processor.name}] Lost claim on {item.event_id}, outcome discarded",
            extra={"run_id": run_id, "event_id": item.event_id, "tenant_id": item.tenant_id}
        )
        return "lost"

    async def release_expired_claims(self, queue_type: QueueType) -> int:
        """
        Return items stuck in processing past the lease to pending.

        The interrupted run counts as an attempt, so an item that keeps
        crashing its run eventually fails instead of looping forever.
        """
        now = self.clock()
        cutoff = now - dt.timedelta(seconds=self.settings.processing_lease_seconds)
        expired = await self.queue_repo.find_expired_claims(queue_type, cutoff)

        released = 0
        for item in expired:
            error = f"Claim by {item.claimed_by} expired"
            decision = self.retry_policy.decide(item.attempts, item.max_attempts, True, now)
            if decision.retry:
                moved = await self.queue_repo.schedule_retry(
                    item,
                    item.claimed_by,
                    attempts=decision.attempts,
                    next_retry_at=now,
                    error=error,
                    error_kind="transient",
                    now=now,
                )
            else:
                moved = await self.queue_repo.mark_failed(
                    item, item.claimed_by, attempts=decision.attempts, error=error, error_kind=FatalError.kind, now=now
                )
            if moved:
                released += 1
                log_queue_event("claim_released", queue_type, item.event_id, tenant_id=item.tenant_id, error=error)

        return released

    async def purge_completed(self, older_than: Optional[dt.datetime] = None) -> int:
        """Delete completed items past the retention window."""
        if older_than is None:
            older_than = self.clock() - dt.timedelta(hours=self.settings.completed_retention_hours)
        deleted = await self.queue_repo.purge_completed(older_than)
        if deleted:
            logger.info(f"Purged {deleted} completed queue items", extra={"older_than": older_than.isoformat()})
        return deleted
