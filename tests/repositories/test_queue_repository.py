"""
Tests for the durable queue store: dedup, claim exclusivity and transitions.
"""
import asyncio
import datetime as dt

import pytest

from crm_sync.errors import InvalidStatusTransition
from crm_sync.models.queue import QueueStatus, QueueType

T0 = dt.datetime(2026, 1, 15, 12, 0, tzinfo=dt.UTC)


class TestInsertIfAbsent:
    """Tests for idempotent ingestion writes."""

    async def test_first_insert_is_stored(self, queue_repo, make_item):
        """A new (event_id, tenant_id) is stored as pending."""
        stored = await queue_repo.insert_if_absent(make_item("ContactCreate", {"id": "c1"}))

        item = await queue_repo.get("loc-1", "evt-1")
        assert stored is True
        assert item.status == QueueStatus.PENDING
        assert item.queue_type == QueueType.CONTACTS

    async def test_duplicate_changes_nothing(self, queue_repo, make_item):
        """A redelivery with a different payload leaves the stored item untouched."""
        await queue_repo.insert_if_absent(make_item("ContactCreate", {"id": "c1", "firstName": "Ada"}))
        stored = await queue_repo.insert_if_absent(make_item("ContactCreate", {"id": "c1", "firstName": "Eve"}))

        item = await queue_repo.get("loc-1", "evt-1")
        assert stored is False
        assert item.payload["firstName"] == "Ada"
        assert await queue_repo.count() == 1

    async def test_same_event_id_other_tenant_is_distinct(self, queue_repo, make_item):
        """Dedup is scoped per tenant."""
        await queue_repo.insert_if_absent(make_item("ContactCreate", {}, tenant_id="loc-1"))
        stored = await queue_repo.insert_if_absent(make_item("ContactCreate", {}, tenant_id="loc-2"))

        assert stored is True
        assert await queue_repo.count() == 2


class TestClaimNext:
    """Tests for atomic claiming."""

    async def test_claims_by_priority_then_arrival(self, queue_repo, make_item):
        """Lower priority number wins; ties go to the oldest item."""
        await queue_repo.insert_if_absent(make_item("OpportunityUpdate", {}, event_id="late-p4", received_at=T0))
        await queue_repo.insert_if_absent(
            make_item("OpportunityCreate", {}, event_id="p3-new", received_at=T0 + dt.timedelta(seconds=5))
        )
        await queue_repo.insert_if_absent(
            make_item("OpportunityStageUpdate", {}, event_id="p3-old", received_at=T0 + dt.timedelta(seconds=1))
        )

        now = T0 + dt.timedelta(minutes=1)
        order = []
        while (item := await queue_repo.claim_next(QueueType.PROJECTS, "run-1", now)) is not None:
            order.append(item.event_id)

        assert order == ["p3-old", "p3-new", "late-p4"]

    async def test_claim_sets_processing_and_owner(self, queue_repo, make_item):
        """A claimed item records its run and claim time."""
        await queue_repo.insert_if_absent(make_item("ContactCreate", {}))

        item = await queue_repo.claim_next(QueueType.CONTACTS, "run-1", T0)

        assert item.status == QueueStatus.PROCESSING
        assert item.claimed_by == "run-1"
        assert item.processing_started_at == T0

    async def test_future_retry_is_not_claimable(self, queue_repo, make_item):
        """Items waiting out a backoff are skipped."""
        item = make_item("ContactCreate", {})
        item.next_retry_at = T0 + dt.timedelta(minutes=5)
        await queue_repo.insert_if_absent(item)

        assert await queue_repo.claim_next(QueueType.CONTACTS, "run-1", T0) is None
        assert await queue_repo.claim_next(QueueType.CONTACTS, "run-1", T0 + dt.timedelta(minutes=5)) is not None

    async def test_other_queue_types_are_ignored(self, queue_repo, make_item):
        """A run only claims its own queue type."""
        await queue_repo.insert_if_absent(make_item("InvoicePaid", {}))

        assert await queue_repo.claim_next(QueueType.CONTACTS, "run-1", T0) is None

    async def test_concurrent_runs_never_share_an_item(self, queue_repo, make_item):
        """Two runs racing over the same backlog claim disjoint items."""
        for i in range(20):
            await queue_repo.insert_if_absent(make_item("TaskCreate", {}, event_id=f"evt-{i}"))

        async def drain(run_id):
            claimed = []
            while (item := await queue_repo.claim_next(QueueType.GENERAL, run_id, T0)) is not None:
                claimed.append(item.event_id)
                await asyncio.sleep(0)
            return claimed

        first, second = await asyncio.gather(drain("run-a"), drain("run-b"))

        assert set(first).isdisjoint(second)
        assert len(first) + len(second) == 20


class TestTransitions:
    """Tests for guarded outcome transitions."""

    async def test_mark_completed_requires_owning_run(self, queue_repo, make_item):
        """Only the run that holds the claim can complete the item."""
        await queue_repo.insert_if_absent(make_item("ContactCreate", {}))
        item = await queue_repo.claim_next(QueueType.CONTACTS, "run-1", T0)

        assert await queue_repo.mark_completed(item, "run-2", T0) is False
        assert await queue_repo.mark_completed(item, "run-1", T0) is True
        assert (await queue_repo.get("loc-1", "evt-1")).status == QueueStatus.COMPLETED

    async def test_schedule_retry_returns_item_to_pending(self, queue_repo, make_item):
        """A retry clears the claim and records the error."""
        await queue_repo.insert_if_absent(make_item("ContactCreate", {}))
        item = await queue_repo.claim_next(QueueType.CONTACTS, "run-1", T0)

        await queue_repo.schedule_retry(
            item, "run-1", attempts=1, next_retry_at=T0 + dt.timedelta(seconds=60),
            error="timeout", error_kind="transient", now=T0,
        )

        stored = await queue_repo.get("loc-1", "evt-1")
        assert stored.status == QueueStatus.PENDING
        assert stored.attempts == 1
        assert stored.claimed_by is None
        assert stored.last_error == "timeout"

    async def test_completed_item_cannot_move(self, queue_repo, make_item):
        """Completed is terminal."""
        await queue_repo.insert_if_absent(make_item("ContactCreate", {}))
        item = await queue_repo.claim_next(QueueType.CONTACTS, "run-1", T0)
        await queue_repo.mark_completed(item, "run-1", T0)
        completed = await queue_repo.get("loc-1", "evt-1")

        with pytest.raises(InvalidStatusTransition):
            await queue_repo.mark_failed(
                completed, "run-1", attempts=1, error="x", error_kind="fatal", now=T0
            )

    async def test_requeue_only_resurrects_failed_items(self, queue_repo, make_item):
        """Requeue resets attempts on failed items and ignores everything else."""
        await queue_repo.insert_if_absent(make_item("ContactCreate", {}))
        assert await queue_repo.requeue("loc-1", "evt-1", T0) is None

        item = await queue_repo.claim_next(QueueType.CONTACTS, "run-1", T0)
        await queue_repo.mark_failed(item, "run-1", attempts=3, error="x", error_kind="fatal", now=T0)

        requeued = await queue_repo.requeue("loc-1", "evt-1", T0 + dt.timedelta(hours=1))

        assert requeued.status == QueueStatus.PENDING
        assert requeued.attempts == 0
        assert requeued.failed_at is None

    async def test_find_expired_claims(self, queue_repo, make_item):
        """Claims older than the cutoff are reported."""
        await queue_repo.insert_if_absent(make_item("ContactCreate", {}))
        await queue_repo.claim_next(QueueType.CONTACTS, "dead-run", T0)

        assert await queue_repo.find_expired_claims(QueueType.CONTACTS, T0) == []
        expired = await queue_repo.find_expired_claims(QueueType.CONTACTS, T0 + dt.timedelta(seconds=1))
        assert [i.claimed_by for i in expired] == ["dead-run"]


class TestReadModels:
    """Tests for stats and retention."""

    async def test_stats_counts_each_status(self, queue_repo, make_item):
        """Stats count items per status for one queue."""
        for i in range(3):
            await queue_repo.insert_if_absent(make_item("ContactCreate", {}, event_id=f"evt-{i}"))
        item = await queue_repo.claim_next(QueueType.CONTACTS, "run-1", T0)
        await queue_repo.mark_completed(item, "run-1", T0)

        stats = await queue_repo.stats(QueueType.CONTACTS)

        assert (stats.pending, stats.processing, stats.completed, stats.failed) == (2, 0, 1, 0)

    async def test_purge_completed_respects_cutoff(self, queue_repo, make_item):
        """Only completed items older than the cutoff are deleted."""
        await queue_repo.insert_if_absent(make_item("ContactCreate", {}, event_id="old"))
        await queue_repo.insert_if_absent(make_item("ContactCreate", {}, event_id="pending"))
        item = await queue_repo.claim_next(QueueType.CONTACTS, "run-1", T0)
        await queue_repo.mark_completed(item, "run-1", T0)

        assert await queue_repo.purge_completed(T0) == 0
        assert await queue_repo.purge_completed(T0 + dt.timedelta(hours=25)) == 1
        assert await queue_repo.count() == 1
