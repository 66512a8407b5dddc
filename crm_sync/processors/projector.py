"""
Entity Projector

Shared write discipline for every processor:

- entities are addressed by (external id, tenant id), never by `_id`
- creation fields are written with `$setOnInsert`, mutable fields with `$set`
- provenance (`last_webhook_update`, `processed_by`, `webhook_id`) is stamped
  from the triggering event, so re-applying an event yields the same document
- timeline entries are appended at most once per (webhook, event)
"""
import datetime as dt
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from crm_sync.models.base import ensure_utc
from crm_sync.models.entities import ENTITY_ANCHORS, ProjectStatus, TimelineEntry
from crm_sync.models.events import NormalizedEvent
from crm_sync.repositories.events import EventStoreRepository
from crm_sync.utils.observability import logger

PROCESSED_BY = "queue"

_DATETIME = TypeAdapter(dt.datetime)


@dataclass
class ProjectionResult:
    matched: bool
    created: bool
    modified: bool


def pick(source: Dict[str, Any], mapping: Dict[str, str]) -> Dict[str, Any]:
    """
    Copy present, non-None values from `source` using {source_key: field} mapping.
    Absent keys are left out so partial updates never blank existing data.
    """
    return {field: source[key] for key, field in mapping.items() if source.get(key) is not None}


def parse_timestamp(value: Any) -> Optional[dt.datetime]:
    """Lenient platform date parsing: ISO strings or epoch millis; None if unreadable."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = value / 1000 if value > 1e11 else value
    try:
        return ensure_utc(_DATETIME.validate_python(value))
    except PydanticValidationError:
        logger.debug(f"Unparseable platform timestamp: {value!r}")
        return None


class EntityProjector:
    """Idempotent upserts into projection collections."""

    def __init__(self, database: Any):
        self.database = database
        self._event_stores: Dict[str, EventStoreRepository] = {}

    # ============================================
    # ADDRESSING
    # ============================================

    @staticmethod
    def anchor(collection: str, external_id: str, tenant_id: Optional[str]) -> Dict[str, Any]:
        id_field, tenant_field = ENTITY_ANCHORS[collection]
        query: Dict[str, Any] = {id_field: external_id}
        if tenant_field:
            query[tenant_field] = tenant_id
        return query

    @staticmethod
    def provenance(event: NormalizedEvent) -> Dict[str, Any]:
        return {
            "last_webhook_update": event.received_at,
            "processed_by": PROCESSED_BY,
            "webhook_id": event.event_id,
            "updated_at": event.received_at,
        }

    async def find(
        self,
        collection: str,
        external_id: str,
        tenant_id: Optional[str],
        session: Any = None,
    ) -> Optional[Dict[str, Any]]:
        return await self.database[collection].find_one(
            self.anchor(collection, external_id, tenant_id), session=session
        )

    # ============================================
    # UPSERTS
    # ============================================

    async def upsert(
        self,
        collection: str,
        external_id: str,
        tenant_id: Optional[str],
        *,
        event: NormalizedEvent,
        fields: Optional[Dict[str, Any]] = None,
        insert_fields: Optional[Dict[str, Any]] = None,
        unset: Optional[Iterable[str]] = None,
        upsert: bool = True,
        session: Any = None,
    ) -> ProjectionResult:
        """
        Apply `fields` unconditionally and `insert_fields` only on creation.

        Args:
            upsert: False updates an existing entity only
        """
        to_set = {**(fields or {}), **self.provenance(event)}
        on_insert = {
            "created_at": event.received_at,
            "created_by_webhook": event.event_id,
            **(insert_fields or {}),
        }
        # A path may only appear under one operator
        on_insert = {k: v for k, v in on_insert.items() if k not in to_set}

        update: Dict[str, Any] = {"$set": to_set}
        if on_insert:
            update["$setOnInsert"] = on_insert
        if unset:
            update["$unset"] = {name: "" for name in unset if name not in to_set}

        result = await self.database[collection].update_one(
            self.anchor(collection, external_id, tenant_id),
            update,
            upsert=upsert,
            session=session,
        )

        created = result.upserted_id is not None
        return ProjectionResult(
            matched=result.matched_count > 0 or created,
            created=created,
            modified=created or result.modified_count > 0,
        )

    async def soft_delete(
        self,
        collection: str,
        external_id: str,
        tenant_id: Optional[str],
        *,
        event: NormalizedEvent,
        extra: Optional[Dict[str, Any]] = None,
        session: Any = None,
    ) -> bool:
        result = await self.upsert(
            collection,
            external_id,
            tenant_id,
            event=event,
            fields={"deleted": True, "deleted_at": event.received_at, **(extra or {})},
            upsert=False,
            session=session,
        )
        if not result.matched:
            logger.debug(
                f"Delete for unknown {collection} entity ignored",
                extra={"external_id": external_id, "tenant_id": tenant_id}
            )
        return result.matched

    # ============================================
    # EVENT STORES
    # ============================================

    async def record_event(
        self,
        store: str,
        event: NormalizedEvent,
        document: Optional[Dict[str, Any]] = None,
        session: Any = None,
    ) -> bool:
        """Insert-once raw event log keyed by the event id."""
        repo = self._event_stores.get(store)
        if repo is None:
            repo = EventStoreRepository(self.database, store)
            self._event_stores[store] = repo

        body = document if document is not None else {"payload": event.data}
        return await repo.record(
            event.event_id,
            {
                "event_type": event.event_type,
                "location_id": event.tenant_id,
                "received_at": event.received_at,
                "processed_by": PROCESSED_BY,
                **body,
            },
            session=session,
        )

    # ============================================
    # PROJECTS
    # ============================================

    async def append_timeline(
        self,
        tenant_id: str,
        opportunity_id: str,
        entry: TimelineEntry,
        session: Any = None,
    ) -> bool:
        """Append `entry` unless an entry with the same id is already present."""
        query = {
            **self.anchor("projects", opportunity_id, tenant_id),
            "timeline.id": {"$ne": entry.id},
        }
        result = await self.database.projects.update_one(
            query,
            {"$push": {"timeline": entry.model_dump()}},
            session=session,
        )
        return result.modified_count > 0

    async def transition_project(
        self,
        tenant_id: str,
        opportunity_id: str,
        target: ProjectStatus,
        event: NormalizedEvent,
        session: Any = None,
    ) -> bool:
        """
        Move a project to `target` if the status machine allows it.

        Returns:
            True if the status changed (and a timeline entry was appended)
        """
        project = await self.find("projects", opportunity_id, tenant_id, session=session)
        if project is None:
            return False

        current = ProjectStatus.from_platform(project.get("status"))
        if current == target:
            return False

        if not current.can_transition_to(target):
            logger.warning(
                f"Ignoring project status change {current} -> {target}",
                extra={"opportunity_id": opportunity_id, "tenant_id": tenant_id, "cause": event.event_type}
            )
            return False

        await self.upsert(
            "projects",
            opportunity_id,
            tenant_id,
            event=event,
            fields={"status": target.value, "status_changed_at": event.received_at},
            upsert=False,
            session=session,
        )
        await self.append_timeline(
            tenant_id,
            opportunity_id,
            TimelineEntry.for_webhook(
                event.event_id,
                "status_changed",
                f"Status changed from {current.value} to {target.value}",
                event.received_at,
                previous=current.value,
                new=target.value,
                cause=event.event_type,
            ),
            session=session,
        )
        return True

    async def refresh_project_financials(
        self,
        tenant_id: str,
        opportunity_id: str,
        event: NormalizedEvent,
        session: Any = None,
    ) -> Optional[Dict[str, float]]:
        """
        Recompute a project's financial summary from its live invoices.

        Derived from current invoice state rather than incremented, so
        replays converge on the same totals.
        """
        cursor = self.database.invoices.find(
            {
                "opportunity_id": opportunity_id,
                "location_id": tenant_id,
                "deleted": {"$ne": True},
                "status": {"$ne": "void"},
            },
            session=session,
        )
        invoices: List[Dict[str, Any]] = await cursor.to_list(length=None)

        summary = {
            "invoice_count": len(invoices),
            "invoiced_total": round(sum(float(inv.get("amount") or 0) for inv in invoices), 2),
            "paid_total": round(sum(float(inv.get("amount_paid") or 0) for inv in invoices), 2),
            "outstanding_total": round(sum(float(inv.get("amount_due") or 0) for inv in invoices), 2),
        }

        result = await self.upsert(
            "projects",
            opportunity_id,
            tenant_id,
            event=event,
            fields={"financials": summary, "last_financial_update": event.received_at},
            upsert=False,
            session=session,
        )
        if not result.matched:
            logger.debug(
                "No project linked to invoice opportunity",
                extra={"opportunity_id": opportunity_id, "tenant_id": tenant_id}
            )
            return None
        return summary
