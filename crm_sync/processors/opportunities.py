"""
Opportunity Handlers

Platform opportunities are mirrored as local projects. Shared by the
projects processor and the general processor.
"""
from typing import Any, Dict

from crm_sync.errors import ValidationError
from crm_sync.models.entities import ProjectStatus, TimelineEntry
from crm_sync.models.events import NormalizedEvent
from crm_sync.processors.base import HandlerContext, HandlerRegistry, store_unhandled
from crm_sync.processors.projector import pick
from crm_sync.utils.observability import logger

OPPORTUNITY_FIELDS = {
    "name": "title",
    "monetaryValue": "monetary_value",
    "pipelineId": "pipeline_id",
    "pipelineStageId": "pipeline_stage_id",
    "assignedTo": "assigned_to",
    "source": "source",
    "tags": "tags",
    "customFields": "custom_fields",
    "contactId": "ghl_contact_id",
}

# Field subset each narrow update event is allowed to touch
UPDATE_SCOPES = {
    "OpportunityStageUpdate": ("pipelineId", "pipelineStageId"),
    "OpportunityStatusUpdate": (),
    "OpportunityMonetaryValueUpdate": ("monetaryValue",),
    "OpportunityAssignedToUpdate": ("assignedTo",),
}


def _opportunity(event: NormalizedEvent) -> tuple[Dict[str, Any], str]:
    opportunity = event.section("opportunity")
    opportunity_id = opportunity.get("id") or event.get("opportunityId")
    if not opportunity_id:
        raise ValidationError(f"{event.event_type} is missing the opportunity id", event_type=event.event_type)
    return opportunity, opportunity_id


async def _create(event: NormalizedEvent, ctx: HandlerContext, opportunity: Dict[str, Any], opportunity_id: str, session: Any) -> bool:
    fields = pick(opportunity, OPPORTUNITY_FIELDS)

    contact_ghl_id = opportunity.get("contactId")
    if contact_ghl_id:
        contact = await ctx.projector.find("contacts", contact_ghl_id, event.tenant_id, session=session)
        if contact is not None:
            fields["contact_id"] = str(contact["_id"])

    result = await ctx.projector.upsert(
        "projects",
        opportunity_id,
        event.tenant_id,
        event=event,
        fields=fields,
        insert_fields={
            "title": "Untitled Project",
            "status": ProjectStatus.from_platform(opportunity.get("status")).value,
            "monetary_value": 0,
            "source": "webhook",
            "tags": [],
            "timeline": [],
        },
        session=session,
    )

    if result.created:
        await ctx.projector.append_timeline(
            event.tenant_id,
            opportunity_id,
            TimelineEntry.for_webhook(
                event.event_id,
                "project_created",
                "Project created from opportunity",
                event.received_at,
                cause=event.event_type,
            ),
            session=session,
        )
    return result.created


async def handle_opportunity_create(event: NormalizedEvent, ctx: HandlerContext) -> None:
    opportunity, opportunity_id = _opportunity(event)

    async with ctx.transaction() as session:
        created = await _create(event, ctx, opportunity, opportunity_id, session)
        if not created and opportunity.get("status"):
            # Project already existed (an update arrived first)
            await ctx.projector.transition_project(
                event.tenant_id,
                opportunity_id,
                ProjectStatus.from_platform(opportunity.get("status")),
                event,
                session=session,
            )


async def handle_opportunity_update(event: NormalizedEvent, ctx: HandlerContext) -> None:
    opportunity, opportunity_id = _opportunity(event)

    scope = UPDATE_SCOPES.get(event.event_type)
    if scope is None:
        fields = pick(opportunity, OPPORTUNITY_FIELDS)
    else:
        fields = pick(opportunity, {key: OPPORTUNITY_FIELDS[key] for key in scope})

    async with ctx.transaction() as session:
        project = await ctx.projector.find("projects", opportunity_id, event.tenant_id, session=session)

        if project is None:
            # Update delivered before its create
            await _create(event, ctx, opportunity, opportunity_id, session)
            return

        if project.get("deleted"):
            logger.info(
                f"Ignoring {event.event_type} for deleted project",
                extra={"opportunity_id": opportunity_id, "tenant_id": event.tenant_id}
            )
            return

        await ctx.projector.upsert(
            "projects", opportunity_id, event.tenant_id, event=event, fields=fields, upsert=False, session=session
        )

        previous_stage = project.get("pipeline_stage_id")
        new_stage = fields.get("pipeline_stage_id")
        if new_stage and new_stage != previous_stage:
            await ctx.projector.append_timeline(
                event.tenant_id,
                opportunity_id,
                TimelineEntry.for_webhook(
                    event.event_id,
                    "stage_changed",
                    "Pipeline stage changed",
                    event.received_at,
                    previous=previous_stage,
                    new=new_stage,
                    cause=event.event_type,
                ),
                session=session,
            )

        if opportunity.get("status") and event.event_type in ("OpportunityUpdate", "OpportunityStatusUpdate"):
            await ctx.projector.transition_project(
                event.tenant_id,
                opportunity_id,
                ProjectStatus.from_platform(opportunity.get("status")),
                event,
                session=session,
            )


async def handle_opportunity_delete(event: NormalizedEvent, ctx: HandlerContext) -> None:
    _, opportunity_id = _opportunity(event)

    async with ctx.transaction() as session:
        await ctx.projector.transition_project(
            event.tenant_id, opportunity_id, ProjectStatus.DELETED, event, session=session
        )
        await ctx.projector.soft_delete(
            "projects",
            opportunity_id,
            event.tenant_id,
            event=event,
            extra={"deleted_by_webhook": event.event_id},
            session=session,
        )


def opportunity_registry() -> HandlerRegistry:
    """Opportunity family; unknown subtypes take the unhandled path."""
    return (
        HandlerRegistry("opportunities")
        .register(handle_opportunity_create, "OpportunityCreate")
        .register(
            handle_opportunity_update,
            "OpportunityUpdate",
            "OpportunityStageUpdate",
            "OpportunityStatusUpdate",
            "OpportunityMonetaryValueUpdate",
            "OpportunityAssignedToUpdate",
        )
        .register(handle_opportunity_delete, "OpportunityDelete")
        .set_fallback(store_unhandled)
    )
