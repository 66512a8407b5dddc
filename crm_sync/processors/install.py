"""
Install Processor

Runs the post-install location setup queued by the INSTALL handler.
"""
from crm_sync.errors import ReauthorizationRequired
from crm_sync.models.events import NormalizedEvent
from crm_sync.models.queue import QueueType
from crm_sync.processors.base import BaseProcessor, HandlerContext, HandlerRegistry
from crm_sync.processors.critical import SETUP_EVENT_TYPE
from crm_sync.utils.observability import log_business_event, logger


class InstallProcessor(BaseProcessor):
    queue_type = QueueType.INSTALL

    def build_registry(self) -> HandlerRegistry:
        return HandlerRegistry("install").register(self.handle_setup_location, SETUP_EVENT_TYPE)

    async def handle_setup_location(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        location_id = event.require("locationId")

        await ctx.projector.upsert(
            "locations",
            location_id,
            None,
            event=event,
            fields={"setup_status": "in_progress", "setup_started_at": event.received_at},
            upsert=False,
        )

        try:
            access_token = await ctx.services.tokens.get_access_token(location_id)
        except ReauthorizationRequired as e:
            logger.warning(
                f"Location setup needs manual intervention: {e}",
                extra={"location_id": location_id}
            )
            await ctx.projector.upsert(
                "locations",
                location_id,
                None,
                event=event,
                fields={
                    "setup_status": "failed",
                    "needs_manual_setup": True,
                    "setup_error": str(e),
                },
                upsert=False,
            )
            raise

        results = await ctx.services.location_setup.run_setup(
            location_id, access_token, full_sync=bool(event.get("fullSync", default=True))
        )

        await ctx.projector.upsert(
            "locations",
            location_id,
            None,
            event=event,
            fields={
                "setup_status": "completed",
                "setup_completed_at": ctx.item.processing_started_at or event.received_at,
                "setup_results": results,
                "needs_manual_setup": False,
            },
            unset=["setup_error", "setup_queued"],
            upsert=False,
        )
        log_business_event("location_setup_completed", location_id, webhook_id=event.event_id)
