"""
Critical Processor

App lifecycle (install, uninstall, plan change) and user provisioning.
Small batches, highest priority.
"""
import datetime as dt
import secrets
from typing import Any, Dict

from crm_sync.errors import ValidationError
from crm_sync.models.events import NormalizedEvent
from crm_sync.models.queue import QueueItem, QueueType
from crm_sync.models.base import utcnow
from crm_sync.processors.base import BaseProcessor, HandlerContext, HandlerRegistry
from crm_sync.processors.projector import pick
from crm_sync.services.notification_service import WelcomeNotification
from crm_sync.utils.observability import log_business_event, logger

SETUP_EVENT_TYPE = "SETUP_LOCATION"

# Location fields cleared when the app is removed from a location
UNINSTALL_CLEARED_FIELDS = [
    # credentials
    "ghl_oauth",
    "has_location_oauth",
    "has_company_oauth",
    # install bookkeeping
    "installed_at",
    "installed_by",
    "install_webhook_id",
    "install_type",
    "install_plan_id",
    # setup
    "setup_status",
    "setup_completed_at",
    "setup_queued",
    "setup_queued_at",
    "setup_results",
    "last_setup_webhook",
    # sync progress
    "sync_progress",
    "contact_sync_status",
    "last_contact_sync",
    "conversation_sync_status",
    "last_conversation_sync",
    "appointment_sync_status",
    "last_appointment_sync",
    "last_invoice_sync",
]

INSTALL_CLEARED_FIELDS = [
    "uninstalled_at",
    "uninstalled_by",
    "uninstall_reason",
    "uninstall_webhook_id",
]

USER_FIELDS = {
    "firstName": "first_name",
    "lastName": "last_name",
    "name": "name",
    "phone": "phone",
    "role": "role",
    "permissions": "permissions",
}


class CriticalProcessor(BaseProcessor):
    queue_type = QueueType.CRITICAL

    def build_registry(self) -> HandlerRegistry:
        return (
            HandlerRegistry("critical")
            .register(self.handle_install, "INSTALL")
            .register(self.handle_uninstall, "UNINSTALL")
            .register(self.handle_plan_change, "PLAN_CHANGE")
            .register(self.handle_user_create, "UserCreate")
        )

    # ============================================
    # INSTALL
    # ============================================

    async def handle_install(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        location_id = event.get("locationId")
        company_id = event.get("companyId")
        install_type = event.get("installType", default="Location" if location_id else "Company")

        if install_type == "Location" and location_id:
            await self._install_location(event, ctx, location_id, company_id)
        elif company_id:
            await self._install_company(event, ctx, company_id)
        else:
            raise ValidationError("INSTALL carries neither locationId nor companyId", event_type=event.event_type)

    async def _install_location(self, event: NormalizedEvent, ctx: HandlerContext, location_id: str, company_id: Any) -> None:
        projector = ctx.projector

        async with ctx.transaction() as session:
            existing = await projector.find("locations", location_id, None, session=session)

            await projector.upsert(
                "locations",
                location_id,
                None,
                event=event,
                fields={
                    "app_installed": True,
                    "installed_at": event.received_at,
                    "installed_by": event.get("userId"),
                    "install_webhook_id": event.event_id,
                    "install_type": "location",
                    "install_plan_id": event.get("planId"),
                    "company_id": company_id,
                    "company_name": event.get("companyName"),
                    "setup_queued": True,
                    "setup_queued_at": event.received_at,
                    "last_setup_webhook": event.event_id,
                },
                unset=INSTALL_CLEARED_FIELDS,
                session=session,
            )

            await projector.record_event(
                "app_events",
                event,
                {
                    "type": "install",
                    "entity_type": "location",
                    "entity_id": location_id,
                    "company_id": company_id,
                    "user_id": event.get("userId"),
                    "plan_id": event.get("planId"),
                    "timestamp": event.received_at,
                    "metadata": {"company_name": event.get("companyName")},
                },
                session=session,
            )

            now = utcnow()
            await ctx.deps.queue_repo.insert_if_absent(
                QueueItem(
                    event_id=f"setup:{event.event_id}",
                    tenant_id=location_id,
                    queue_type=QueueType.INSTALL,
                    event_type=SETUP_EVENT_TYPE,
                    payload={
                        "locationId": location_id,
                        "companyId": company_id,
                        "fullSync": True,
                        "originalWebhookId": event.event_id,
                    },
                    priority=2,
                    max_attempts=ctx.settings.default_max_attempts,
                    received_at=now,
                    next_retry_at=now,
                    created_at=now,
                    updated_at=now,
                ),
                session=session,
            )

        has_credentials = bool(existing and (existing.get("ghl_oauth") or {}).get("access_token"))
        if not has_credentials and company_id:
            tokens = ctx.services.tokens
            ctx.after_commit(
                "provision location credentials",
                lambda: tokens.provision_location(company_id, location_id),
            )

        log_business_event("app_installed", location_id, company_id=company_id, webhook_id=event.event_id)

    async def _install_company(self, event: NormalizedEvent, ctx: HandlerContext, company_id: str) -> None:
        async with ctx.transaction() as session:
            await ctx.projector.upsert(
                "companies",
                company_id,
                None,
                event=event,
                fields={
                    "app_installed": True,
                    "installed_at": event.received_at,
                    "install_plan_id": event.get("planId"),
                    "company_name": event.get("companyName"),
                },
                session=session,
            )
            await ctx.projector.record_event(
                "app_events",
                event,
                {
                    "type": "install",
                    "entity_type": "company",
                    "entity_id": company_id,
                    "company_id": company_id,
                    "plan_id": event.get("planId"),
                    "timestamp": event.received_at,
                },
                session=session,
            )

        log_business_event("company_installed", company_id, webhook_id=event.event_id)

    # ============================================
    # UNINSTALL
    # ============================================

    async def handle_uninstall(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        location_id = event.get("locationId")
        company_id = event.get("companyId")
        if not location_id and not company_id:
            raise ValidationError("UNINSTALL carries neither locationId nor companyId", event_type=event.event_type)

        async with ctx.transaction() as session:
            if location_id:
                await ctx.projector.upsert(
                    "locations",
                    location_id,
                    None,
                    event=event,
                    fields={
                        "app_installed": False,
                        "uninstalled_at": event.received_at,
                        "uninstalled_by": event.get("userId"),
                        "uninstall_reason": event.get("reason", default="User uninstalled"),
                        "uninstall_webhook_id": event.event_id,
                    },
                    unset=UNINSTALL_CLEARED_FIELDS,
                    upsert=False,
                    session=session,
                )
                await ctx.db.sync_progress.delete_many({"location_id": location_id}, session=session)
                await ctx.db.users.update_many(
                    {"location_id": location_id},
                    {
                        "$set": {
                            "requires_reauth": True,
                            "reauth_reason": "App was uninstalled",
                            "updated_at": event.received_at,
                        }
                    },
                    session=session,
                )
            else:
                await ctx.projector.upsert(
                    "companies",
                    company_id,
                    None,
                    event=event,
                    fields={"app_installed": False, "uninstalled_at": event.received_at},
                    upsert=False,
                    session=session,
                )

            await ctx.projector.record_event(
                "app_events",
                event,
                {
                    "type": "uninstall",
                    "entity_type": "location" if location_id else "company",
                    "entity_id": location_id or company_id,
                    "company_id": company_id,
                    "user_id": event.get("userId"),
                    "reason": event.get("reason"),
                    "timestamp": event.received_at,
                },
                session=session,
            )

        log_business_event("app_uninstalled", location_id or company_id, webhook_id=event.event_id)

    # ============================================
    # PLAN CHANGE
    # ============================================

    async def handle_plan_change(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        location_id = event.get("locationId")
        company_id = event.get("companyId")
        new_plan_id = event.require("newPlanId", "planId", label="newPlanId")

        async with ctx.transaction() as session:
            await ctx.projector.record_event(
                "app_events",
                event,
                {
                    "type": "plan_change",
                    "entity_type": "location" if location_id else "company",
                    "entity_id": location_id or company_id,
                    "company_id": company_id,
                    "old_plan_id": event.get("oldPlanId"),
                    "new_plan_id": new_plan_id,
                    "timestamp": event.received_at,
                },
                session=session,
            )
            if location_id:
                await ctx.projector.upsert(
                    "locations",
                    location_id,
                    None,
                    event=event,
                    fields={"current_plan_id": new_plan_id, "plan_changed_at": event.received_at},
                    upsert=False,
                    session=session,
                )

    # ============================================
    # USER PROVISIONING
    # ============================================

    async def handle_user_create(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        user = event.section("user")
        user_id = user.get("id") or event.get("userId")
        if not user_id:
            raise ValidationError("UserCreate is missing the user id", event_type=event.event_type)

        location_id = event.tenant_id
        email = user.get("email")
        fields = pick(user, USER_FIELDS)
        if "name" not in fields and (user.get("firstName") or user.get("lastName")):
            fields["name"] = f"{user.get('firstName') or ''} {user.get('lastName') or ''}".strip()

        match: list[Dict[str, Any]] = [{"ghl_user_id": user_id, "location_id": location_id}]
        if email:
            match.append({"email": email, "location_id": location_id})

        async with ctx.transaction() as session:
            existing = await ctx.db.users.find_one({"$or": match}, session=session)

            if existing is not None:
                await ctx.db.users.update_one(
                    {"_id": existing["_id"]},
                    {"$set": {**fields, **ctx.projector.provenance(event)}},
                    session=session,
                )
                logger.info(f"Updated existing user {email or user_id}", extra={"location_id": location_id})
                return

            setup_token = secrets.token_urlsafe(32)
            expires_at = event.received_at + dt.timedelta(days=ctx.settings.user_setup_token_ttl_days)

            await ctx.projector.upsert(
                "users",
                user_id,
                location_id,
                event=event,
                fields=fields,
                insert_fields={
                    "email": email,
                    "role": user.get("role") or user.get("type") or "user",
                    "permissions": user.get("permissions") or ["read"],
                    "setup_token": setup_token,
                    "setup_token_expiry": expires_at,
                    "needs_setup": True,
                    "onboarding_status": "pending",
                    "is_active": True,
                    "requires_reauth": False,
                },
                session=session,
            )

        if email:
            ctx.after_commit(
                "welcome notification",
                lambda: self._send_welcome(ctx, user_id, email, fields.get("name") or user.get("firstName") or "User",
                                           location_id, setup_token, expires_at),
            )

        log_business_event("user_provisioned", location_id, user_id=user_id)

    async def _send_welcome(
        self,
        ctx: HandlerContext,
        user_id: str,
        email: str,
        name: str,
        location_id: str,
        setup_token: str,
        expires_at: dt.datetime,
    ) -> bool:
        location = await ctx.projector.find("locations", location_id, None)
        return await ctx.services.notifier.send_welcome(
            WelcomeNotification(
                user_id=user_id,
                email=email,
                name=name,
                location_id=location_id,
                location_name=(location or {}).get("name"),
                setup_url=f"{ctx.settings.setup_account_base_url}?token={setup_token}",
                expires_at=expires_at,
            )
        )
