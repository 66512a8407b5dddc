"""
Financial Processor

Invoices, orders, products and prices. Invoice writes that affect a linked
project update the project's financial summary in the same transaction.
"""
from typing import Any, Dict, Optional

from crm_sync.errors import ValidationError
from crm_sync.models.entities import TimelineEntry
from crm_sync.models.events import NormalizedEvent
from crm_sync.models.queue import QueueType
from crm_sync.processors.base import BaseProcessor, HandlerContext, HandlerRegistry
from crm_sync.processors.projector import parse_timestamp, pick
from crm_sync.utils.observability import logger

# Written on every invoice event that carries them
INVOICE_DESCRIPTIVE_FIELDS = {
    "name": "name",
    "amount": "amount",
    "items": "items",
    "taxes": "taxes",
    "discounts": "discounts",
    "notes": "notes",
    "terms": "terms",
    "metadata": "metadata",
}

# Also settable by InvoiceUpdate, but only ever initialized by InvoiceCreate
INVOICE_STATE_FIELDS = {
    "status": "status",
    "amountPaid": "amount_paid",
    "amountDue": "amount_due",
    "currency": "currency",
}

ORDER_FIELDS = {
    "contactId": "contact_id",
    "orderNumber": "order_number",
    "status": "status",
    "amount": "amount",
    "currency": "currency",
    "items": "items",
    "shippingAddress": "shipping_address",
    "billingAddress": "billing_address",
    "paymentStatus": "payment_status",
    "fulfillmentStatus": "fulfillment_status",
    "notes": "notes",
    "metadata": "metadata",
}

CATALOG_FIELDS = {
    "name": "name",
    "description": "description",
    "productType": "product_type",
    "productId": "product_id",
    "priceType": "price_type",
    "amount": "amount",
    "currency": "currency",
    "recurring": "recurring",
    "availableInStore": "available_in_store",
    "image": "image",
}


def _money(value: Any) -> float:
    try:
        return round(float(value or 0), 2)
    except (TypeError, ValueError):
        return 0.0


class FinancialProcessor(BaseProcessor):
    queue_type = QueueType.FINANCIAL

    def build_registry(self) -> HandlerRegistry:
        return (
            HandlerRegistry("financial")
            .register(self.handle_invoice_create, "InvoiceCreate")
            .register(self.handle_invoice_update, "InvoiceUpdate")
            .register(self.handle_invoice_delete, "InvoiceDelete")
            .register(self.handle_invoice_void, "InvoiceVoid")
            .register(self.handle_invoice_paid, "InvoicePaid")
            .register(self.handle_invoice_partially_paid, "InvoicePartiallyPaid")
            .register(self.handle_order_create, "OrderCreate")
            .register(self.handle_order_status_update, "OrderStatusUpdate")
            .register(self.handle_catalog_event, "ProductCreate", "ProductUpdate", "ProductDelete")
            .register(self.handle_catalog_event, "PriceCreate", "PriceUpdate", "PriceDelete")
        )

    # ============================================
    # INVOICES
    # ============================================

    @staticmethod
    def _invoice(event: NormalizedEvent) -> tuple[Dict[str, Any], str]:
        invoice = event.section("invoice")
        invoice_id = invoice.get("id") or invoice.get("_id") or event.get("invoiceId")
        if not invoice_id:
            raise ValidationError(f"{event.event_type} is missing the invoice id", event_type=event.event_type)
        return invoice, invoice_id

    async def handle_invoice_create(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        invoice, invoice_id = self._invoice(event)
        await self._write_invoice(event, ctx, invoice, invoice_id, "invoice_created")

    async def _write_invoice(
        self,
        event: NormalizedEvent,
        ctx: HandlerContext,
        invoice: Dict[str, Any],
        invoice_id: str,
        timeline_event: str,
    ) -> None:
        fields = pick(invoice, INVOICE_DESCRIPTIVE_FIELDS)
        if "amount" in fields:
            fields["amount"] = _money(fields["amount"])
        if invoice.get("dueDate"):
            fields["due_date"] = parse_timestamp(invoice.get("dueDate"))

        amount = _money(invoice.get("amount"))
        amount_paid = _money(invoice.get("amountPaid"))
        insert_fields = {
            "status": invoice.get("status") or "draft",
            "amount_paid": amount_paid,
            "amount_due": _money(invoice.get("amountDue")) if invoice.get("amountDue") is not None else round(amount - amount_paid, 2),
            "invoice_number": invoice.get("invoiceNumber"),
            "contact_id": invoice.get("contactId") or (invoice.get("contactDetails") or {}).get("id"),
            "opportunity_id": invoice.get("opportunityId"),
            "currency": invoice.get("currency") or "USD",
            "issue_date": parse_timestamp(invoice.get("issueDate")) or event.received_at,
        }

        async with ctx.transaction() as session:
            await ctx.projector.upsert(
                "invoices",
                invoice_id,
                event.tenant_id,
                event=event,
                fields=fields,
                insert_fields=insert_fields,
                session=session,
            )
            await self._sync_project(event, ctx, invoice_id, timeline_event, session)

    async def handle_invoice_update(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        invoice, invoice_id = self._invoice(event)

        existing = await ctx.projector.find("invoices", invoice_id, event.tenant_id)
        if existing is None:
            # Update delivered ahead of its create
            await self._write_invoice(event, ctx, invoice, invoice_id, "invoice_created")
            return

        fields = {**pick(invoice, INVOICE_DESCRIPTIVE_FIELDS), **pick(invoice, INVOICE_STATE_FIELDS)}
        for name in ("amount", "amount_paid", "amount_due"):
            if name in fields:
                fields[name] = _money(fields[name])
        if invoice.get("dueDate"):
            fields["due_date"] = parse_timestamp(invoice.get("dueDate"))

        async with ctx.transaction() as session:
            await ctx.projector.upsert(
                "invoices", invoice_id, event.tenant_id, event=event, fields=fields, session=session
            )
            await self._sync_project(event, ctx, invoice_id, None, session)

    async def handle_invoice_delete(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        _, invoice_id = self._invoice(event)
        async with ctx.transaction() as session:
            await ctx.projector.soft_delete(
                "invoices",
                invoice_id,
                event.tenant_id,
                event=event,
                extra={"status": "deleted", "deleted_by_webhook": event.event_id},
                session=session,
            )
            await self._sync_project(event, ctx, invoice_id, None, session)

    async def handle_invoice_void(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        _, invoice_id = self._invoice(event)
        async with ctx.transaction() as session:
            await ctx.projector.upsert(
                "invoices",
                invoice_id,
                event.tenant_id,
                event=event,
                fields={
                    "status": "void",
                    "voided_at": event.received_at,
                    "voided_by_webhook": event.event_id,
                },
                upsert=False,
                session=session,
            )
            await self._sync_project(event, ctx, invoice_id, "invoice_voided", session)

    async def handle_invoice_paid(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        invoice, invoice_id = self._invoice(event)

        async with ctx.transaction() as session:
            existing = await ctx.projector.find("invoices", invoice_id, event.tenant_id, session=session)
            amount = invoice.get("amount")
            if amount is None:
                amount = (existing or {}).get("amount", invoice.get("amountPaid"))
            amount = _money(amount)

            await ctx.projector.upsert(
                "invoices",
                invoice_id,
                event.tenant_id,
                event=event,
                fields={
                    "status": "paid",
                    "paid_at": event.received_at,
                    "amount": amount,
                    "amount_paid": amount,
                    "amount_due": 0.0,
                    "payment_details": invoice.get("paymentDetails") or {},
                },
                insert_fields={
                    "invoice_number": invoice.get("invoiceNumber"),
                    "contact_id": invoice.get("contactId"),
                    "opportunity_id": invoice.get("opportunityId"),
                    "currency": invoice.get("currency") or "USD",
                },
                session=session,
            )
            await self._sync_project(event, ctx, invoice_id, "invoice_paid", session)

    async def handle_invoice_partially_paid(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        invoice, invoice_id = self._invoice(event)
        amount_paid = _money(invoice.get("amountPaid"))
        if invoice.get("amountDue") is not None:
            amount_due = _money(invoice.get("amountDue"))
        else:
            amount_due = round(_money(invoice.get("amount")) - amount_paid, 2)

        async with ctx.transaction() as session:
            await ctx.projector.upsert(
                "invoices",
                invoice_id,
                event.tenant_id,
                event=event,
                fields={
                    "status": "partially_paid",
                    "amount_paid": amount_paid,
                    "amount_due": amount_due,
                    "last_payment_date": event.received_at,
                },
                insert_fields={
                    "amount": _money(invoice.get("amount")),
                    "invoice_number": invoice.get("invoiceNumber"),
                    "contact_id": invoice.get("contactId"),
                    "opportunity_id": invoice.get("opportunityId"),
                    "currency": invoice.get("currency") or "USD",
                },
                session=session,
            )
            # One payment entry per webhook
            await ctx.db.invoices.update_one(
                {
                    **ctx.projector.anchor("invoices", invoice_id, event.tenant_id),
                    "payments.webhook_id": {"$ne": event.event_id},
                },
                {
                    "$push": {
                        "payments": {
                            "amount": _money(invoice.get("lastPaymentAmount")),
                            "date": event.received_at,
                            "method": invoice.get("paymentMethod") or "unknown",
                            "reference": invoice.get("paymentReference") or "",
                            "webhook_id": event.event_id,
                        }
                    }
                },
                session=session,
            )
            await self._sync_project(event, ctx, invoice_id, "invoice_partially_paid", session)

    async def _sync_project(
        self,
        event: NormalizedEvent,
        ctx: HandlerContext,
        invoice_id: str,
        timeline_event: Optional[str],
        session: Any,
    ) -> None:
        """Recompute the linked project's financials and optionally add a timeline entry."""
        stored = await ctx.projector.find("invoices", invoice_id, event.tenant_id, session=session)
        opportunity_id = (stored or {}).get("opportunity_id") or event.section("invoice").get("opportunityId")
        if not opportunity_id:
            return

        summary = await ctx.projector.refresh_project_financials(
            event.tenant_id, opportunity_id, event, session=session
        )
        if summary is None or timeline_event is None:
            return

        label = (stored or {}).get("invoice_number") or invoice_id
        await ctx.projector.append_timeline(
            event.tenant_id,
            opportunity_id,
            TimelineEntry.for_webhook(
                event.event_id,
                timeline_event,
                f"Invoice {label} - {timeline_event.replace('_', ' ')}",
                event.received_at,
                cause=event.event_type,
                metadata={
                    "invoice_id": invoice_id,
                    "amount": (stored or {}).get("amount"),
                    "status": (stored or {}).get("status"),
                },
            ),
            session=session,
        )

    # ============================================
    # ORDERS
    # ============================================

    async def handle_order_create(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        order = event.section("order")
        order_id = order.get("id") or event.require("orderId", label="order.id")

        fields = pick(order, ORDER_FIELDS)
        await ctx.projector.upsert(
            "orders",
            order_id,
            event.tenant_id,
            event=event,
            fields=fields,
            insert_fields={
                "status": "pending",
                "currency": "USD",
                "payment_status": "pending",
                "fulfillment_status": "unfulfilled",
            },
        )

    async def handle_order_status_update(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        order = event.section("order")
        order_id = order.get("id") or event.require("orderId", label="order.id")

        fields = pick(order, {
            "status": "status",
            "paymentStatus": "payment_status",
            "fulfillmentStatus": "fulfillment_status",
        })
        fields["status_updated_at"] = event.received_at
        await ctx.projector.upsert("orders", order_id, event.tenant_id, event=event, fields=fields)

    # ============================================
    # CATALOG
    # ============================================

    async def handle_catalog_event(self, event: NormalizedEvent, ctx: HandlerContext) -> None:
        if event.event_type.startswith("Product"):
            collection, store, section = "products", "product_events", "product"
        else:
            collection, store, section = "prices", "price_events", "price"

        body = event.section(section)
        entity_id = body.get("id") or body.get("_id") or event.get(f"{section}Id")
        if not entity_id:
            raise ValidationError(f"{event.event_type} is missing the {section} id", event_type=event.event_type)

        async with ctx.transaction() as session:
            if event.event_type.endswith("Delete"):
                await ctx.projector.soft_delete(collection, entity_id, event.tenant_id, event=event, session=session)
            else:
                await ctx.projector.upsert(
                    collection,
                    entity_id,
                    event.tenant_id,
                    event=event,
                    fields=pick(body, CATALOG_FIELDS),
                    session=session,
                )
            stored = await ctx.projector.record_event(
                store,
                event,
                {"type": event.event_type, "entity_id": entity_id, "payload": event.data},
                session=session,
            )

        if not stored:
            logger.debug(f"{event.event_type} {entity_id} already recorded", extra={"webhook_id": event.event_id})
