"""
Webhook Endpoints

Fire-and-forget ingestion: validate, classify, persist to the durable
queue and acknowledge with 202. Processing happens in later cron runs.
"""
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from loguru import logger

from crm_sync.api.dependencies import verify_webhook_signature
from crm_sync.errors import ValidationError
from crm_sync.models.events import IngestResult
from crm_sync.pipeline.ingestion import IngestionService, envelope_from_native, parse_envelope
from crm_sync.utils.metrics import metrics

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def _accepted(result: IngestResult) -> JSONResponse:
    return JSONResponse(
        status_code=202,
        content={
            "status": "accepted",
            "eventId": result.event_id,
            "queueType": result.queue_type.value,
            "eventType": result.event_type,
            "duplicate": result.duplicate,
        }
    )


def _rejected(error: ValidationError) -> JSONResponse:
    metrics.webhooks_rejected.inc(reason="validation")
    logger.warning(f"Webhook rejected: {error.message}")
    return JSONResponse(
        status_code=400,
        content={
            "status": "rejected",
            "error": error.message
        }
    )


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        raise ValidationError("Request body is not valid JSON") from e


@router.post("/events", status_code=202)
async def ingest_event(request: Request):
    """
    Envelope ingestion endpoint.

    Request format: {"eventId", "tenantId", "eventType", "payload"}

    Returns:
        202 with the queue the event was routed to (also for duplicates),
        400 for a malformed envelope
    """
    service: IngestionService = request.app.state.ingestion

    try:
        envelope = parse_envelope(await _read_json(request))
    except ValidationError as e:
        return _rejected(e)

    result = await service.ingest(envelope)
    return _accepted(result)


@router.post("/native", status_code=202, dependencies=[Depends(verify_webhook_signature)])
async def ingest_native(request: Request):
    """
    Native platform webhook endpoint.

    Accepts the platform's flat JSON body (`type`, `locationId`,
    `webhookId`, ...). Bodies without a webhook id are fingerprinted so
    identical replays dedupe; bodies older than NATIVE_MAX_AGE_SECONDS are
    rejected.
    """
    service: IngestionService = request.app.state.ingestion
    settings = request.app.state.settings

    try:
        envelope = envelope_from_native(
            await _read_json(request),
            max_age_seconds=settings.native_max_age_seconds,
        )
    except ValidationError as e:
        return _rejected(e)

    result = await service.ingest(envelope)
    return _accepted(result)
