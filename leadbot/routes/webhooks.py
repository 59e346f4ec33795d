# leadbot/routes/webhooks.py
from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from leadbot.core.logging import get_structlog_logger
from leadbot.dependencies import get_conversion_service, get_message_pipeline
from leadbot.services.conversions import ConversionService
from leadbot.services.message_pipeline import MessagePipeline
from leadbot.services.webhook_parser import extract_lead_id, normalize_event, parse_body

logger = get_structlog_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/kommo")
async def kommo_webhook(
    request: Request,
    pipeline: MessagePipeline = Depends(get_message_pipeline),
):
    """Entry point for every CRM webhook (form-encoded or JSON)."""
    raw = await request.body()
    payload = parse_body(raw, request.headers.get("content-type"))
    event = normalize_event(payload)

    logger.info(
        "webhook.received",
        kind=event.kind.value,
        lead_id=event.lead_id,
        pipeline_id=event.pipeline_id,
        account_id=event.account.id if event.account else None,
    )

    response = await pipeline.handle(event)

    logger.info(
        "webhook.handled",
        kind=event.kind.value,
        lead_id=event.lead_id,
        processed=response.processed,
        duplicate=response.duplicate,
        state=response.state,
    )
    return JSONResponse(content=response.to_body())


@router.get("/kommo")
async def kommo_webhook_status():
    """Lets the CRM (and operators) confirm the webhook URL is reachable."""
    return {
        "success": True,
        "message": "Kommo webhook endpoint is active",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/conversion-event")
async def conversion_event(
    request: Request,
    conversions: ConversionService = Depends(get_conversion_service),
):
    """Send the charged conversion for the lead named in the payload."""
    raw = await request.body()
    payload = parse_body(raw, request.headers.get("content-type"))
    lead_id = extract_lead_id(payload)

    result = await conversions.charged(lead_id)

    if result.is_duplicate:
        return {"success": True, "duplicate": True, "lead_id": lead_id}

    if not result.success:
        logger.warning("conversion_event.send_failed", lead_id=lead_id, error=result.error)

    return {
        "success": result.success,
        "lead_id": lead_id,
        "conversion": result.to_dict(),
    }
