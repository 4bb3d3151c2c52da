from typing import Optional

from fastapi import APIRouter, Depends, Request

from kommo_bridge.config import settings
from kommo_bridge.dependencies import get_pipeline
from kommo_bridge.logging_config import get_trace_logger, new_trace_id
from kommo_bridge.schemas.webhook import WebhookResponse
from kommo_bridge.services.auth import check_secret, get_request_secret
from kommo_bridge.services.normalizer import normalize, parse_body
from kommo_bridge.services.pipeline import BridgePipeline

router = APIRouter()

SECRET_QUERY_PARAMS = ("secret", "webhook_secret")


async def read_fields(request: Request) -> dict[str, str]:
    """Flat field map from the body, topped up with non-secret query parameters."""
    raw = await request.body()
    fields = parse_body(raw, request.headers.get("content-type", ""))
    for key, value in request.query_params.items():
        if key not in SECRET_QUERY_PARAMS:
            fields.setdefault(key, value)
    return fields


async def _handle_webhook(request: Request, pipeline: BridgePipeline, path_secret: Optional[str]) -> WebhookResponse:
    provided = path_secret or get_request_secret(request, "X-Webhook-Secret", SECRET_QUERY_PARAMS)
    check_secret(settings.webhook_secret, provided, surface="kommo_webhook")

    trace_id = new_trace_id()
    log = get_trace_logger("webhook", trace_id)
    fields = await read_fields(request)
    record = normalize(fields)
    log.info(
        "Kommo webhook received",
        context={
            "content_type": request.headers.get("content-type"),
            "keys": list(fields)[:20],
            "lead_id": record.lead_id,
            "chat_id": record.chat_id,
            "has_text": bool(record.text),
        },
    )

    try:
        outcome = await pipeline.handle(record, trace_id=trace_id)
    except Exception:
        log.exception("Webhook pipeline crashed")
        return WebhookResponse(status="fail", ok=False, reply=settings.fallback_reply, reason="internal_error")
    return outcome.to_response()


@router.get("/kommo/webhook")
async def kommo_webhook_check():
    return {"ok": True, "message": "Send Kommo webhooks here with POST"}


@router.post("/kommo/webhook", response_model=WebhookResponse, response_model_exclude_none=True)
async def kommo_webhook(request: Request, pipeline: BridgePipeline = Depends(get_pipeline)):
    return await _handle_webhook(request, pipeline, path_secret=None)


@router.post("/kommo/webhook/{secret}", response_model=WebhookResponse, response_model_exclude_none=True)
async def kommo_webhook_with_secret(secret: str, request: Request, pipeline: BridgePipeline = Depends(get_pipeline)):
    return await _handle_webhook(request, pipeline, path_secret=secret)
