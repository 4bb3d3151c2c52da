from fastapi import APIRouter, Depends, Request

from kommo_bridge.config import settings
from kommo_bridge.dependencies import get_pipeline
from kommo_bridge.logging_config import get_trace_logger, new_trace_id
from kommo_bridge.schemas.webhook import WebhookResponse
from kommo_bridge.services.amojo import verify_incoming_signature
from kommo_bridge.services.delivery import DeliveryTarget
from kommo_bridge.services.errors import AuthError
from kommo_bridge.services.normalizer import normalize, parse_body
from kommo_bridge.services.pipeline import BridgePipeline

router = APIRouter()


@router.post("/amojo/webhook", response_model=WebhookResponse, response_model_exclude_none=True)
async def amojo_webhook(request: Request, pipeline: BridgePipeline = Depends(get_pipeline)):
    raw = await request.body()
    if not verify_incoming_signature(settings.kommo_channel_secret, raw, request.headers.get("X-Signature")):
        raise AuthError("amojo_webhook: invalid signature")

    trace_id = new_trace_id()
    log = get_trace_logger("amojo", trace_id)
    fields = parse_body(raw, request.headers.get("content-type", "application/json"))
    record = normalize(fields)
    target = DeliveryTarget(
        lead_id=record.lead_id,
        chat_id=record.chat_id,
        receiver_id=fields.get("message[sender][id]"),
    )
    log.info("amoJo message received", context={"chat_id": record.chat_id, "has_text": bool(record.text)})

    try:
        outcome = await pipeline.handle(record, target=target, trace_id=trace_id, recover_missing_text=False)
    except Exception:
        log.exception("amoJo pipeline crashed")
        return WebhookResponse(status="fail", ok=False, reply=settings.fallback_reply, reason="internal_error")
    return outcome.to_response()
