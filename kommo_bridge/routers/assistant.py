from fastapi import APIRouter, Depends, HTTPException, status

from kommo_bridge.config import settings
from kommo_bridge.dependencies import get_pipeline
from kommo_bridge.logging_config import get_logger
from kommo_bridge.schemas.webhook import AssistantSendRequest, AssistantSendResponse
from kommo_bridge.services.delivery import DeliveryTarget
from kommo_bridge.services.normalizer import InboundRecord, conversation_key, is_placeholder
from kommo_bridge.services.pipeline import BridgePipeline

logger = get_logger("assistant_router")

router = APIRouter()


@router.post("/assistant/send", response_model=AssistantSendResponse)
async def assistant_send(payload: AssistantSendRequest, pipeline: BridgePipeline = Depends(get_pipeline)):
    """Web chat proxy: one user message in, the assistant's reply out."""
    text = payload.text.strip()
    if not text or not (payload.session_id or payload.lead_id or payload.contact_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Missing text or (session_id/lead_id/contact_id)"
        )

    record = InboundRecord(
        text="" if is_placeholder(text) else text,
        lead_id=payload.lead_id,
        contact_id=payload.contact_id,
        placeholder_rejected=is_placeholder(text),
    )
    key = conversation_key(record, payload.session_id)

    try:
        outcome = await pipeline.handle(
            record,
            target=DeliveryTarget(lead_id=payload.lead_id),
            session_id=payload.session_id,
            recover_missing_text=False,
        )
    except Exception:
        logger.exception("Assistant proxy crashed")
        return AssistantSendResponse(ok=False, text=settings.fallback_reply, key=key, status="fail")

    return AssistantSendResponse(
        ok=outcome.ok,
        text=outcome.reply or "",
        thread_id=outcome.thread_handle,
        key=outcome.conversation_key or key,
        status=outcome.status,
    )
