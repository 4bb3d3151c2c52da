from typing import Optional

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, Request

from kommo_bridge.config import settings
from kommo_bridge.dependencies import get_kommo_client, get_pipeline
from kommo_bridge.logging_config import get_trace_logger, new_trace_id
from kommo_bridge.routers.webhook import SECRET_QUERY_PARAMS, read_fields
from kommo_bridge.schemas.webhook import WebhookResponse
from kommo_bridge.services.auth import check_secret, get_request_secret
from kommo_bridge.services.delivery import DeliveryTarget
from kommo_bridge.services.errors import BridgeError
from kommo_bridge.services.kommo_client import KommoClient
from kommo_bridge.services.normalizer import InboundRecord, normalize
from kommo_bridge.services.pipeline import BridgePipeline

router = APIRouter()


def _first(fields: dict[str, str], *keys: str) -> Optional[str]:
    for key in keys:
        value = (fields.get(key) or "").strip()
        if value:
            return value
    return None


def widget_target(fields: dict[str, str], record: InboundRecord) -> DeliveryTarget:
    return DeliveryTarget(
        lead_id=record.lead_id,
        bot_id=_first(fields, "bot_id", "bot[id]"),
        continue_id=_first(fields, "continue_id", "bot[continue_id]"),
        return_url=_first(fields, "return_url", "data[return_url]", "callback_url"),
        widget_token=_first(fields, "token"),
    )


async def run_widget_request(
    pipeline: BridgePipeline,
    kommo: KommoClient,
    record: InboundRecord,
    target: DeliveryTarget,
    trace_id: str,
) -> None:
    """Background half of a widget_request: answer, then resume the bot."""
    log = get_trace_logger("salesbot", trace_id)
    try:
        outcome = await pipeline.handle(record, target=target, trace_id=trace_id)
    except Exception:
        log.exception("Salesbot pipeline crashed")
        if target.return_url:
            try:
                await kommo.post_return_url(
                    target.return_url, settings.fallback_reply, status="error", token=target.widget_token
                )
            except (BridgeError, httpx.HTTPError) as exc:
                log.warning("Could not resume bot after crash", context={"error": str(exc)})
        return

    if outcome.status == "ignored" and target.return_url:
        # the bot is paused on this request and must be resumed either way
        try:
            await kommo.post_return_url(target.return_url, "", status="ignored", token=target.widget_token)
        except (BridgeError, httpx.HTTPError) as exc:
            log.warning("Could not resume bot", context={"error": str(exc), "reason": outcome.reason})
    log.info("Salesbot request finished", context={"status": outcome.status, "delivered_via": outcome.delivered_via})


@router.post("/kommo/salesbot", response_model=WebhookResponse, response_model_exclude_none=True)
async def kommo_salesbot(
    request: Request,
    background_tasks: BackgroundTasks,
    pipeline: BridgePipeline = Depends(get_pipeline),
    kommo: KommoClient = Depends(get_kommo_client),
):
    provided = get_request_secret(request, "X-Webhook-Secret", SECRET_QUERY_PARAMS)
    check_secret(settings.webhook_secret, provided, surface="kommo_salesbot")

    trace_id = new_trace_id()
    log = get_trace_logger("salesbot", trace_id)
    fields = await read_fields(request)
    record = normalize(fields)
    target = widget_target(fields, record)
    is_widget = bool(target.return_url or target.widget_token)
    log.info(
        "Salesbot request received",
        context={"widget": is_widget, "lead_id": record.lead_id, "has_text": bool(record.text)},
    )

    if is_widget:
        background_tasks.add_task(run_widget_request, pipeline, kommo, record, target, trace_id)
        return WebhookResponse(status="success", reason="accepted")

    try:
        outcome = await pipeline.handle(record, target=DeliveryTarget(), trace_id=trace_id)
    except Exception:
        log.exception("Salesbot pipeline crashed")
        return WebhookResponse(status="fail", ok=False, reply=settings.fallback_reply, reason="internal_error")
    return outcome.to_response()
