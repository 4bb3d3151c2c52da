"""
Normalize, filter, claim the turn, ask the assistant, deliver, release.

``BridgePipeline.handle`` never raises for upstream trouble: assistant failures become a
``fail`` outcome carrying the fallback reply, and the session always goes back to
``awaiting_user`` in the ``finally`` block.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

from kommo_bridge.logging_config import get_trace_logger, new_trace_id, preview
from kommo_bridge.schemas.webhook import WebhookResponse
from kommo_bridge.services.assistant.base import AssistantBackend
from kommo_bridge.services.delivery import DeliveryAdapter, DeliveryTarget
from kommo_bridge.services.errors import UpstreamRejected, UpstreamTimeout
from kommo_bridge.services.inbound_filter import classify
from kommo_bridge.services.kommo_client import KommoClient
from kommo_bridge.services.normalizer import InboundRecord, conversation_key, is_placeholder
from kommo_bridge.services.retry import SleepFunc, retry_until
from kommo_bridge.services.session_store import SessionStore

# share of the processing deadline an assistant call may use before it is abandoned
INVOKE_TIMEOUT_FRACTION = 0.8


@dataclass
class PipelineOutcome:
    status: str
    reply: Optional[str] = None
    reason: Optional[str] = None
    conversation_key: Optional[str] = None
    delivered_via: Optional[str] = None
    thread_handle: Optional[str] = None
    ok: bool = True

    def to_response(self) -> WebhookResponse:
        return WebhookResponse(
            status=self.status,
            ok=self.ok,
            reply=self.reply,
            reason=self.reason,
            conversation_key=self.conversation_key,
            delivered_via=self.delivered_via,
        )


def target_from_record(record: InboundRecord) -> DeliveryTarget:
    return DeliveryTarget(lead_id=record.lead_id, chat_id=record.chat_id)


class BridgePipeline:
    def __init__(
        self,
        sessions: SessionStore,
        assistant: AssistantBackend,
        delivery: Optional[DeliveryAdapter] = None,
        *,
        kommo: Optional[KommoClient] = None,
        default_inbound: bool = True,
        internal_markers: Optional[set[str]] = None,
        fallback_reply: str = "Tuve un detalle técnico. ¿Puedes repetirlo?",
        empty_reply: str = "Listo, ¿algo más?",
        recover_attempts: int = 6,
        recover_delay_seconds: float = 0.8,
        invoke_timeout_seconds: Optional[float] = None,
        sleep_func: SleepFunc = asyncio.sleep,
    ):
        self.sessions = sessions
        self.assistant = assistant
        self.delivery = delivery
        self.kommo = kommo
        self.default_inbound = default_inbound
        self.internal_markers = internal_markers
        self.fallback_reply = fallback_reply
        self.empty_reply = empty_reply
        self.recover_attempts = recover_attempts
        self.recover_delay_seconds = recover_delay_seconds
        self.invoke_timeout_seconds = invoke_timeout_seconds or (
            sessions.processing_timeout_seconds * INVOKE_TIMEOUT_FRACTION
        )
        self.sleep_func = sleep_func
        # keys with an assistant call running in this process
        self._active_keys: set[str] = set()

    async def _recover_text(self, record: InboundRecord, log) -> str:
        if not (record.lead_id and self.kommo is not None and self.kommo.configured):
            return ""
        text = await retry_until(
            lambda: self.kommo.get_latest_message_for_lead(record.lead_id),
            attempts=self.recover_attempts,
            delay=self.recover_delay_seconds,
            sleep_func=self.sleep_func,
        )
        if text and not is_placeholder(text):
            log.info("Recovered text from lead", context={"lead_id": record.lead_id, "text": preview(text, 120)})
            return text
        return ""

    async def _invoke(self, thread_handle, history, text, context):
        try:
            return await asyncio.wait_for(
                self.assistant.invoke(thread_handle, history, text, context),
                timeout=self.invoke_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamTimeout(f"Assistant gave no reply within {self.invoke_timeout_seconds:g}s") from exc

    async def handle(
        self,
        record: InboundRecord,
        *,
        target: Optional[DeliveryTarget] = None,
        session_id: Optional[str] = None,
        trace_id: Optional[str] = None,
        recover_missing_text: bool = True,
        extra_context: Optional[dict[str, Any]] = None,
    ) -> PipelineOutcome:
        trace_id = trace_id or new_trace_id()
        log = get_trace_logger("pipeline", trace_id)

        inbound, filter_reason = classify(
            record, default_inbound=self.default_inbound, internal_markers=self.internal_markers
        )
        if not inbound:
            log.info(
                "Ignored non-inbound message",
                context={"reason": filter_reason, "author_type": record.author_type, "direction": record.direction},
            )
            return PipelineOutcome(status="ignored", reason=filter_reason)

        text = record.text
        if not text and recover_missing_text:
            text = await self._recover_text(record, log)
        if not text:
            reason = "placeholder" if record.placeholder_rejected else "no_text"
            log.info("Ignored message without text", context={"reason": reason, "lead_id": record.lead_id})
            return PipelineOutcome(status="ignored", reason=reason)

        key = conversation_key(record, session_id)

        if not await self.sessions.mark_processed(record.message_id):
            log.info("Duplicate message id", context={"key": key, "message_id": record.message_id})
            return PipelineOutcome(status="ignored", reason="duplicate_message_id", conversation_key=key)

        if key in self._active_keys:
            log.info("Turn still running in this process", context={"key": key})
            return PipelineOutcome(status="ignored", reason="processing", conversation_key=key)

        claim = await self.sessions.begin_turn(key, text)
        if not claim.ok:
            log.info("Turn not claimed", context={"key": key, "reason": claim.error_code})
            return PipelineOutcome(status="ignored", reason=claim.error_code, conversation_key=key)
        self._active_keys.add(key)

        status = "success"
        reason: Optional[str] = None
        reply_text: Optional[str] = None
        thread_handle: Optional[str] = None
        delivered_via: Optional[str] = None
        ok = True
        context = {
            "lead_id": record.lead_id,
            "contact_id": record.contact_id,
            "talk_id": record.talk_id,
            "chat_id": record.chat_id,
            "trace_id": trace_id,
            "conversation_key": key,
            **(extra_context or {}),
        }

        try:
            thread_handle = await self.sessions.get_thread_handle(key)
            log.info("Invoking assistant", context={"key": key, "thread": thread_handle, "text": preview(text, 120)})
            try:
                reply = await self._invoke(thread_handle, claim.value.session.history, text, context)
                new_handle = reply.thread_handle
                reply_text = reply.text.strip() or self.empty_reply
            except (UpstreamTimeout, UpstreamRejected) as exc:
                new_handle = getattr(exc, "thread_handle", None)
                status = "fail"
                reason = exc.code
                reply_text = self.fallback_reply
                log.warning("Assistant failed, using fallback reply", context={"key": key, "error": str(exc)})
            except Exception as exc:
                new_handle = None
                status = "fail"
                reason = UpstreamRejected.code
                reply_text = self.fallback_reply
                log.exception(
                    "Assistant raised unexpectedly, using fallback reply", context={"key": key, "error": str(exc)}
                )

            if new_handle and new_handle != thread_handle:
                await self.sessions.set_thread_handle(key, new_handle)
                thread_handle = new_handle

            delivery_target = target or target_from_record(record)
            if self.delivery is not None and delivery_target.has_any:
                delivered = await self.delivery.deliver(delivery_target, reply_text, user_text=text, status=status)
                if delivered.ok:
                    delivered_via = delivered.value
                elif not delivered.failed_with("no_target"):
                    ok = False
                    reason = reason or delivered.error_code
        finally:
            self._active_keys.discard(key)
            await self.sessions.finish_turn(
                claim.value,
                user_text=text,
                reply_text=reply_text,
                record_history=status == "success",
            )

        log.info(
            "Turn finished",
            context={"key": key, "status": status, "delivered_via": delivered_via, "reply": preview(reply_text, 120)},
        )
        return PipelineOutcome(
            status=status,
            reply=reply_text,
            reason=reason,
            conversation_key=key,
            delivered_via=delivered_via,
            thread_handle=thread_handle,
            ok=ok and status == "success",
        )
