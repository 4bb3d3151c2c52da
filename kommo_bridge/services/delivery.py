import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from kommo_bridge.logging_config import get_logger
from kommo_bridge.services.alert_service import alert_critical
from kommo_bridge.services.amojo import AmojoClient
from kommo_bridge.services.errors import BridgeError, DeliveryFailed
from kommo_bridge.services.kommo_client import KommoClient
from kommo_bridge.services.result import Result

logger = get_logger("delivery")


@dataclass
class DeliveryTarget:
    """Where a reply can go. Any subset of fields may be known."""

    lead_id: Optional[int] = None
    chat_id: Optional[str] = None
    bot_id: Optional[str] = None
    continue_id: Optional[str] = None
    return_url: Optional[str] = None
    widget_token: Optional[str] = None
    receiver_id: Optional[str] = None

    @property
    def has_any(self) -> bool:
        return bool(self.lead_id or self.chat_id or self.return_url or (self.bot_id and self.continue_id))


class DeliveryAdapter:
    """Send a reply through the first mechanism that works.

    Order: Salesbot continue, return URL, chat message, chunked lead note.
    """

    def __init__(
        self,
        kommo: KommoClient,
        amojo: Optional[AmojoClient] = None,
        *,
        note_chunk_size: int = 8000,
        audit_note_enabled: bool = False,
        alert_func: Callable[..., bool] = alert_critical,
    ):
        self.kommo = kommo
        self.amojo = amojo
        self.note_chunk_size = note_chunk_size
        self.audit_note_enabled = audit_note_enabled
        self.alert_func = alert_func

    def _mechanisms(self, target: DeliveryTarget, text: str, status: str):
        if target.bot_id and target.continue_id and (target.widget_token or self.kommo.access_token):
            yield "salesbot_continue", lambda: self.kommo.continue_salesbot(
                target.bot_id, target.continue_id, text, token=target.widget_token
            )
        if target.return_url:
            yield "return_url", lambda: self.kommo.post_return_url(
                target.return_url,
                text,
                status="success" if status == "success" else "error",
                token=target.widget_token,
            )
        if target.chat_id:
            if self.amojo is not None:
                yield "amojo_message", lambda: self.amojo.send_text(target.chat_id, text, target.receiver_id)
            else:
                yield "chat_message", lambda: self.kommo.send_chat_message(target.chat_id, text)
        if target.lead_id:
            yield "lead_note", lambda: self.kommo.add_lead_note_chunked(target.lead_id, text, self.note_chunk_size)

    async def deliver(
        self,
        target: DeliveryTarget,
        text: str,
        *,
        user_text: Optional[str] = None,
        status: str = "success",
    ) -> Result[str]:
        """Returns the name of the mechanism that delivered the text."""
        if not target.has_any:
            return Result.failure("no delivery target", code="no_target")

        errors: dict[str, str] = {}
        for name, send in self._mechanisms(target, text, status):
            try:
                await send()
            except (BridgeError, httpx.HTTPError) as exc:
                errors[name] = str(exc)
                logger.warning(
                    "Delivery mechanism failed",
                    extra={"context": {"mechanism": name, "lead_id": target.lead_id, "error": str(exc)}},
                )
                continue

            logger.info(
                "Reply delivered",
                extra={"context": {"mechanism": name, "lead_id": target.lead_id, "length": len(text)}},
            )
            if self.audit_note_enabled and user_text and target.lead_id and name != "lead_note":
                await self._audit(target.lead_id, user_text, text)
            return Result.success(name)

        if not errors:
            return Result.failure("no usable delivery mechanism", code="no_target")

        logger.error("All delivery mechanisms failed", extra={"context": {"lead_id": target.lead_id, "errors": errors}})
        await asyncio.to_thread(
            self.alert_func,
            "Reply delivery failed",
            {"lead_id": target.lead_id, "chat_id": target.chat_id, "errors": errors},
        )
        return Result.from_error(DeliveryFailed("; ".join(f"{k}: {v}" for k, v in errors.items())))

    async def _audit(self, lead_id: int, user_text: str, reply: str) -> None:
        try:
            await self.kommo.add_lead_note(lead_id, f"(kommo bridge)\n> Usuario: {user_text}\n> Respuesta: {reply}")
        except (BridgeError, httpx.HTTPError) as exc:
            logger.warning("Audit note failed", extra={"context": {"lead_id": lead_id, "error": str(exc)}})
