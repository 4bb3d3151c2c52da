"""amoJo Chats API: signed outgoing messages and incoming callback verification."""

import hashlib
import hmac
import json
import time
import uuid
from email.utils import formatdate
from typing import Any, Optional

import httpx

from kommo_bridge.logging_config import get_logger
from kommo_bridge.services.errors import KommoAPIError, ValidationError
from kommo_bridge.services.retry import RetryPolicy, request_with_retry

logger = get_logger("amojo")


def md5_hex(data: str) -> str:
    return hashlib.md5(data.encode("utf-8")).hexdigest()


def hmac_sha1_hex(key: str, data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hmac.new(key.encode("utf-8"), data, hashlib.sha1).hexdigest()


def sign_request(secret: str, method: str, date: str, content_md5: str, path: str) -> str:
    signing_string = "\n".join([method.upper(), date, content_md5, path])
    return hmac_sha1_hex(secret, signing_string)


def verify_incoming_signature(secret: str, raw_body: bytes | str, signature: Optional[str]) -> bool:
    if not secret or not signature:
        return False
    expected = hmac_sha1_hex(secret, raw_body)
    return hmac.compare_digest(expected.lower(), signature.strip().lower())


class AmojoClient:
    def __init__(
        self,
        scope_id: str,
        channel_secret: str,
        *,
        base_url: str = "https://amojo.kommo.com",
        policy: Optional[RetryPolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        self.scope_id = scope_id
        self.channel_secret = channel_secret
        self.base_url = base_url.rstrip("/")
        self.policy = policy or RetryPolicy()
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings, client: Optional[httpx.AsyncClient] = None) -> Optional["AmojoClient"]:
        if not (settings.kommo_scope_id and settings.kommo_channel_secret):
            return None
        return cls(
            settings.kommo_scope_id,
            settings.kommo_channel_secret,
            base_url=settings.kommo_amojo_base,
            policy=RetryPolicy.from_settings(settings),
            client=client,
        )

    @property
    def path(self) -> str:
        return f"/v2/origin/custom/{self.scope_id}"

    def signed_headers(self, body_json: str, date: Optional[str] = None) -> dict[str, str]:
        date = date or formatdate(usegmt=True)
        content_md5 = md5_hex(body_json)
        return {
            "Date": date,
            "Content-Type": "application/json",
            "Content-MD5": content_md5,
            "X-Signature": sign_request(self.channel_secret, "POST", date, content_md5, self.path),
            "Accept": "application/json",
        }

    async def send(self, body: dict) -> Any:
        if not self.scope_id:
            raise ValidationError("KOMMO_SCOPE_ID is required")
        if not self.channel_secret:
            raise ValidationError("KOMMO_CHANNEL_SECRET is required")

        body_json = json.dumps(body, ensure_ascii=False, separators=(",", ":"))
        response = await request_with_retry(
            self.client,
            "POST",
            f"{self.base_url}{self.path}",
            policy=self.policy,
            content=body_json.encode("utf-8"),
            headers=self.signed_headers(body_json),
        )
        if not response.is_success:
            logger.warning(
                "amoJo send failed",
                extra={"context": {"status": response.status_code, "body": response.text[:600]}},
            )
            raise KommoAPIError(response.status_code, response.text, path=self.path)
        try:
            return response.json()
        except ValueError:
            return {"ok": True, "raw": response.text}

    async def send_text(self, conversation_id: str, text: str, receiver_id: Optional[str] = None) -> Any:
        now = time.time()
        payload: dict[str, Any] = {
            "timestamp": int(now),
            "msec_timestamp": int(now * 1000),
            "msgid": uuid.uuid4().hex,
            "conversation_id": conversation_id,
            "sender": {"id": "kommo-bridge", "name": "Asistente"},
            "message": {"type": "text", "text": text},
            "silent": False,
        }
        if receiver_id:
            payload["receiver"] = {"id": receiver_id}
        return await self.send({"event_type": "new_message", "payload": payload})

    async def aclose(self) -> None:
        await self.client.aclose()
