import asyncio
from typing import Any, Optional

import httpx

from kommo_bridge.logging_config import get_logger
from kommo_bridge.schemas.session import ChatMessage
from kommo_bridge.services.assistant.base import AssistantBackend, AssistantReply
from kommo_bridge.services.errors import UpstreamRejected, UpstreamTimeout
from kommo_bridge.services.retry import RetryPolicy, SleepFunc, request_with_retry

logger = get_logger("assistant.reply_api")


class ReplyApiAssistant(AssistantBackend):
    """Proprietary assistant backend exposing ``POST /api/reply``."""

    name = "reply_api"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout_seconds: float = 20.0,
        policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep_func: SleepFunc = asyncio.sleep,
    ):
        self.url = f"{base_url.rstrip('/')}/api/reply"
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.policy = policy or RetryPolicy()
        self.transport = transport
        self.sleep_func = sleep_func

    async def invoke(
        self,
        thread_handle: Optional[str],
        history: list[ChatMessage],
        user_text: str,
        context: Optional[dict[str, Any]] = None,
    ) -> AssistantReply:
        context = context or {}
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = {
            "message": user_text,
            "leadId": context.get("lead_id"),
            "contactId": context.get("contact_id"),
            "talkId": context.get("talk_id"),
            "subdomain": context.get("subdomain"),
            "traceId": context.get("trace_id"),
        }

        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            try:
                response = await request_with_retry(
                    client,
                    "POST",
                    self.url,
                    policy=self.policy,
                    sleep_func=self.sleep_func,
                    headers=headers,
                    json=body,
                )
            except httpx.TimeoutException as exc:
                raise UpstreamTimeout("Assistant backend timed out") from exc
            except httpx.HTTPError as exc:
                raise UpstreamRejected(f"Assistant backend failed: {exc}") from exc

        if not response.is_success:
            logger.warning(
                "Assistant backend error",
                extra={"context": {"status": response.status_code, "body": response.text[:200]}},
            )
            raise UpstreamRejected(f"Assistant backend HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamRejected("Assistant backend returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise UpstreamRejected("Assistant backend returned an unexpected body")
        reply = data.get("reply") or data.get("text") or data.get("answer") or ""
        return AssistantReply(
            text=str(reply).strip(),
            thread_handle=thread_handle,
            run_status="completed",
            backend=self.name,
        )
