import asyncio
from typing import Any, Optional

import httpx

from kommo_bridge.logging_config import get_logger
from kommo_bridge.schemas.session import ChatMessage
from kommo_bridge.services.assistant.base import AssistantBackend, AssistantReply
from kommo_bridge.services.errors import UpstreamRejected, UpstreamTimeout
from kommo_bridge.services.retry import RetryPolicy, SleepFunc, request_with_retry

logger = get_logger("assistant.chat")


class ChatCompletionsAssistant(AssistantBackend):
    """Stateless Chat Completions call over the session history."""

    name = "chat"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.6,
        system_prompt: Optional[str] = None,
        timeout_seconds: float = 20.0,
        policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep_func: SleepFunc = asyncio.sleep,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.system_prompt = system_prompt
        self.timeout_seconds = timeout_seconds
        self.policy = policy or RetryPolicy()
        self.transport = transport
        self.sleep_func = sleep_func

    def build_messages(self, history: list[ChatMessage], user_text: str) -> list[dict]:
        messages = [{"role": m.role, "content": m.content} for m in history]
        if self.system_prompt and not (messages and messages[0]["role"] == "system"):
            messages.insert(0, {"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": user_text or "Hola"})
        return messages

    async def invoke(
        self,
        thread_handle: Optional[str],
        history: list[ChatMessage],
        user_text: str,
        context: Optional[dict[str, Any]] = None,
    ) -> AssistantReply:
        payload = {
            "model": self.model,
            "messages": self.build_messages(history, user_text),
            "temperature": self.temperature,
        }
        logger.debug(f"Chat request: model={self.model}, messages_count={len(payload['messages'])}")

        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            try:
                response = await request_with_retry(
                    client,
                    "POST",
                    f"{self.base_url}/chat/completions",
                    policy=self.policy,
                    sleep_func=self.sleep_func,
                    headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                    json=payload,
                )
            except httpx.TimeoutException as exc:
                raise UpstreamTimeout("Chat completion timed out") from exc
            except httpx.HTTPError as exc:
                raise UpstreamRejected(f"Chat completion failed: {exc}") from exc

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text[:500]}")
            raise UpstreamRejected(f"OpenAI API error: {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamRejected("Chat completion returned a non-JSON body") from exc
        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list):
            raise UpstreamRejected("Chat completion response has no choices")

        content = ""
        if choices and isinstance(choices[0], dict):
            content = (choices[0].get("message") or {}).get("content") or ""
        return AssistantReply(
            text=str(content).strip(),
            thread_handle=thread_handle,
            run_status="completed",
            backend=self.name,
        )
