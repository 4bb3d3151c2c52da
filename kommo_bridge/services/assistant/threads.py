import asyncio
from typing import Any, Optional

import httpx

from kommo_bridge.logging_config import get_logger
from kommo_bridge.schemas.session import ChatMessage
from kommo_bridge.services.assistant.base import AssistantBackend, AssistantReply
from kommo_bridge.services.errors import AssistantRunFailed, UnsupportedToolCall, UpstreamRejected, UpstreamTimeout
from kommo_bridge.services.retry import RetryPolicy, SleepFunc, request_with_retry

logger = get_logger("assistant.threads")

TERMINAL_FAILURES = ("failed", "cancelled", "expired")


def extract_message_text(message: dict) -> str:
    parts = []
    for part in message.get("content") or []:
        if part.get("type", "text") != "text":
            continue
        value = (part.get("text") or {}).get("value")
        if value:
            parts.append(value)
    return "\n".join(parts).strip()


class ThreadsAssistant(AssistantBackend):
    """OpenAI Assistants (Threads) API: thread, message, run, poll, read."""

    name = "threads"

    def __init__(
        self,
        api_key: str,
        assistant_id: str,
        *,
        base_url: str = "https://api.openai.com/v1",
        poll_interval_seconds: float = 0.6,
        poll_max_attempts: int = 40,
        timeout_seconds: float = 20.0,
        policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep_func: SleepFunc = asyncio.sleep,
    ):
        self.api_key = api_key
        self.assistant_id = assistant_id
        self.base_url = base_url.rstrip("/")
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_max_attempts = poll_max_attempts
        self.timeout_seconds = timeout_seconds
        self.policy = policy or RetryPolicy()
        self.transport = transport
        self.sleep_func = sleep_func

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "OpenAI-Beta": "assistants=v2",
        }

    async def _call(self, client: httpx.AsyncClient, method: str, path: str, **kwargs) -> dict:
        try:
            response = await request_with_retry(
                client,
                method,
                f"{self.base_url}/{path}",
                policy=self.policy,
                sleep_func=self.sleep_func,
                headers=self._headers(),
                **kwargs,
            )
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(f"OpenAI {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise UpstreamRejected(f"OpenAI {path} failed: {exc}") from exc

        if response.status_code != 200:
            logger.error(
                "OpenAI Threads error",
                extra={"context": {"path": path, "status": response.status_code, "body": response.text[:500]}},
            )
            raise UpstreamRejected(f"OpenAI API error: {response.status_code} - {path}")
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamRejected(f"OpenAI {path} returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise UpstreamRejected(f"OpenAI {path} returned an unexpected body")
        return data

    @staticmethod
    def _require_id(obj: dict, what: str) -> str:
        value = obj.get("id")
        if not value:
            raise UpstreamRejected(f"OpenAI {what} response has no id")
        return str(value)

    async def _wait_for_run(self, client: httpx.AsyncClient, thread_id: str, run_id: str) -> str:
        status = "queued"
        for _ in range(self.poll_max_attempts):
            await self.sleep_func(self.poll_interval_seconds)
            run = await self._call(client, "GET", f"threads/{thread_id}/runs/{run_id}")
            status = run.get("status", "")
            if status == "completed":
                return status
            if status in TERMINAL_FAILURES:
                detail = (run.get("last_error") or {}).get("message")
                raise AssistantRunFailed(status, detail)
            if status == "requires_action":
                await self._cancel(client, thread_id, run_id)
                raise UnsupportedToolCall(f"Run {run_id} requires tool calls, which are not supported")

        await self._cancel(client, thread_id, run_id)
        raise UpstreamTimeout(
            f"Run {run_id} still {status} after {self.poll_max_attempts} polls"
        )

    async def _cancel(self, client: httpx.AsyncClient, thread_id: str, run_id: str) -> None:
        try:
            await self._call(client, "POST", f"threads/{thread_id}/runs/{run_id}/cancel")
        except (UpstreamRejected, UpstreamTimeout) as exc:
            logger.warning("Run cancel failed", extra={"context": {"run_id": run_id, "error": str(exc)}})

    async def invoke(
        self,
        thread_handle: Optional[str],
        history: list[ChatMessage],
        user_text: str,
        context: Optional[dict[str, Any]] = None,
    ) -> AssistantReply:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            thread_id = thread_handle
            if not thread_id:
                thread = await self._call(client, "POST", "threads", json={})
                thread_id = self._require_id(thread, "thread")
                logger.info("Thread created", extra={"context": {"thread_id": thread_id}})

            try:
                await self._call(
                    client, "POST", f"threads/{thread_id}/messages", json={"role": "user", "content": user_text}
                )
                run = await self._call(
                    client, "POST", f"threads/{thread_id}/runs", json={"assistant_id": self.assistant_id}
                )
                status = await self._wait_for_run(client, thread_id, self._require_id(run, "run"))
                messages = await self._call(
                    client, "GET", f"threads/{thread_id}/messages", params={"limit": 10, "order": "desc"}
                )
                items = messages.get("data")
                if not isinstance(items, list):
                    raise UpstreamRejected(f"OpenAI messages response for {thread_id} has no data")
            except (UpstreamRejected, UpstreamTimeout) as exc:
                # the thread outlives a failed run
                exc.thread_handle = thread_id
                raise

        reply = next((m for m in items if isinstance(m, dict) and m.get("role") == "assistant"), None)
        text = extract_message_text(reply) if reply else ""
        return AssistantReply(text=text, thread_handle=thread_id, run_status=status, backend=self.name)
