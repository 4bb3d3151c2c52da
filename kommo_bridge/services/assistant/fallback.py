from typing import Any, Optional

from kommo_bridge.logging_config import get_logger
from kommo_bridge.schemas.session import ChatMessage
from kommo_bridge.services.assistant.base import AssistantBackend, AssistantReply
from kommo_bridge.services.errors import BridgeError, UpstreamRejected

logger = get_logger("assistant.fallback")


class FallbackAssistant(AssistantBackend):
    """Try backends in order; the first non-empty reply wins."""

    name = "fallback"

    def __init__(self, backends: list[AssistantBackend]):
        self.backends = backends

    async def invoke(
        self,
        thread_handle: Optional[str],
        history: list[ChatMessage],
        user_text: str,
        context: Optional[dict[str, Any]] = None,
    ) -> AssistantReply:
        if not self.backends:
            raise UpstreamRejected("No assistant backend configured")

        last_error: Optional[BridgeError] = None
        last_reply: Optional[AssistantReply] = None
        for backend in self.backends:
            try:
                reply = await backend.invoke(thread_handle, history, user_text, context)
            except BridgeError as exc:
                logger.warning(
                    "Assistant backend failed, trying next",
                    extra={"context": {"backend": backend.name, "error": str(exc)}},
                )
                thread_handle = getattr(exc, "thread_handle", None) or thread_handle
                last_error = exc
                continue
            thread_handle = reply.thread_handle or thread_handle
            if reply.text:
                reply.thread_handle = thread_handle
                return reply
            last_reply = reply

        if last_reply is not None:
            last_reply.thread_handle = thread_handle
            return last_reply
        if last_error is not None and thread_handle:
            last_error.thread_handle = thread_handle
        raise last_error
