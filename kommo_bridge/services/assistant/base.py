from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from kommo_bridge.schemas.session import ChatMessage


@dataclass
class AssistantReply:
    text: str
    thread_handle: Optional[str] = None
    run_status: Optional[str] = None
    backend: str = ""


class AssistantBackend(ABC):
    """One way of turning a user message into an assistant reply."""

    name = "base"

    @abstractmethod
    async def invoke(
        self,
        thread_handle: Optional[str],
        history: list[ChatMessage],
        user_text: str,
        context: Optional[dict[str, Any]] = None,
    ) -> AssistantReply:
        """Generate a reply. Raises UpstreamTimeout / UpstreamRejected subclasses on failure."""
        pass
