from kommo_bridge.schemas.session import ChatMessage, ConversationSession
from kommo_bridge.schemas.webhook import (
    AddNoteRequest,
    AssistantSendRequest,
    AssistantSendResponse,
    AttachTranscriptRequest,
    UpsertRequest,
    UpsertResponse,
    WebhookResponse,
)

__all__ = [
    "ChatMessage",
    "ConversationSession",
    "AddNoteRequest",
    "AssistantSendRequest",
    "AssistantSendResponse",
    "AttachTranscriptRequest",
    "UpsertRequest",
    "UpsertResponse",
    "WebhookResponse",
]
