from typing import Literal, Optional

from pydantic import BaseModel, Field

from kommo_bridge.services.state_machine import TurnState


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ConversationSession(BaseModel):
    key: str
    history: list[ChatMessage] = Field(default_factory=list)
    state: TurnState = TurnState.AWAITING_USER
    awaiting_user: bool = True
    last_user_text: Optional[str] = None
    last_user_at: Optional[float] = None
    last_reply_at: Optional[float] = None
    last_reply_text: Optional[str] = None
    processing_deadline: Optional[float] = None
    processing_token: Optional[str] = None
    created_at: Optional[float] = None
    updated_at: Optional[float] = None
