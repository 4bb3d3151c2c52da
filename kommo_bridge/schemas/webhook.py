from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field


class WebhookResponse(BaseModel):
    status: Literal["success", "fail", "ignored"]
    ok: bool = True
    reply: Optional[str] = None
    reason: Optional[str] = None
    conversation_key: Optional[str] = None
    delivered_via: Optional[str] = None


class AddNoteRequest(BaseModel):
    lead_id: int = Field(gt=0, validation_alias=AliasChoices("lead_id", "leadId"))
    text: str = Field(validation_alias=AliasChoices("text", "note", "message"))
    chunked: bool = True


class AttachTranscriptRequest(BaseModel):
    lead_id: int = Field(gt=0, validation_alias=AliasChoices("lead_id", "leadId"))
    transcript: str = Field(validation_alias=AliasChoices("transcript", "text"))
    title: Optional[str] = None


class ContactInput(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class LeadInput(BaseModel):
    name: Optional[str] = None
    price: Optional[int] = None
    pipeline_id: Optional[int] = None
    status_id: Optional[int] = None
    tags: list[str] = Field(default_factory=list)
    custom_fields_values: Optional[list[dict[str, Any]]] = None


class UpsertRequest(BaseModel):
    contact: ContactInput = Field(default_factory=ContactInput)
    lead: LeadInput = Field(default_factory=LeadInput)
    source: Optional[str] = None
    notes: list[str] = Field(default_factory=list)


class UpsertResponse(BaseModel):
    ok: bool
    lead_id: Optional[int] = None
    contact_id: Optional[int] = None


class NoteResponse(BaseModel):
    ok: bool
    lead_id: int
    chunks: int = 0
    note_ids: list[int] = Field(default_factory=list)


class AssistantSendRequest(BaseModel):
    text: str = Field(validation_alias=AliasChoices("text", "message"))
    session_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("session_id", "sessionId"))
    lead_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("lead_id", "leadId"))
    contact_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("contact_id", "contactId"))


class AssistantSendResponse(BaseModel):
    ok: bool
    text: str
    thread_id: Optional[str] = None
    key: str
    status: Literal["success", "fail", "ignored"] = "success"
