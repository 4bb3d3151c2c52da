"""Note-writer and upsert actions for trusted callers (chat front ends, the hub)."""

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, status

from kommo_bridge.config import settings
from kommo_bridge.dependencies import get_kommo_client
from kommo_bridge.logging_config import get_logger
from kommo_bridge.schemas.webhook import AddNoteRequest, AttachTranscriptRequest, NoteResponse, UpsertRequest, UpsertResponse
from kommo_bridge.services.auth import check_secret, get_request_secret
from kommo_bridge.services.errors import KommoAPIError, ValidationError
from kommo_bridge.services.kommo_client import KommoClient

logger = get_logger("kommo_actions")

router = APIRouter()


def require_bridge_secret(request: Request) -> None:
    provided = get_request_secret(request, "X-Bridge-Secret", ("secret",))
    check_secret(settings.effective_bridge_secret, provided, surface="kommo_actions", required=True)


def _upstream_error(action: str, exc: Exception) -> HTTPException:
    logger.error(f"Kommo {action} failed", extra={"context": {"error": str(exc)}})
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Kommo {action} failed: {exc}")


@router.post("/kommo/add-note", response_model=NoteResponse, dependencies=[Depends(require_bridge_secret)])
async def add_note(payload: AddNoteRequest, kommo: KommoClient = Depends(get_kommo_client)):
    text = payload.text.strip()
    if not text:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="lead_id and text required")
    try:
        if payload.chunked and len(text) > settings.note_chunk_size:
            note_ids = await kommo.add_lead_note_chunked(payload.lead_id, text, settings.note_chunk_size)
        else:
            note_ids = await kommo.add_lead_note(payload.lead_id, text)
    except (KommoAPIError, ValidationError, httpx.HTTPError) as exc:
        raise _upstream_error("add-note", exc)
    return NoteResponse(ok=True, lead_id=payload.lead_id, chunks=max(1, len(note_ids)), note_ids=note_ids)


@router.post("/kommo/attach-transcript", response_model=NoteResponse, dependencies=[Depends(require_bridge_secret)])
async def attach_transcript(payload: AttachTranscriptRequest, kommo: KommoClient = Depends(get_kommo_client)):
    if not payload.transcript.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="lead_id and transcript required")
    try:
        note_ids = await kommo.attach_transcript(payload.lead_id, payload.transcript, payload.title)
    except (KommoAPIError, ValidationError, httpx.HTTPError) as exc:
        raise _upstream_error("attach-transcript", exc)
    return NoteResponse(ok=True, lead_id=payload.lead_id, chunks=len(note_ids), note_ids=note_ids)


@router.post("/kommo/upsert", response_model=UpsertResponse, dependencies=[Depends(require_bridge_secret)])
async def upsert(payload: UpsertRequest, kommo: KommoClient = Depends(get_kommo_client)):
    contact = payload.contact
    if not (contact.name or contact.email or contact.phone):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="contact name, email or phone required")
    try:
        result = await kommo.upsert_lead(
            contact.model_dump(),
            payload.lead.model_dump(),
            source=payload.source,
            notes=payload.notes,
        )
    except (KommoAPIError, ValidationError, httpx.HTTPError) as exc:
        raise _upstream_error("upsert", exc)
    return UpsertResponse(ok=True, **result)
