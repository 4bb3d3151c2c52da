"""
Kommo (amoCRM) v4 REST client.

All calls go through one RetryPolicy: 429/5xx are retried with linear backoff, any other
non-2xx raises KommoAPIError straight away.
"""

import asyncio
import re
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from kommo_bridge.logging_config import get_logger, preview
from kommo_bridge.services.errors import KommoAPIError, ValidationError
from kommo_bridge.services.retry import RetryPolicy, SleepFunc, request_with_retry

logger = get_logger("kommo_client")

BOT_MARK = "[BOT-MARK]"
MIN_CHUNK_SIZE = 600
MAX_TRIES_PER_CHUNK = 2
CHUNK_RETRY_PAUSE_SECONDS = 0.3

_API_SUFFIX_RE = re.compile(r"/api(?:/v\d+)?/*$", re.IGNORECASE)


def normalize_base_url(base_url: str = "", subdomain: str = "") -> str:
    """``https://<sub>.kommo.com`` without a trailing ``/api/vN`` or slash."""
    raw = (base_url or "").strip()
    if not raw and subdomain:
        raw = f"{clean_subdomain(subdomain)}.kommo.com"
    if not raw:
        return ""
    if not re.match(r"^https?://", raw, re.IGNORECASE):
        raw = f"https://{raw}"
    raw = raw.rstrip("/")
    return _API_SUFFIX_RE.sub("", raw).rstrip("/")


def clean_subdomain(value: str) -> str:
    """Accept ``acme``, ``acme.kommo.com`` or a full URL and return ``acme``."""
    value = re.sub(r"^https?://", "", (value or "").strip(), flags=re.IGNORECASE)
    return value.split("/")[0].split(".")[0]


def split_chunks(text: str, size: int) -> list[str]:
    return [text[i : i + size] for i in range(0, len(text), size)] if text else []


def _note_text(note: dict) -> Optional[str]:
    params = note.get("params") or {}
    message = note.get("message") or {}
    for value in (params.get("text"), note.get("text"), note.get("value"), message.get("text")):
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def pick_note_text(notes: list[dict]) -> Optional[str]:
    """Prefer a ``[BOT-MARK]`` note, otherwise the first note with text."""
    for note in notes:
        text = _note_text(note) or ""
        if text.startswith(BOT_MARK):
            marked = text[len(BOT_MARK):].strip()
            if marked:
                return marked
    for note in notes:
        text = _note_text(note)
        if text:
            return text
    return None


class KommoClient:
    def __init__(
        self,
        base_url: str = "",
        access_token: str = "",
        *,
        subdomain: str = "",
        policy: Optional[RetryPolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        sleep_func: SleepFunc = asyncio.sleep,
        transcript_chunk_size: int = 1200,
        note_chunk_pause_seconds: float = 0.2,
    ):
        self.base_url = normalize_base_url(base_url, subdomain)
        self.access_token = access_token
        self.policy = policy or RetryPolicy()
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.sleep_func = sleep_func
        self.transcript_chunk_size = transcript_chunk_size
        self.note_chunk_pause_seconds = note_chunk_pause_seconds

    @classmethod
    def from_settings(cls, settings, client: Optional[httpx.AsyncClient] = None) -> "KommoClient":
        return cls(
            settings.kommo_base_url,
            settings.kommo_access_token,
            subdomain=settings.kommo_subdomain,
            policy=RetryPolicy.from_settings(settings),
            client=client,
            transcript_chunk_size=settings.transcript_chunk_size,
            note_chunk_pause_seconds=settings.note_chunk_pause_seconds,
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.access_token)

    def api_url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        if not self.base_url:
            raise ValidationError("KOMMO_BASE_URL or KOMMO_SUBDOMAIN missing")
        return f"{self.base_url}/api/v4/{path.lstrip('/')}"

    def _headers(self, token: Optional[str] = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        bearer = token or self.access_token
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[dict] = None,
        token: Optional[str] = None,
    ) -> Any:
        url = self.api_url(path)
        logger.debug(
            "Kommo request",
            extra={"context": {"method": method, "url": url, "body": preview(json, 400) if json else None}},
        )
        response = await request_with_retry(
            self.client,
            method,
            url,
            policy=self.policy,
            sleep_func=self.sleep_func,
            json=json,
            params=params,
            headers=self._headers(token),
        )

        if not response.is_success:
            body: Any = response.text
            try:
                body = response.json()
            except ValueError:
                pass
            logger.warning(
                "Kommo request failed",
                extra={"context": {"method": method, "url": url, "status": response.status_code, "body": preview(body, 600)}},
            )
            raise KommoAPIError(response.status_code, body, path=path)

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    async def aclose(self) -> None:
        await self.client.aclose()

    # Notes

    async def _add_note(self, entity: str, entity_id: int, text: str) -> list[int]:
        payload = [{"entity_id": int(entity_id), "note_type": "common", "params": {"text": text}}]
        data = await self.request("POST", f"{entity}/notes", json=payload)
        notes = (data.get("_embedded") or {}).get("notes") or []
        return [int(n["id"]) for n in notes if n.get("id")]

    async def add_lead_note(self, lead_id: int, text: str) -> list[int]:
        return await self._add_note("leads", lead_id, text)

    async def add_contact_note(self, contact_id: int, text: str) -> list[int]:
        return await self._add_note("contacts", contact_id, text)

    async def add_lead_note_chunked(
        self, lead_id: int, text: str, chunk_size: Optional[int] = None
    ) -> list[int]:
        """Post ``text`` as consecutive notes.

        A 413 shrinks the chunk by a third (never below 600 chars) and resends the
        rest from the same offset. Each chunk gets two tries before the error propagates.
        """
        size = chunk_size or self.transcript_chunk_size
        position = 0
        note_ids: list[int] = []

        while position < len(text):
            sent = False
            last_error: Optional[KommoAPIError] = None
            for attempt in range(MAX_TRIES_PER_CHUNK):
                piece = text[position : position + size]
                try:
                    note_ids.extend(await self.add_lead_note(lead_id, piece))
                except KommoAPIError as exc:
                    last_error = exc
                    logger.warning(
                        "Note chunk failed",
                        extra={"context": {"lead_id": lead_id, "offset": position, "chunk_size": size, "try": attempt + 1, "status": exc.status_code}},
                    )
                    if exc.status_code == 413 and size > MIN_CHUNK_SIZE:
                        size = max(MIN_CHUNK_SIZE, int(size * 0.66))
                    else:
                        await self.sleep_func(CHUNK_RETRY_PAUSE_SECONDS)
                    continue
                position += len(piece)
                sent = True
                break

            if not sent:
                raise last_error
            if position < len(text):
                await self.sleep_func(self.note_chunk_pause_seconds)

        logger.info(
            "Chunked note written",
            extra={"context": {"lead_id": lead_id, "chunks": len(note_ids), "final_chunk_size": size}},
        )
        return note_ids

    async def attach_transcript(self, lead_id: int, transcript: str, title: Optional[str] = None) -> list[int]:
        transcript = (transcript or "").strip()
        if not lead_id or not transcript:
            raise ValidationError("lead_id and transcript required")
        heading = "📎 Conversación completa" + (f" — {title}" if title else "")
        header = f"{heading}\nFecha: {datetime.now(timezone.utc).isoformat()}"
        await self.add_lead_note(lead_id, header)
        return await self.add_lead_note_chunked(lead_id, transcript, self.transcript_chunk_size)

    # Leads and contacts

    async def get_lead(self, lead_id: int, with_: Optional[str] = None) -> dict:
        params = {"with": with_} if with_ else None
        return await self.request("GET", f"leads/{lead_id}", params=params)

    async def update_lead(self, lead_id: int, patch: dict) -> dict:
        return await self.request("PATCH", f"leads/{lead_id}", json=patch)

    async def find_contact(self, query: str) -> Optional[dict]:
        data = await self.request("GET", "contacts", params={"query": query, "with": "leads", "limit": 1})
        contacts = (data.get("_embedded") or {}).get("contacts") or []
        return contacts[0] if contacts else None

    async def create_contact(
        self, name: Optional[str] = None, email: Optional[str] = None, phone: Optional[str] = None
    ) -> dict:
        custom_fields = []
        if email:
            custom_fields.append({"field_code": "EMAIL", "values": [{"value": email, "enum_code": "WORK"}]})
        if phone:
            custom_fields.append({"field_code": "PHONE", "values": [{"value": phone, "enum_code": "WORK"}]})

        contact: dict[str, Any] = {"name": name or email or phone or "Contacto"}
        if custom_fields:
            contact["custom_fields_values"] = custom_fields

        data = await self.request("POST", "contacts", json=[contact])
        created = ((data.get("_embedded") or {}).get("contacts") or [{}])[0]
        if not created.get("id"):
            raise KommoAPIError(200, data, path="contacts")
        logger.info("Contact created", extra={"context": {"contact_id": created["id"]}})
        return created

    async def upsert_contact(
        self, name: Optional[str] = None, email: Optional[str] = None, phone: Optional[str] = None
    ) -> dict:
        for query in (email, phone, name):
            if not query:
                continue
            found = await self.find_contact(query)
            if found:
                logger.info("Contact matched", extra={"context": {"contact_id": found.get("id")}})
                return found
        return await self.create_contact(name=name, email=email, phone=phone)

    async def create_lead(
        self,
        name: Optional[str] = None,
        *,
        price: Optional[int] = None,
        pipeline_id: Optional[int] = None,
        status_id: Optional[int] = None,
        tags: Optional[list[str]] = None,
        custom_fields_values: Optional[list[dict]] = None,
        contact_id: Optional[int] = None,
        source: Optional[str] = None,
    ) -> dict:
        lead: dict[str, Any] = {"name": name or "Nuevo lead"}
        if price is not None:
            lead["price"] = price
        if pipeline_id:
            lead["pipeline_id"] = pipeline_id
        if status_id:
            lead["status_id"] = status_id
        if tags:
            lead["_embedded"] = {"tags": [{"name": str(t)} for t in tags]}
        if custom_fields_values:
            lead["custom_fields_values"] = custom_fields_values
        if contact_id:
            lead.setdefault("_embedded", {})["contacts"] = [{"id": int(contact_id)}]

        data = await self.request("POST", "leads", json=[lead])
        created = ((data.get("_embedded") or {}).get("leads") or [{}])[0]
        if not created.get("id"):
            raise KommoAPIError(200, data, path="leads")

        if source:
            await self.add_lead_note(created["id"], f"Origen: {source}")
        logger.info("Lead created", extra={"context": {"lead_id": created["id"], "contact_id": contact_id}})
        return created

    async def upsert_lead(
        self,
        contact: dict,
        lead: dict,
        *,
        source: Optional[str] = None,
        notes: Optional[list[str]] = None,
    ) -> dict:
        """Match or create the contact, create a lead linked to it, then write notes."""
        found = await self.upsert_contact(contact.get("name"), contact.get("email"), contact.get("phone"))
        contact_id = int(found["id"]) if found.get("id") else None
        created = await self.create_lead(
            lead.get("name") or contact.get("name"),
            price=lead.get("price"),
            pipeline_id=lead.get("pipeline_id"),
            status_id=lead.get("status_id"),
            tags=lead.get("tags"),
            custom_fields_values=lead.get("custom_fields_values"),
            contact_id=contact_id,
            source=source,
        )
        for note in notes or []:
            if note and note.strip():
                await self.add_lead_note(created["id"], note)
        return {"lead_id": int(created["id"]), "contact_id": contact_id}

    # Bot and chat delivery

    async def send_chat_message(self, chat_id: str, text: str) -> dict:
        return await self.request("POST", "chats/messages", json={"chat_id": chat_id, "message": {"text": text}})

    async def continue_salesbot(
        self, bot_id: str, continue_id: str, text: str, token: Optional[str] = None
    ) -> dict:
        payload = {
            "data": {"status": "success", "reply": text},
            "execute_handlers": [{"handler": "show", "params": {"type": "text", "value": text}}],
        }
        return await self.request("POST", f"salesbot/{bot_id}/continue/{continue_id}", json=payload, token=token)

    async def post_return_url(
        self,
        return_url: str,
        text: str,
        *,
        status: str = "success",
        token: Optional[str] = None,
    ) -> dict:
        """Resume a widget_request. The bot's first step renders ``{{json.reply}}``."""
        payload = {
            "data": {"status": status, "reply": text},
            "execute_handlers": [{"handler": "goto", "params": {"type": "question", "step": 1}}],
        }
        return await self.request("POST", return_url, json=payload, token=token)

    # Message recovery

    async def _entity_notes(self, entity: str, entity_id: int) -> list[dict]:
        data = await self.request("GET", f"{entity}/{entity_id}/notes", params={"order": "desc", "limit": 10})
        return (data.get("_embedded") or {}).get("notes") or []

    async def get_main_contact_id(self, lead_id: int) -> Optional[int]:
        data = await self.get_lead(lead_id, with_="contacts")
        contacts = (data.get("_embedded") or {}).get("contacts") or []
        main = next((c for c in contacts if c.get("is_main")), contacts[0] if contacts else None)
        return int(main["id"]) if main and main.get("id") else None

    async def get_latest_message_for_lead(self, lead_id: int) -> Optional[str]:
        """Best-effort recovery of the last user text when the webhook carried none."""
        if not lead_id:
            return None

        try:
            data = await self.get_lead(lead_id, with_="last_message")
            last = data.get("last_message") or (data.get("_embedded") or {}).get("last_message") or {}
            text = str(last.get("text") or "").strip()
            if text:
                return text
        except (KommoAPIError, httpx.HTTPError) as exc:
            logger.warning("lead.last_message unavailable", extra={"context": {"lead_id": lead_id, "error": str(exc)}})

        try:
            text = pick_note_text(await self._entity_notes("leads", lead_id))
            if text:
                return text
        except (KommoAPIError, httpx.HTTPError) as exc:
            logger.warning("Lead notes unavailable", extra={"context": {"lead_id": lead_id, "error": str(exc)}})

        try:
            contact_id = await self.get_main_contact_id(lead_id)
            if contact_id:
                return pick_note_text(await self._entity_notes("contacts", contact_id))
        except (KommoAPIError, httpx.HTTPError) as exc:
            logger.warning("Contact notes unavailable", extra={"context": {"lead_id": lead_id, "error": str(exc)}})
        return None
