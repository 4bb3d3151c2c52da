"""
Webhook payload normalization.

Kommo sends the same event as JSON or as form-urlencoded bodies with bracketed keys
(``messages[add][0][text]``), and the field set changes with the channel. Everything is
reduced to one flat ``{key: str}`` map first; extraction then walks ordered candidate
lists over that map and falls back to a loose key scan.
"""

import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional
from urllib.parse import parse_qsl

PLACEHOLDER_RE = re.compile(r"^\{\{.*\}\}$", re.DOTALL)
_WHITESPACE_RE = re.compile(r"\s+")

TEXT_KEYS = (
    "text",
    "message",
    "messages[add][0][text]",
    "message[add][0][text]",
    "message[text]",
    "message[payload][text]",
    "data[message][text]",
    "data[message]",
    "data[text]",
    "note[text]",
    "comment[text]",
    "last_message[text]",
)

LEAD_ID_KEYS = (
    "lead_id",
    "entity_id",
    "messages[add][0][lead_id]",
    "message[add][0][lead_id]",
    "messages[add][0][entity_id]",
    "message[add][0][entity_id]",
    "lead[id]",
    "leads[add][0][id]",
    "leads[update][0][id]",
    "leads[status][0][id]",
    "conversation[lead_id]",
    "data[lead_id]",
    "data[entity_id]",
)

CONTACT_ID_KEYS = (
    "contact_id",
    "messages[add][0][contact_id]",
    "message[add][0][contact_id]",
    "contact[id]",
    "contacts[add][0][id]",
    "contacts[update][0][id]",
    "data[contact_id]",
)

CHAT_ID_KEYS = (
    "chat_id",
    "messages[add][0][chat_id]",
    "message[add][0][chat_id]",
    "chat[id]",
    "data[chat_id]",
    "message[conversation][id]",
)

TALK_ID_KEYS = (
    "talk_id",
    "messages[add][0][talk_id]",
    "message[add][0][talk_id]",
    "talk[id]",
    "data[talk_id]",
)

MESSAGE_ID_KEYS = (
    "message_id",
    "msgid",
    "messages[add][0][id]",
    "message[add][0][id]",
    "message[id]",
    "message[message][id]",
    "data[message_id]",
)

AUTHOR_TYPE_KEYS = (
    "author_type",
    "messages[add][0][author][type]",
    "message[add][0][author][type]",
    "message[author][type]",
    "author[type]",
    "sender[type]",
    "data[author_type]",
)

DIRECTION_KEYS = (
    "direction",
    "messages[add][0][direction]",
    "message[add][0][direction]",
    "message[direction]",
    "messages[add][0][type]",
    "message[add][0][type]",
    "data[direction]",
)

_DIRECTION_ALIASES = {
    "in": "in",
    "incoming": "in",
    "inbound": "in",
    "out": "out",
    "outgoing": "out",
    "outbound": "out",
}


@dataclass
class InboundRecord:
    text: str = ""
    lead_id: Optional[int] = None
    contact_id: Optional[int] = None
    chat_id: Optional[str] = None
    talk_id: Optional[str] = None
    message_id: Optional[str] = None
    author_type: Optional[str] = None
    direction: Optional[str] = None
    placeholder_rejected: bool = False
    fields: dict[str, str] = field(default_factory=dict)


def flatten(value: Any, prefix: str = "", out: Optional[dict[str, str]] = None) -> dict[str, str]:
    """Flatten nested JSON into bracket-notation keys, the shape form bodies already use."""
    if out is None:
        out = {}
    if isinstance(value, dict):
        for key, item in value.items():
            flatten(item, f"{prefix}[{key}]" if prefix else str(key), out)
    elif isinstance(value, list):
        for index, item in enumerate(value):
            flatten(item, f"{prefix}[{index}]" if prefix else str(index), out)
    elif value is None:
        return out
    elif isinstance(value, bool):
        out[prefix] = "true" if value else "false"
    else:
        out[prefix] = str(value)
    return out


def parse_body(raw: bytes | str, content_type: str = "") -> dict[str, str]:
    """Turn a raw request body into a flat string map.

    JSON objects are flattened; form bodies keep their literal bracketed keys. Unknown
    content types are sniffed as JSON first, then as a form.
    """
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else (raw or "")
    if not text.strip():
        return {}
    ctype = (content_type or "").lower()

    if "application/x-www-form-urlencoded" in ctype:
        return _parse_form(text)

    try:
        data = json.loads(text)
    except ValueError:
        if "json" in ctype:
            return {}
        return _parse_form(text)

    if isinstance(data, dict):
        return flatten(data)
    return {}


def _parse_form(text: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for key, value in parse_qsl(text, keep_blank_values=True):
        # first occurrence wins, like URLSearchParams.get
        out.setdefault(key, value)
    return out


def is_placeholder(text: Optional[str]) -> bool:
    """Unresolved CRM template variable such as ``{{message}}``."""
    if not text:
        return False
    return bool(PLACEHOLDER_RE.match(text.strip()))


def normalize_text(text: Optional[str]) -> str:
    """Lower-cased, whitespace-collapsed form used for duplicate comparison."""
    return _WHITESPACE_RE.sub(" ", (text or "").strip()).lower()


def _first(fields: dict[str, str], keys: Iterable[str]) -> str:
    for key in keys:
        value = fields.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


def _positive_int(value: Any) -> Optional[int]:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _first_id(fields: dict[str, str], keys: Iterable[str]) -> Optional[int]:
    for key in keys:
        number = _positive_int(fields.get(key))
        if number:
            return number
    return None


def _text_candidates(fields: dict[str, str]) -> Iterable[str]:
    for key in TEXT_KEYS:
        if key in fields:
            yield fields[key]
    for key, value in fields.items():
        lower = key.lower()
        if "context" in lower:
            continue
        if "text" in lower or lower.endswith("[text]"):
            yield value


def extract_text(fields: dict[str, str]) -> tuple[str, bool]:
    """Return the first usable text and whether a placeholder was skipped on the way."""
    saw_placeholder = False
    for candidate in _text_candidates(fields):
        value = (candidate or "").strip()
        if not value:
            continue
        if is_placeholder(value):
            saw_placeholder = True
            continue
        return value, saw_placeholder
    return "", saw_placeholder


def extract_lead_id(fields: dict[str, str]) -> Optional[int]:
    lead_id = _first_id(fields, LEAD_ID_KEYS)
    if lead_id:
        return lead_id
    for key, value in fields.items():
        lower = key.lower()
        if lower.endswith(("lead_id", "lead_id]")) or ("lead" in lower and lower.endswith("[id]")):
            lead_id = _positive_int(value)
            if lead_id:
                return lead_id
    return None


def extract_contact_id(fields: dict[str, str]) -> Optional[int]:
    contact_id = _first_id(fields, CONTACT_ID_KEYS)
    if contact_id:
        return contact_id
    for key, value in fields.items():
        if key.lower().endswith(("contact_id", "contact_id]")):
            contact_id = _positive_int(value)
            if contact_id:
                return contact_id
    return None


def extract_author_type(fields: dict[str, str]) -> Optional[str]:
    value = _first(fields, AUTHOR_TYPE_KEYS)
    if not value:
        for key, item in fields.items():
            lower = key.lower()
            if lower.endswith(("[author][type]", "author_type]")) and item.strip():
                value = item.strip()
                break
    return value.lower() or None


def extract_direction(fields: dict[str, str]) -> Optional[str]:
    value = _first(fields, DIRECTION_KEYS).lower()
    if not value:
        return None
    return _DIRECTION_ALIASES.get(value, value)


def normalize(fields: dict[str, str]) -> InboundRecord:
    """Build the canonical record from a flat field map."""
    text, placeholder = extract_text(fields)
    return InboundRecord(
        text=text,
        lead_id=extract_lead_id(fields),
        contact_id=extract_contact_id(fields),
        chat_id=_first(fields, CHAT_ID_KEYS) or None,
        talk_id=_first(fields, TALK_ID_KEYS) or None,
        message_id=_first(fields, MESSAGE_ID_KEYS) or None,
        author_type=extract_author_type(fields),
        direction=extract_direction(fields),
        placeholder_rejected=placeholder and not text,
        fields=fields,
    )


def conversation_key(record: InboundRecord, session_id: Optional[str] = None) -> str:
    """Stable key: lead id, then contact id, then chat/talk id, then a fresh web id."""
    if record.lead_id:
        return f"kommo:lead:{record.lead_id}"
    if record.contact_id:
        return f"kommo:contact:{record.contact_id}"
    if record.chat_id:
        return f"kommo:chat:{record.chat_id}"
    if record.talk_id:
        return f"kommo:talk:{record.talk_id}"
    return f"web:{session_id or uuid.uuid4().hex}"
