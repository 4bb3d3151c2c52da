"""FastAPI dependency providers. Tests replace these through ``app.dependency_overrides``."""

from functools import lru_cache
from typing import Optional

from kommo_bridge.config import settings
from kommo_bridge.services.amojo import AmojoClient
from kommo_bridge.services.assistant import build_assistant
from kommo_bridge.services.delivery import DeliveryAdapter
from kommo_bridge.services.kommo_client import KommoClient
from kommo_bridge.services.pipeline import BridgePipeline
from kommo_bridge.services.session_store import SessionStore
from kommo_bridge.services.store import build_store


@lru_cache
def get_kommo_client() -> KommoClient:
    return KommoClient.from_settings(settings)


@lru_cache
def get_amojo_client() -> Optional[AmojoClient]:
    return AmojoClient.from_settings(settings)


@lru_cache
def get_pipeline() -> BridgePipeline:
    kommo = get_kommo_client()
    delivery = DeliveryAdapter(
        kommo,
        get_amojo_client(),
        note_chunk_size=settings.note_chunk_size,
        audit_note_enabled=settings.audit_note_enabled,
    )
    return BridgePipeline(
        SessionStore.from_settings(build_store(settings), settings),
        build_assistant(settings),
        delivery,
        kommo=kommo,
        default_inbound=settings.inbound_default_when_untagged.lower() != "ignore",
        internal_markers=settings.internal_markers,
        fallback_reply=settings.fallback_reply,
        empty_reply=settings.empty_reply,
    )
