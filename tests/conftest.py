import asyncio
from typing import Optional

import pytest

from kommo_bridge.services.assistant.base import AssistantBackend, AssistantReply
from kommo_bridge.services.result import Result
from kommo_bridge.services.session_store import SessionStore
from kommo_bridge.services.store.memory import MemoryStore


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAssistant(AssistantBackend):
    """Scripted assistant that records every call."""

    name = "fake"

    def __init__(self, reply: str = "Claro, te ayudo con la cotización.", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.calls: list[dict] = []
        self.gate: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def invoke(self, thread_handle, history, user_text, context=None):
        self.calls.append({"thread": thread_handle, "history": list(history), "text": user_text, "context": context})
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.error is not None:
                raise self.error
            return AssistantReply(
                text=self.reply,
                thread_handle=thread_handle or "thread_abc",
                run_status="completed",
                backend=self.name,
            )
        finally:
            self.in_flight -= 1


class FakeDelivery:
    def __init__(self, result: Optional[Result] = None):
        self.result = result if result is not None else Result.success("lead_note")
        self.sent: list[tuple] = []

    async def deliver(self, target, text, *, user_text=None, status="success"):
        self.sent.append((target, text, status))
        return self.result


class FakeRedis:
    """Enough of redis.asyncio for the store: SET NX/PX, GET, DEL and the two Lua scripts."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.set_calls: list[dict] = []

    async def get(self, key: str):
        return self.data.get(key)

    async def set(self, key: str, value: str, ex=None, px=None, nx: bool = False):
        self.set_calls.append({"key": key, "value": value, "px": px, "nx": nx})
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    async def delete(self, key: str):
        return 1 if self.data.pop(key, None) is not None else 0

    async def eval(self, script: str, numkeys: int, key: str, *args):
        current = self.data.get(key)
        if "DEL" in script:
            if current == args[0]:
                del self.data[key]
                return 1
            return 0
        if current == args[0]:
            self.data[key] = args[1]
            return 1
        return 0

    async def aclose(self):
        return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def sessions(memory_store, clock):
    return SessionStore(memory_store, clock=clock, system_prompt="Eres un asistente amable.")


@pytest.fixture
def fake_assistant():
    return FakeAssistant()


@pytest.fixture
def fake_delivery():
    return FakeDelivery()


@pytest.fixture
def bridge_pipeline(sessions, fake_assistant, fake_delivery):
    from kommo_bridge.services.pipeline import BridgePipeline

    return BridgePipeline(sessions, fake_assistant, fake_delivery)


@pytest.fixture
def kommo_mock():
    from unittest.mock import AsyncMock, Mock

    kommo = Mock()
    kommo.configured = True
    kommo.add_lead_note = AsyncMock(return_value=[101])
    kommo.add_lead_note_chunked = AsyncMock(return_value=[101, 102])
    kommo.attach_transcript = AsyncMock(return_value=[201])
    kommo.upsert_lead = AsyncMock(return_value={"lead_id": 900, "contact_id": 44})
    kommo.post_return_url = AsyncMock(return_value={})
    kommo.get_latest_message_for_lead = AsyncMock(return_value=None)
    return kommo


@pytest.fixture
def client(bridge_pipeline, kommo_mock, monkeypatch):
    from fastapi.testclient import TestClient

    from kommo_bridge.config import settings
    from kommo_bridge.dependencies import get_kommo_client, get_pipeline
    from kommo_bridge.main import app

    monkeypatch.setattr(settings, "webhook_secret", "s3cret")
    monkeypatch.setattr(settings, "bridge_secret", "")
    app.dependency_overrides[get_pipeline] = lambda: bridge_pipeline
    app.dependency_overrides[get_kommo_client] = lambda: kommo_mock
    yield TestClient(app)
    app.dependency_overrides.clear()
