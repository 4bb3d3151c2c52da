import asyncio
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from kommo_bridge.services.assistant import FallbackAssistant, ThreadsAssistant
from kommo_bridge.services.errors import AssistantRunFailed, UpstreamTimeout
from kommo_bridge.services.normalizer import normalize
from kommo_bridge.services.pipeline import BridgePipeline, PipelineOutcome
from kommo_bridge.services.result import Result
from kommo_bridge.services.state_machine import TurnState
from tests.conftest import FakeDelivery


def kommo_event(text="Hola, quiero cotizar", lead_id="501", message_id="m-1", **extra):
    fields = {
        "message[add][0][text]": text,
        "message[add][0][entity_id]": lead_id,
        "message[add][0][id]": message_id,
        "message[add][0][type]": "incoming",
    }
    fields.update(extra)
    return normalize(fields)


@pytest.fixture
def pipeline(sessions, fake_assistant, fake_delivery):
    return BridgePipeline(sessions, fake_assistant, fake_delivery, sleep_func=AsyncMock())


class TestHandle:
    @pytest.mark.asyncio
    async def test_first_message_gets_reply(self, pipeline, sessions, fake_assistant, fake_delivery):
        outcome = await pipeline.handle(kommo_event())

        assert outcome.status == "success"
        assert outcome.ok is True
        assert outcome.reply == fake_assistant.reply
        assert outcome.conversation_key == "kommo:lead:501"
        assert outcome.delivered_via == "lead_note"
        assert fake_delivery.sent[0][0].lead_id == 501

        session = await sessions.get("kommo:lead:501")
        assert session.state == TurnState.AWAITING_USER
        assert [m.role for m in session.history] == ["system", "user", "assistant"]
        assert await sessions.get_thread_handle("kommo:lead:501") == "thread_abc"

    @pytest.mark.asyncio
    async def test_thread_handle_is_reused(self, pipeline, fake_assistant, clock):
        await pipeline.handle(kommo_event(message_id="m-1"))
        clock.advance(30)
        await pipeline.handle(kommo_event(text="¿Y el precio?", message_id="m-2"))
        assert fake_assistant.calls[1]["thread"] == "thread_abc"

    @pytest.mark.asyncio
    async def test_outbound_message_is_ignored(self, pipeline, fake_assistant):
        record = kommo_event(**{"message[add][0][type]": "outgoing"})
        outcome = await pipeline.handle(record)
        assert outcome.status == "ignored"
        assert outcome.reason == "outbound"
        assert fake_assistant.calls == []

    @pytest.mark.asyncio
    async def test_internal_author_is_ignored(self, pipeline, fake_assistant):
        record = kommo_event(**{"message[add][0][author][type]": "bot"})
        outcome = await pipeline.handle(record)
        assert outcome.reason == "internal_author"
        assert fake_assistant.calls == []

    @pytest.mark.asyncio
    async def test_placeholder_text_is_never_sent(self, pipeline, fake_assistant):
        outcome = await pipeline.handle(kommo_event(text="{{message}}"))
        assert outcome.status == "ignored"
        assert outcome.reason == "placeholder"
        assert fake_assistant.calls == []

    @pytest.mark.asyncio
    async def test_missing_text_is_recovered_from_lead(self, sessions, fake_assistant, fake_delivery):
        kommo = Mock()
        kommo.configured = True
        kommo.get_latest_message_for_lead = AsyncMock(side_effect=[None, "Hola desde nota"])
        pipeline = BridgePipeline(sessions, fake_assistant, fake_delivery, kommo=kommo, sleep_func=AsyncMock())

        outcome = await pipeline.handle(kommo_event(text=""))

        assert outcome.status == "success"
        assert fake_assistant.calls[0]["text"] == "Hola desde nota"

    @pytest.mark.asyncio
    async def test_duplicate_message_id_is_processed_once(self, pipeline, fake_assistant, clock):
        await pipeline.handle(kommo_event(message_id="m-1"))
        clock.advance(60)
        outcome = await pipeline.handle(kommo_event(message_id="m-1"))
        assert outcome.reason == "duplicate_message_id"
        assert len(fake_assistant.calls) == 1

    @pytest.mark.asyncio
    async def test_duplicate_text_within_cooldown(self, pipeline, fake_assistant, clock):
        await pipeline.handle(kommo_event(message_id="m-1"))
        clock.advance(2)
        outcome = await pipeline.handle(kommo_event(message_id="m-2"))
        assert outcome.reason == "duplicate_text"
        assert len(fake_assistant.calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_messages_invoke_assistant_once(self, pipeline, fake_assistant):
        fake_assistant.gate = asyncio.Event()

        first = asyncio.create_task(pipeline.handle(kommo_event(text="uno", message_id="m-1")))
        await asyncio.sleep(0)
        second = await pipeline.handle(kommo_event(text="dos", message_id="m-2"))
        fake_assistant.gate.set()
        first_outcome = await first

        assert second.status == "ignored"
        assert second.reason == "processing"
        assert first_outcome.status == "success"
        assert fake_assistant.max_in_flight == 1

    @pytest.mark.asyncio
    async def test_stale_turn_is_not_taken_over_while_call_runs(self, pipeline, fake_assistant, clock):
        fake_assistant.gate = asyncio.Event()

        first = asyncio.create_task(pipeline.handle(kommo_event(text="uno", message_id="m-1")))
        await asyncio.sleep(0)
        clock.advance(50)
        second = await pipeline.handle(kommo_event(text="dos", message_id="m-2"))
        fake_assistant.gate.set()
        await first

        assert second.status == "ignored"
        assert second.reason == "processing"
        assert fake_assistant.max_in_flight == 1
        assert len(fake_assistant.calls) == 1

    @pytest.mark.asyncio
    async def test_slow_assistant_is_abandoned_before_deadline(self, sessions, fake_assistant, fake_delivery):
        fake_assistant.gate = asyncio.Event()
        pipeline = BridgePipeline(sessions, fake_assistant, fake_delivery, invoke_timeout_seconds=0.05)

        outcome = await pipeline.handle(kommo_event())

        assert outcome.status == "fail"
        assert outcome.reason == "upstream_timeout"
        assert fake_assistant.in_flight == 0
        assert fake_delivery.sent[0][1] == pipeline.fallback_reply
        session = await sessions.get("kommo:lead:501")
        assert session.state == TurnState.AWAITING_USER

    def test_invoke_timeout_stays_inside_processing_deadline(self, sessions, fake_assistant):
        pipeline = BridgePipeline(sessions, fake_assistant)
        assert 0 < pipeline.invoke_timeout_seconds < sessions.processing_timeout_seconds

    @pytest.mark.asyncio
    async def test_unexpected_assistant_error_still_delivers_fallback(self, sessions, fake_delivery):
        assistant = Mock()
        assistant.invoke = AsyncMock(side_effect=KeyError("id"))
        pipeline = BridgePipeline(sessions, assistant, fake_delivery, fallback_reply="Un momento por favor")

        outcome = await pipeline.handle(kommo_event())

        assert outcome.status == "fail"
        assert outcome.reason == "upstream_rejected"
        assert fake_delivery.sent == [(fake_delivery.sent[0][0], "Un momento por favor", "fail")]
        session = await sessions.get("kommo:lead:501")
        assert session.state == TurnState.AWAITING_USER

    @pytest.mark.asyncio
    async def test_garbled_backend_falls_through_to_next(self, sessions, fake_assistant, fake_delivery):
        garbled = ThreadsAssistant(
            "sk-test",
            "asst_1",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>gateway</html>")),
            sleep_func=AsyncMock(),
        )
        pipeline = BridgePipeline(sessions, FallbackAssistant([garbled, fake_assistant]), fake_delivery)

        outcome = await pipeline.handle(kommo_event())

        assert outcome.status == "success"
        assert outcome.reply == fake_assistant.reply
        assert fake_delivery.sent[0][1] == fake_assistant.reply
        assert len(fake_assistant.calls) == 1

    @pytest.mark.asyncio
    async def test_assistant_failure_returns_fallback_and_frees_turn(self, sessions, fake_delivery, clock):
        assistant = Mock()
        assistant.invoke = AsyncMock(side_effect=UpstreamTimeout("run timed out"))
        pipeline = BridgePipeline(sessions, assistant, fake_delivery, fallback_reply="Un momento por favor")

        outcome = await pipeline.handle(kommo_event())

        assert outcome.status == "fail"
        assert outcome.ok is False
        assert outcome.reason == "upstream_timeout"
        assert outcome.reply == "Un momento por favor"
        assert fake_delivery.sent[0][2] == "fail"
        session = await sessions.get("kommo:lead:501")
        assert session.state == TurnState.AWAITING_USER
        assert [m.role for m in session.history] == ["system"]

    @pytest.mark.asyncio
    async def test_failed_run_still_persists_thread(self, sessions, fake_delivery):
        error = AssistantRunFailed("failed", "rate limited")
        error.thread_handle = "thread_kept"
        assistant = Mock()
        assistant.invoke = AsyncMock(side_effect=error)
        pipeline = BridgePipeline(sessions, assistant, fake_delivery)

        outcome = await pipeline.handle(kommo_event())

        assert outcome.reason == "assistant_run_failed"
        assert await sessions.get_thread_handle("kommo:lead:501") == "thread_kept"

    @pytest.mark.asyncio
    async def test_empty_reply_uses_empty_reply_text(self, sessions, fake_assistant, fake_delivery):
        fake_assistant.reply = "   "
        pipeline = BridgePipeline(sessions, fake_assistant, fake_delivery, empty_reply="¿Algo más?")
        outcome = await pipeline.handle(kommo_event())
        assert outcome.reply == "¿Algo más?"

    @pytest.mark.asyncio
    async def test_delivery_failure_marks_not_ok(self, sessions, fake_assistant):
        delivery = FakeDelivery(Result.failure("all failed", code="delivery_failed"))
        pipeline = BridgePipeline(sessions, fake_assistant, delivery)

        outcome = await pipeline.handle(kommo_event())

        assert outcome.status == "success"
        assert outcome.ok is False
        assert outcome.reason == "delivery_failed"

    @pytest.mark.asyncio
    async def test_web_session_key_without_crm_ids(self, pipeline, fake_delivery):
        outcome = await pipeline.handle(normalize({"text": "hola"}), session_id="abc")
        assert outcome.conversation_key == "web:abc"
        assert fake_delivery.sent == []


class TestPipelineOutcome:
    def test_to_response(self):
        response = PipelineOutcome(status="ignored", reason="outbound").to_response()
        assert response.status == "ignored"
        assert response.reason == "outbound"
        assert response.reply is None
