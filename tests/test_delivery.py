from unittest.mock import AsyncMock, Mock

import pytest

from kommo_bridge.services.delivery import DeliveryAdapter, DeliveryTarget
from kommo_bridge.services.errors import KommoAPIError


def make_kommo(access_token="token"):
    kommo = Mock()
    kommo.access_token = access_token
    kommo.continue_salesbot = AsyncMock(return_value={})
    kommo.post_return_url = AsyncMock(return_value={})
    kommo.send_chat_message = AsyncMock(return_value={})
    kommo.add_lead_note_chunked = AsyncMock(return_value=[1])
    kommo.add_lead_note = AsyncMock(return_value=[2])
    return kommo


class TestDeliveryTarget:
    def test_has_any(self):
        assert not DeliveryTarget().has_any
        assert not DeliveryTarget(bot_id="9").has_any
        assert DeliveryTarget(bot_id="9", continue_id="c").has_any
        assert DeliveryTarget(lead_id=5).has_any


class TestDeliver:
    @pytest.mark.asyncio
    async def test_no_target(self):
        adapter = DeliveryAdapter(make_kommo(), alert_func=Mock())
        result = await adapter.deliver(DeliveryTarget(), "hola")
        assert result.error_code == "no_target"

    @pytest.mark.asyncio
    async def test_salesbot_continue_comes_first(self):
        kommo = make_kommo()
        adapter = DeliveryAdapter(kommo, alert_func=Mock())
        target = DeliveryTarget(lead_id=5, bot_id="9", continue_id="c1", return_url="https://x/ret")

        result = await adapter.deliver(target, "hola")

        assert result.value == "salesbot_continue"
        kommo.continue_salesbot.assert_awaited_once_with("9", "c1", "hola", token=None)
        kommo.post_return_url.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_return_url_maps_fail_status_to_error(self):
        kommo = make_kommo()
        adapter = DeliveryAdapter(kommo, alert_func=Mock())

        result = await adapter.deliver(
            DeliveryTarget(return_url="https://x/ret", widget_token="wt"), "fallback", status="fail"
        )

        assert result.value == "return_url"
        kommo.post_return_url.assert_awaited_once_with("https://x/ret", "fallback", status="error", token="wt")

    @pytest.mark.asyncio
    async def test_falls_through_to_lead_note(self):
        kommo = make_kommo()
        kommo.send_chat_message.side_effect = KommoAPIError(403, {}, path="chats/messages")
        adapter = DeliveryAdapter(kommo, note_chunk_size=8000, alert_func=Mock())

        result = await adapter.deliver(DeliveryTarget(lead_id=5, chat_id="chat-1"), "hola")

        assert result.value == "lead_note"
        kommo.add_lead_note_chunked.assert_awaited_once_with(5, "hola", 8000)

    @pytest.mark.asyncio
    async def test_chat_goes_through_amojo_when_configured(self):
        kommo = make_kommo()
        amojo = Mock()
        amojo.send_text = AsyncMock(return_value={})
        adapter = DeliveryAdapter(kommo, amojo, alert_func=Mock())

        result = await adapter.deliver(DeliveryTarget(chat_id="conv-1", receiver_id="u1"), "hola")

        assert result.value == "amojo_message"
        amojo.send_text.assert_awaited_once_with("conv-1", "hola", "u1")
        kommo.send_chat_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_all_mechanisms_failing_alerts(self):
        kommo = make_kommo()
        kommo.send_chat_message.side_effect = KommoAPIError(500, {}, path="chats/messages")
        kommo.add_lead_note_chunked.side_effect = KommoAPIError(500, {}, path="leads/notes")
        alert = Mock(return_value=True)
        adapter = DeliveryAdapter(kommo, alert_func=alert)

        result = await adapter.deliver(DeliveryTarget(lead_id=5, chat_id="chat-1"), "hola")

        assert not result.ok
        assert result.error_code == "delivery_failed"
        alert.assert_called_once()
        assert alert.call_args[0][1]["lead_id"] == 5

    @pytest.mark.asyncio
    async def test_audit_note_after_non_note_delivery(self):
        kommo = make_kommo()
        adapter = DeliveryAdapter(kommo, audit_note_enabled=True, alert_func=Mock())

        await adapter.deliver(DeliveryTarget(lead_id=5, chat_id="chat-1"), "¡Hola!", user_text="hola")

        kommo.add_lead_note.assert_awaited_once_with(5, "(kommo bridge)\n> Usuario: hola\n> Respuesta: ¡Hola!")
