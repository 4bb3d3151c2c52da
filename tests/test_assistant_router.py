from kommo_bridge.services.errors import UpstreamTimeout


class TestAssistantSend:
    def test_web_session(self, client, fake_assistant, fake_delivery):
        response = client.post("/assistant/send", json={"message": "hola", "sessionId": "abc"})
        body = response.json()
        assert body == {
            "ok": True,
            "text": "Claro, te ayudo con la cotización.",
            "thread_id": "thread_abc",
            "key": "web:abc",
            "status": "success",
        }
        assert fake_delivery.sent == []

    def test_lead_reply_is_delivered_as_note(self, client, fake_delivery):
        response = client.post("/assistant/send", json={"text": "hola", "lead_id": 501})
        assert response.json()["key"] == "kommo:lead:501"
        assert fake_delivery.sent[0][0].lead_id == 501

    def test_missing_identity_is_400(self, client):
        assert client.post("/assistant/send", json={"text": "hola"}).status_code == 400
        assert client.post("/assistant/send", json={"text": " ", "session_id": "abc"}).status_code == 400

    def test_assistant_failure_returns_fallback(self, client, fake_assistant):
        fake_assistant.error = UpstreamTimeout("slow")
        body = client.post("/assistant/send", json={"text": "hola", "session_id": "abc"}).json()
        assert body["ok"] is False
        assert body["status"] == "fail"
        assert body["text"] == "Tuve un detalle técnico. ¿Puedes repetirlo?"
