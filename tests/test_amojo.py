import hashlib
import hmac
import json

import httpx
import pytest

from kommo_bridge.services.amojo import AmojoClient, md5_hex, sign_request, verify_incoming_signature
from kommo_bridge.services.errors import KommoAPIError
from kommo_bridge.services.retry import RetryPolicy


class TestSigning:
    def test_sign_request_matches_hmac_sha1(self):
        expected = hmac.new(
            b"secret", b"POST\nTue, 01 Oct 2024 10:00:00 GMT\nabc\n/v2/origin/custom/scope", hashlib.sha1
        ).hexdigest()
        assert sign_request("secret", "post", "Tue, 01 Oct 2024 10:00:00 GMT", "abc", "/v2/origin/custom/scope") == expected

    def test_verify_incoming_signature(self):
        body = b'{"message":{"text":"hola"}}'
        signature = hmac.new(b"secret", body, hashlib.sha1).hexdigest()
        assert verify_incoming_signature("secret", body, signature.upper())
        assert not verify_incoming_signature("secret", body, "deadbeef")
        assert not verify_incoming_signature("secret", body, None)
        assert not verify_incoming_signature("", body, signature)

    def test_signed_headers(self):
        client = AmojoClient("scope", "secret")
        headers = client.signed_headers('{"a":1}', date="Tue, 01 Oct 2024 10:00:00 GMT")
        assert headers["Content-MD5"] == md5_hex('{"a":1}')
        assert headers["X-Signature"] == sign_request(
            "secret", "POST", "Tue, 01 Oct 2024 10:00:00 GMT", headers["Content-MD5"], "/v2/origin/custom/scope"
        )


class TestSend:
    @pytest.mark.asyncio
    async def test_send_text_posts_signed_body(self):
        captured = {}

        def handler(request):
            captured["path"] = request.url.path
            captured["headers"] = request.headers
            captured["body"] = request.content
            return httpx.Response(200, json={"new_message": {"msgid": "m1"}})

        client = AmojoClient(
            "scope", "secret", client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )
        await client.send_text("conv-1", "hola", receiver_id="user-9")

        body = json.loads(captured["body"])
        assert captured["path"] == "/v2/origin/custom/scope"
        assert captured["headers"]["Content-MD5"] == md5_hex(captured["body"].decode("utf-8"))
        assert body["event_type"] == "new_message"
        assert body["payload"]["conversation_id"] == "conv-1"
        assert body["payload"]["receiver"] == {"id": "user-9"}

    @pytest.mark.asyncio
    async def test_rejected_send_raises(self):
        client = AmojoClient(
            "scope",
            "secret",
            policy=RetryPolicy(max_attempts=1),
            client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(403, text="no"))),
        )
        with pytest.raises(KommoAPIError):
            await client.send_text("conv-1", "hola")
