"""wabridge – Integration Tests.

Tests: Normalizer, bridge frames and HTTP commands, webhook forwarder,
PII filter.
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from wabridge.core.errors import TransportError
from wabridge.gateway.schemas import MessageKind
from wabridge.integrations.bridge import BridgeHandle, BridgeTransport, parse_frame
from wabridge.integrations.normalizer import MessageNormalizer
from wabridge.integrations.pii_filter import PIIFilter, filter_log_record
from wabridge.integrations.transport import (
    ClosedEvent,
    ContactsUpserted,
    CredentialsUpdated,
    MessageUpserted,
    QrEvent,
    ReadyEvent,
)
from wabridge.integrations.webhook import WebhookForwarder


# ──────────────────────────────────────────
# Normalizer
# ──────────────────────────────────────────


class TestNormalizer:
    def setup_method(self) -> None:
        self.normalizer = MessageNormalizer()

    def test_plain_text(self) -> None:
        event = self.normalizer.normalize(
            {
                "key": {"id": "ABC", "remoteJid": "6281234:7@s.whatsapp.net", "fromMe": False},
                "pushName": "Budi",
                "messageTimestamp": 1700000000,
                "message": {"conversation": "halo"},
            }
        )
        assert event.key_id == "ABC"
        assert event.chat_id == "6281234@s.whatsapp.net"
        assert event.sender_id == event.chat_id
        assert event.text == "halo"
        assert event.kind == MessageKind.TEXT
        assert event.timestamp.year == 2023

    def test_extended_text_in_group(self) -> None:
        event = self.normalizer.normalize(
            {
                "key": {"id": "G1", "remoteJid": "1203@g.us", "participant": "999:3@lid"},
                "message": {"extendedTextMessage": {"text": "cek link"}},
            }
        )
        assert event.is_group
        assert event.sender_id == "999@lid"
        assert event.text == "cek link"

    def test_image_caption_inside_wrapper(self) -> None:
        event = self.normalizer.normalize(
            {
                "key": {"id": "M1", "remoteJid": "6281@s.whatsapp.net"},
                "message": {"ephemeralMessage": {"message": {"imageMessage": {"caption": "bukti transfer"}}}},
            }
        )
        assert event.kind == MessageKind.IMAGE
        assert event.media_ext == "jpg"
        assert event.text == "bukti transfer"
        assert event.is_media

    @pytest.mark.parametrize(
        "raw",
        [
            {"key": {"id": "S1", "remoteJid": "status@broadcast"}, "message": {"conversation": "x"}},
            {"key": {"id": "E1", "remoteJid": "6281@s.whatsapp.net"}, "message": None},
            {"key": {"remoteJid": "6281@s.whatsapp.net"}, "message": {"conversation": "x"}},
        ],
    )
    def test_ignored_events(self, raw) -> None:
        assert self.normalizer.normalize(raw) is None


# ──────────────────────────────────────────
# Bridge transport
# ──────────────────────────────────────────


class TestBridgeFrames:
    def test_frame_types(self) -> None:
        assert parse_frame({"type": "qr", "data": {"qr": "2@abc"}}) == QrEvent(qr="2@abc")
        assert parse_frame({"type": "ready", "data": {"user_id": "628@s.whatsapp.net"}}) == ReadyEvent(
            user_id="628@s.whatsapp.net"
        )
        assert isinstance(parse_frame({"type": "contacts.upsert", "data": {"contacts": []}}), ContactsUpserted)
        assert parse_frame({"type": "messages.upsert", "data": {"message": {"key": {}}}}) == MessageUpserted(
            raw={"key": {}}
        )
        assert parse_frame({"type": "presence"}) is None

    def test_logout_detection(self) -> None:
        assert parse_frame({"type": "closed", "data": {"status_code": 401}}).logged_out is True
        assert parse_frame({"type": "closed", "data": {"logged_out": True}}).logged_out is True
        closed = parse_frame({"type": "closed", "data": {"reason": "stream error", "status_code": 515}})
        assert closed == ClosedEvent(reason="stream error", logged_out=False)

    def test_credentials_are_serialized(self) -> None:
        event = parse_frame({"type": "creds.update", "data": {"creds": {"me": "628"}}})
        assert event == CredentialsUpdated(blob=json.dumps({"me": "628"}))


class TestBridgeHandle:
    def setup_method(self) -> None:
        self.requests: list[httpx.Request] = []

    def _handle(self, status: int = 200, body: dict | None = None) -> BridgeHandle:
        def respond(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return httpx.Response(status, json=body or {})

        handle = BridgeHandle("acme shop", "https://bridge.test/", api_key="s3cret")
        handle._http = httpx.AsyncClient(transport=httpx.MockTransport(respond))
        return handle

    def test_events_url(self) -> None:
        handle = BridgeHandle("acme shop", "https://bridge.test/", api_key="s3cret")
        assert handle.events_url == "wss://bridge.test/sessions/acme%20shop/events?key=s3cret"

    @pytest.mark.anyio
    async def test_send_message(self) -> None:
        handle = self._handle(body={"id": "OUT1"})
        result = await handle.send_message("6281@s.whatsapp.net", {"text": "halo"})
        await handle.close()

        assert result == {"id": "OUT1"}
        request = self.requests[0]
        assert str(request.url) == "https://bridge.test/sessions/acme%20shop/messages"
        assert json.loads(request.content) == {"to": "6281@s.whatsapp.net", "content": {"text": "halo"}}

    @pytest.mark.anyio
    async def test_http_error_becomes_transport_error(self) -> None:
        handle = self._handle(status=500)
        with pytest.raises(TransportError):
            await handle.send_presence("composing", "6281@s.whatsapp.net")
        await handle.close()

    @pytest.mark.anyio
    async def test_invalid_json_becomes_transport_error(self) -> None:
        handle = BridgeHandle("acme shop", "https://bridge.test/", api_key="s3cret")
        handle._http = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>gateway</html>"))
        )
        with pytest.raises(TransportError):
            await handle.group_metadata("120363@g.us")
        with pytest.raises(TransportError):
            await handle.profile_picture_url("6281@s.whatsapp.net")
        await handle.close()

    @pytest.mark.anyio
    async def test_empty_picture_response_means_no_picture(self) -> None:
        handle = BridgeHandle("acme shop", "https://bridge.test/", api_key="s3cret")
        handle._http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(204)))
        assert await handle.profile_picture_url("6281@s.whatsapp.net") is None
        await handle.close()

    @pytest.mark.anyio
    async def test_connect_failure_raises_transport_error(self) -> None:
        transport = BridgeTransport("https://bridge.test")
        with patch("httpx.AsyncClient.request", new_callable=AsyncMock) as request:
            request.side_effect = httpx.ConnectError("refused")
            with pytest.raises(TransportError):
                await transport.connect("t1", None)


# ──────────────────────────────────────────
# Webhook forwarder
# ──────────────────────────────────────────


class TestWebhookForwarder:
    @pytest.mark.anyio
    async def test_no_url_means_no_delivery(self) -> None:
        assert WebhookForwarder().forward(None, {"x": 1}) is None

    @pytest.mark.anyio
    async def test_delivery(self) -> None:
        forwarder = WebhookForwarder()
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as post:
            post.return_value = httpx.Response(200, request=httpx.Request("POST", "https://crm.test/hook"))
            task = forwarder.forward("https://crm.test/hook", {"text": "halo"})
            await forwarder.drain()
        assert task.result() is True
        assert post.call_args.kwargs["json"] == {"text": "halo"}

    @pytest.mark.anyio
    async def test_failure_is_swallowed(self) -> None:
        forwarder = WebhookForwarder()
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as post:
            post.side_effect = httpx.ConnectError("down")
            assert await forwarder.post("https://crm.test/hook", {}) is False


# ──────────────────────────────────────────
# PII Filter
# ──────────────────────────────────────────


class TestPIIFilter:
    def setup_method(self) -> None:
        self.pii = PIIFilter()

    def test_masks_jid(self) -> None:
        assert self.pii.mask("from 6281234567890@s.whatsapp.net") == "from 62812****@s.whatsapp.net"

    def test_masks_phone_and_email(self) -> None:
        assert self.pii.mask("+6281234567") == "+6281****"
        assert self.pii.mask("user@example.com") == "u****@e****.com"

    def test_detects(self) -> None:
        assert self.pii.contains_pii("call +6281234567")
        assert not self.pii.contains_pii("harga berapa?")

    def test_log_processor_masks_identity_keys(self) -> None:
        record = filter_log_record(None, "info", {"event": "bridge.sent", "to": "6281234", "count": 3})
        assert record["to"] == "62812****"
        assert record["count"] == 3
        assert record["event"] == "bridge.sent"
