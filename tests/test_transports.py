"""Tests for the websocket URL helper and the HTTP long-polling transport."""

import json

import httpx
import pytest

from services.transport.base import TransportError
from services.transport.polling_transport import PollingTransport
from services.transport.websocket_transport import WebSocketTransport, socket_url


class TestSocketUrl:

    @pytest.mark.parametrize(
        "base,expected",
        [
            ("http://localhost:8000", "ws://localhost:8000/ws?sid=abc"),
            ("https://chat.example.com/", "wss://chat.example.com/ws?sid=abc"),
            ("https://example.com/api", "wss://example.com/api/ws?sid=abc"),
            ("ws://localhost:8000", "ws://localhost:8000/ws?sid=abc"),
        ],
    )
    def test_maps_http_to_ws(self, base, expected):
        assert socket_url(base, "abc") == expected


@pytest.mark.asyncio
class TestWebSocketTransport:

    async def test_invalid_url_raises_transport_error(self):
        transport = WebSocketTransport("ftp://example.com", open_timeout=0.5)
        with pytest.raises(TransportError):
            await transport.open("abc")

    async def test_send_before_open(self):
        with pytest.raises(TransportError, match="not open"):
            await WebSocketTransport("http://localhost").send("{}")


def _polling(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://chat.test")
    return PollingTransport("http://chat.test", poll_timeout=5.0, client=client), client


@pytest.mark.asyncio
class TestPollingTransport:

    async def test_open_buffers_pending_frames_then_long_polls(self):
        requests = []
        batches = [
            [{"event": "chat:thinking", "data": {"messageId": "m1"}}],
            [{"event": "chat:token", "data": {"messageId": "m1", "token": "a"}}],
        ]

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"frames": batches.pop(0) if batches else []})

        transport, client = _polling(handler)
        await transport.open("sid1")
        stream = transport.receive()
        first = json.loads(await stream.__anext__())
        second = json.loads(await stream.__anext__())
        await stream.aclose()
        await transport.close()
        await client.aclose()

        assert first["event"] == "chat:thinking"
        assert second["data"]["token"] == "a"
        assert requests[0].url.path == "/poll/sid1"
        assert float(requests[0].url.params["timeout"]) == 0.0
        assert float(requests[1].url.params["timeout"]) == 5.0

    async def test_send_posts_a_json_array(self):
        posted = []

        def handler(request):
            if request.method == "POST":
                posted.append(json.loads(request.content))
                return httpx.Response(200, json={"accepted": 1})
            return httpx.Response(200, json={"frames": []})

        transport, client = _polling(handler)
        await transport.open("sid1")
        await transport.send('{"event": "ping"}')
        await client.aclose()

        assert posted == [[{"event": "ping"}]]

    async def test_http_error_raises_transport_error(self):
        transport, client = _polling(lambda request: httpx.Response(503))
        with pytest.raises(TransportError, match="Polling request failed"):
            await transport.open("sid1")
        await client.aclose()

    async def test_non_json_raises_transport_error(self):
        transport, client = _polling(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(TransportError, match="not JSON"):
            await transport.open("sid1")
        await client.aclose()

    async def test_send_before_open(self):
        transport = PollingTransport("http://chat.test")
        with pytest.raises(TransportError, match="not open"):
            await transport.send("{}")
