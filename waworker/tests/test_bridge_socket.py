from __future__ import annotations

import json

import httpx
import pytest

from waworker.bridge import BridgeSocketFactory, parse_bridge_event
from waworker.transport import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsRotated,
    PairingTokenIssued,
    SocketError,
)


def test_parse_bridge_event_variants():
    assert parse_bridge_event({"type": "creds.update", "creds": {"a": 1}}) == CredentialsRotated(
        {"a": 1}
    )
    assert parse_bridge_event({"type": "qr", "qr": "2@abc"}) == PairingTokenIssued("2@abc")
    assert parse_bridge_event({"type": "open"}) == ConnectionOpened()
    assert parse_bridge_event({"type": "close", "status_code": "401"}) == ConnectionClosed(401)
    assert parse_bridge_event({"type": "close"}) == ConnectionClosed(None)
    assert parse_bridge_event({"type": "qr"}) is None
    assert parse_bridge_event({"type": "presence"}) is None


def _bridge(handler) -> BridgeSocketFactory:
    http = httpx.AsyncClient(base_url="http://bridge", transport=httpx.MockTransport(handler))
    return BridgeSocketFactory("http://bridge", http=http)


@pytest.mark.anyio
async def test_create_socket_streams_events():
    seen = []
    lines = [
        {"type": "qr", "qr": "token"},
        {"type": "creds.update", "creds": {"me": "x"}},
        {"type": "unknown"},
        {"type": "open"},
    ]
    body = "\n".join(json.dumps(line) for line in lines) + "\nnot-json\n"

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        if request.url.path.endswith("/events"):
            return httpx.Response(200, content=body.encode("utf-8"))
        if request.method == "POST" and request.url.path == "/sessions/shop":
            assert json.loads(request.content) == {"credentials": {"k": 1}}
        return httpx.Response(200, json={"ok": True})

    factory = _bridge(handler)
    socket, events = await factory.create_socket("shop", {"k": 1})
    received = [event async for event in events]
    await socket.close()
    await factory.aclose()

    assert received == [
        PairingTokenIssued("token"),
        CredentialsRotated({"me": "x"}),
        ConnectionOpened(),
    ]
    assert ("GET", "/sessions/shop/events") in seen
    assert ("DELETE", "/sessions/shop") in seen


@pytest.mark.anyio
async def test_bridge_errors_surface_as_socket_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "unavailable"})

    factory = _bridge(handler)
    with pytest.raises(SocketError):
        await factory.create_socket("shop", None)
    await factory.aclose()
