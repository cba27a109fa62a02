"""
tests/test_websocket.py — Live Metrics Socket
==============================================
Handshake authentication, the initial snapshot, ping/pong and a broadcast
tick delivered through the real ``/ws`` endpoint.
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import TEST_JWT_SECRET, FakeClock, auth
from opsdash.api.routes.socket import UNAUTHORIZED_CLOSE
from opsdash.services.hub import GOING_AWAY
from opsdash.services.session import SessionAuthority


class TestHandshake:
    def test_missing_token_rejected(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws"):
                pass
        assert exc_info.value.code == UNAUTHORIZED_CLOSE

    def test_bad_token_rejected(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws?token=garbage"):
                pass
        assert exc_info.value.code == UNAUTHORIZED_CLOSE

    def test_expired_token_rejected(self, client):
        old = SessionAuthority(TEST_JWT_SECRET, clock=FakeClock(datetime(2020, 1, 1, tzinfo=UTC)))
        token = old.mint(subject_id=1, email="bob@x.com", name="Bob", picture=None, role="user")
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/ws?token={token}"):
                pass
        assert exc_info.value.code == UNAUTHORIZED_CLOSE


class TestStream:
    def test_initial_snapshot_then_pong(self, client, make_token):
        with client.websocket_connect(f"/ws?token={make_token()}") as ws:
            first = ws.receive_json()
            assert first["event"] == "metrics"
            assert first["data"]["hostname"] == "test-host"
            assert client.app.state.services.hub.size == 1

            ws.send_json({"event": "ping"})
            pong = ws.receive_json()
            assert pong["event"] == "pong"
            assert "ts" in pong["data"]

    def test_bearer_header_handshake(self, client, make_token):
        with client.websocket_connect("/ws", headers=auth(make_token())) as ws:
            assert ws.receive_json()["event"] == "metrics"

    def test_broadcast_tick_reaches_socket(self, client, make_token, metrics):
        hub = client.app.state.services.hub
        with client.websocket_connect(f"/ws?token={make_token()}") as ws:
            initial = ws.receive_json()
            reads = metrics.reads
            client.portal.call(hub.broadcast_tick)
            tick = ws.receive_json()
            assert tick["event"] == "metrics"
            assert tick["data"]["sequence"] == initial["data"]["sequence"] + 1
            assert metrics.reads == reads + 1


class TestMalformedFrames:
    @pytest.mark.parametrize("frame", [b"\x00\x01", "not json", "[1, 2]"])
    def test_bad_frame_drops_subscriber(self, client, make_token, frame):
        hub = client.app.state.services.hub
        with client.websocket_connect(f"/ws?token={make_token()}") as ws:
            ws.receive_json()
            if isinstance(frame, bytes):
                ws.send_bytes(frame)
            else:
                ws.send_text(frame)
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == GOING_AWAY
        assert hub.size == 0

    def test_client_close_unregisters(self, client, make_token):
        hub = client.app.state.services.hub
        with client.websocket_connect(f"/ws?token={make_token()}") as ws:
            ws.receive_json()
            ws.send_json({"event": "ping"})
            ws.receive_json()
        assert hub.size == 0
