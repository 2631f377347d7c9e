"""Tests for core/openclaw_gateway/client.py: handshake, request correlation,
timeouts, close semantics and event dispatch against an in-memory socket."""

import asyncio

import pytest

from conftest import FakeWebSocket, error_response, ok_response
from fastclaw_relay.core.openclaw_gateway.client import ConnectionState
from fastclaw_relay.core.openclaw_gateway.errors import (
    CONNECT_PROTOCOL,
    CONNECT_TIMEOUT,
    CONNECT_TRANSPORT,
    ConnectError,
    GatewayClosingError,
    GatewayNotOpenError,
    RpcError,
    RpcTimeout,
)


# ─── Handshake ────────────────────────────────────────────────────


class TestHandshake:
    @pytest.mark.asyncio
    async def test_open_sends_connect_and_records_server_version(self, make_connection):
        ws = FakeWebSocket()
        conn = make_connection(ws)
        await conn.open()
        assert conn.state is ConnectionState.CONNECTED
        assert conn.is_open()
        assert conn.server_version == "2026.2.1"
        connect = ws.frames("connect")
        assert len(connect) == 1
        params = connect[0]["params"]
        assert connect[0]["type"] == "req"
        assert params["minProtocol"] == 3 and params["maxProtocol"] == 3
        assert params["auth"] == {"token": "tok-1"}
        assert params["role"] == "operator"
        assert params["client"]["mode"] == "backend"
        await conn.close()

    @pytest.mark.asyncio
    async def test_challenge_triggers_connect_without_duplicate(self, make_connection):
        """A challenge arriving first sends connect at once; the fallback timer must not send a second."""
        ws = FakeWebSocket(challenge=True)
        conn = make_connection(ws)
        await conn.open()
        await asyncio.sleep(0.3)
        assert len(ws.frames("connect")) == 1
        await conn.close()

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, make_connection):
        ws = FakeWebSocket(auto_hello=False)
        conn = make_connection(ws, handshake_timeout=0.3)
        with pytest.raises(ConnectError) as exc_info:
            await conn.open()
        assert exc_info.value.kind == CONNECT_TIMEOUT
        assert "connect timeout" in str(exc_info.value)
        assert ws.closed
        assert conn.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_unexpected_hello_type_is_protocol_error(self, make_connection):
        ws = FakeWebSocket(hello={"type": "welcome"})
        conn = make_connection(ws)
        with pytest.raises(ConnectError) as exc_info:
            await conn.open()
        assert exc_info.value.kind == CONNECT_PROTOCOL
        assert "Unexpected connect response type: welcome" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_rejected_connect_is_protocol_error(self, make_connection):
        ws = FakeWebSocket(auto_hello=False, routes={})
        conn = make_connection(ws)
        task = asyncio.create_task(conn.open())
        await asyncio.sleep(0.3)
        frame = ws.frames("connect")[0]
        ws.push(error_response(frame, "bad token"))
        with pytest.raises(ConnectError) as exc_info:
            await task
        assert exc_info.value.kind == CONNECT_PROTOCOL
        assert "bad token" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_dial_failure_is_transport_error(self, make_connection):
        conn = make_connection(ConnectionRefusedError(111, "refused"))
        with pytest.raises(ConnectError) as exc_info:
            await conn.open()
        assert exc_info.value.kind == CONNECT_TRANSPORT

    @pytest.mark.asyncio
    async def test_socket_closed_before_hello(self, make_connection):
        ws = FakeWebSocket(auto_hello=False)
        ws.drop()
        conn = make_connection(ws)
        with pytest.raises(ConnectError) as exc_info:
            await conn.open()
        assert exc_info.value.kind == CONNECT_TRANSPORT

    @pytest.mark.asyncio
    async def test_connection_is_single_use(self, make_connection):
        conn = make_connection(FakeWebSocket())
        await conn.open()
        await conn.close()
        with pytest.raises(ConnectError):
            await conn.open()

    @pytest.mark.asyncio
    async def test_challenge_after_fallback_resends_connect(self, make_connection, wait_until):
        """Only the newest connect attempt decides the handshake."""
        ws = FakeWebSocket(auto_hello=False)
        conn = make_connection(ws)
        task = asyncio.create_task(conn.open())
        await wait_until(lambda: len(ws.frames("connect")) == 1)
        ws.push({"type": "event", "event": "connect.challenge", "payload": {"nonce": "n-2"}})
        await wait_until(lambda: len(ws.frames("connect")) == 2)
        first, second = ws.frames("connect")
        assert first["id"] != second["id"]
        ws.push(error_response(first, "stale nonce"))
        ws.push(ok_response(second, {"type": "hello-ok", "server": {"version": "2026.3.0"}}))
        await asyncio.wait_for(task, timeout=2)
        assert conn.state is ConnectionState.CONNECTED
        assert conn.server_version == "2026.3.0"
        await conn.close()


# ─── Requests ─────────────────────────────────────────────────────


class TestRequests:
    @pytest.mark.asyncio
    async def test_request_before_open_fails_immediately(self, make_connection):
        conn = make_connection(FakeWebSocket())
        with pytest.raises(GatewayNotOpenError, match="not open"):
            await conn.request("health")
        assert conn.pending_count == 0

    @pytest.mark.asyncio
    async def test_request_returns_payload(self, make_connection):
        ws = FakeWebSocket(routes={"health": {"ok": True, "ts": 5}})
        conn = make_connection(ws)
        await conn.open()
        assert await conn.request("health") == {"ok": True, "ts": 5}
        assert conn.pending_count == 0
        await conn.close()

    @pytest.mark.asyncio
    async def test_error_response_raises_rpc_error(self, make_connection):
        ws = FakeWebSocket(routes={"chat.send": lambda f: error_response(f, "session not found")})
        conn = make_connection(ws)
        await conn.open()
        with pytest.raises(RpcError, match="session not found"):
            await conn.request("chat.send", {"sessionKey": "s"})
        await conn.close()

    @pytest.mark.asyncio
    async def test_out_of_order_responses_match_by_id(self, make_connection, wait_until):
        ws = FakeWebSocket(silent={"health", "status"})
        conn = make_connection(ws)
        await conn.open()
        first = asyncio.create_task(conn.request("health"))
        second = asyncio.create_task(conn.request("status"))
        await wait_until(lambda: len(ws.frames("health")) == 1 and len(ws.frames("status")) == 1)
        ws.push({"type": "res", "id": ws.frames("status")[0]["id"], "ok": True, "payload": "B"})
        ws.push({"type": "res", "id": ws.frames("health")[0]["id"], "ok": True, "payload": "A"})
        assert await first == "A"
        assert await second == "B"
        await conn.close()

    @pytest.mark.asyncio
    async def test_timeout_then_late_response_is_ignored(self, make_connection, wait_until):
        ws = FakeWebSocket(silent={"health"})
        conn = make_connection(ws)
        events = []
        conn.on_event(events.append)
        await conn.open()
        with pytest.raises(RpcTimeout) as exc_info:
            await conn.request("health", timeout=0.05)
        assert exc_info.value.method == "health"
        assert conn.pending_count == 0
        ws.push({"type": "res", "id": ws.frames("health")[0]["id"], "ok": True, "payload": {}})
        await asyncio.sleep(0.05)
        assert events == []
        assert conn.is_open()
        await conn.close()

    @pytest.mark.asyncio
    async def test_close_rejects_all_pending(self, make_connection, wait_until):
        ws = FakeWebSocket(silent={"status"})
        conn = make_connection(ws)
        await conn.open()
        tasks = [asyncio.create_task(conn.request("status")) for _ in range(3)]
        await wait_until(lambda: conn.pending_count == 3)
        await conn.close()
        for task in tasks:
            with pytest.raises(GatewayClosingError, match="closing"):
                await task
        assert conn.pending_count == 0
        assert conn.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_peer_drop_rejects_pending_and_signals_close(self, make_connection, wait_until):
        ws = FakeWebSocket(silent={"status"})
        conn = make_connection(ws)
        await conn.open()
        pending = asyncio.create_task(conn.request("status"))
        await wait_until(lambda: conn.pending_count == 1)
        ws.drop()
        await asyncio.wait_for(conn.wait_for_close(), timeout=1.0)
        with pytest.raises(GatewayClosingError):
            await pending
        assert not conn.is_open()
        with pytest.raises(GatewayNotOpenError):
            await conn.request("health")
        await conn.close()

    @pytest.mark.asyncio
    async def test_cancel_during_send_leaves_no_pending(self, make_connection, wait_until):
        ws = FakeWebSocket(send_gate=asyncio.Event())
        conn = make_connection(ws)
        await conn.open()
        task = asyncio.create_task(conn.request("health"))
        await wait_until(lambda: conn.pending_count == 1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert conn.pending_count == 0
        ws.send_gate.set()
        await conn.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, make_connection):
        conn = make_connection(FakeWebSocket())
        await conn.open()
        await conn.close()
        await conn.close()
        assert conn.state is ConnectionState.DISCONNECTED


# ─── Events ───────────────────────────────────────────────────────


class TestEvents:
    @pytest.mark.asyncio
    async def test_events_reach_handlers_in_order(self, make_connection, wait_until):
        ws = FakeWebSocket()
        conn = make_connection(ws)
        seen = []
        conn.on_event(lambda e: seen.append(("a", e.name, e.seq)))
        conn.on_event(lambda e: seen.append(("b", e.name, e.seq)))
        await conn.open()
        ws.push({"type": "event", "event": "sessions.updated", "payload": {}, "seq": 7})
        await wait_until(lambda: len(seen) == 2)
        assert seen == [("a", "sessions.updated", 7), ("b", "sessions.updated", 7)]
        await conn.close()

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_affect_others(self, make_connection, wait_until):
        ws = FakeWebSocket()
        conn = make_connection(ws)
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        conn.on_event(broken)
        conn.on_event(lambda e: seen.append(e.payload))
        await conn.open()
        ws.push({"type": "event", "event": "chat", "payload": {"runId": "r"}})
        await wait_until(lambda: seen)
        assert seen == [{"runId": "r"}]
        assert conn.is_open()
        await conn.close()

    @pytest.mark.asyncio
    async def test_unsubscribe_and_garbage_frames(self, make_connection, wait_until):
        ws = FakeWebSocket()
        conn = make_connection(ws)
        seen = []
        off = conn.on_event(seen.append)
        await conn.open()
        off()
        ws.push("not json {")
        ws.push({"type": "res", "id": "unknown-id", "ok": True, "payload": {}})
        ws.push({"type": "event", "event": "tick", "payload": {}})
        await asyncio.sleep(0.05)
        assert seen == []
        assert conn.is_open()
        await conn.close()
