"""Tests for the GatewayClient — handshake, request correlation, events, reconnect."""

from __future__ import annotations

import asyncio

import pytest

from fleetplane.gateway.client import (
    EVENT_DISCONNECTED,
    EVENT_GAP,
    EVENT_RECONNECTED,
    GatewayClient,
    ReconnectOptions,
)
from fleetplane.gateway.errors import (
    AgentTimeoutError,
    ConfigConflictError,
    GatewayAuthError,
    GatewayError,
    GatewayErrorCode,
    GatewayProtocolError,
    GatewayUnavailableError,
    error_from_shape,
)
from fleetplane.gateway.protocol import (
    ConfigApplyParams,
    GatewayAuth,
    build_gateway_url,
    is_response,
    parse_event,
    parse_response,
)


def _client(fake_gateway, **kwargs) -> GatewayClient:
    kwargs.setdefault("reconnect", ReconnectOptions(enabled=False))
    kwargs.setdefault("timeout", 1.0)
    return GatewayClient(
        host="10.0.0.5",
        auth=GatewayAuth(token="tok"),
        transport_factory=fake_gateway.factory,
        **kwargs,
    )


async def _wait_for(event: asyncio.Event) -> None:
    await asyncio.wait_for(event.wait(), 1.0)


class TestProtocol:
    def test_gateway_url(self):
        assert build_gateway_url("host") == "ws://host:18789"
        assert build_gateway_url("host", 9000, secure=True) == "wss://host:9000"

    def test_auth_requires_credential(self):
        with pytest.raises(ValueError):
            GatewayAuth(mode="password")

    def test_parse_current_response(self):
        response = parse_response({"type": "res", "id": "1", "ok": True, "payload": {"a": 1}})
        assert response.ok and response.payload == {"a": 1}

    def test_parse_legacy_response(self):
        ok = parse_response({"id": "1", "result": {"a": 1}})
        failed = parse_response({"id": "2", "error": {"code": "UNAVAILABLE", "message": "down"}})
        assert ok.ok is True and ok.payload == {"a": 1}
        assert failed.ok is False and failed.error.code == "UNAVAILABLE"

    def test_response_with_result_and_error_rejected(self):
        with pytest.raises(ValueError):
            parse_response({"id": "1", "result": {}, "error": {"message": "x"}})

    def test_is_response(self):
        assert is_response({"type": "res", "id": "1", "ok": True})
        assert is_response({"id": "1", "result": None})
        assert not is_response({"type": "event", "event": "presence"})

    def test_parse_event_shapes(self):
        current = parse_event({"type": "event", "event": "agentOutput", "payload": {"seq": 1}})
        legacy = parse_event({"type": "keepalive", "ts": 12.5})
        assert current.event == "agentOutput" and current.payload == {"seq": 1}
        assert legacy.event == "keepalive" and legacy.payload == {"ts": 12.5}
        assert parse_event({"type": "mystery"}) is None

    def test_apply_params_serialize_raw(self):
        params = ConfigApplyParams.build({"b": 1, "a": 2}, "h1", session_key="s")
        assert params.to_wire() == {"raw": '{"a": 2, "b": 1}', "baseHash": "h1", "sessionKey": "s"}


class TestErrors:
    def test_codes(self):
        assert GatewayUnavailableError("x").code == GatewayErrorCode.UNAVAILABLE
        assert AgentTimeoutError("x").code == GatewayErrorCode.AGENT_TIMEOUT
        assert GatewayProtocolError("x").code == GatewayErrorCode.INVALID_REQUEST

    def test_error_from_shape(self):
        assert isinstance(error_from_shape("AGENT_TIMEOUT", "slow"), AgentTimeoutError)
        assert isinstance(error_from_shape("UNAVAILABLE", "down"), GatewayUnavailableError)
        assert isinstance(error_from_shape("INVALID_REQUEST", "bad"), GatewayProtocolError)
        conflict = error_from_shape("INVALID_REQUEST", "stale", {"reason": "base_hash_mismatch"})
        assert isinstance(conflict, ConfigConflictError)
        assert conflict.details == {"reason": "base_hash_mismatch"}
        unknown = error_from_shape("NOT_LINKED", "no")
        assert type(unknown) is GatewayError and unknown.code == "NOT_LINKED"


class TestReconnectOptions:
    def test_exponential_backoff_capped(self):
        options = ReconnectOptions()
        assert [options.delay_ms(n) for n in range(6)] == [1000, 2000, 4000, 8000, 16000, 30000]


class TestHandshake:
    @pytest.mark.asyncio
    async def test_connect(self, fake_gateway):
        client = _client(fake_gateway)
        result = await client.connect()
        try:
            assert client.is_connected
            assert result.state_version == 3
            assert result.presence.users == ["ops"]
            assert client.state_version == 3

            connect = fake_gateway.transports[0].sent[0]
            assert connect["type"] == "connect"
            assert connect["auth"] == {"mode": "token", "token": "tok"}
            assert connect["protocolVersion"] == {"min": 1, "max": 1}
        finally:
            await client.disconnect()
        assert not client.is_connected

    @pytest.mark.asyncio
    async def test_auth_rejected(self, fake_gateway):
        fake_gateway.reject_auth = True
        client = _client(fake_gateway)
        with pytest.raises(GatewayAuthError):
            await client.connect()
        assert fake_gateway.transports[0].closed
        assert not client.is_connected

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, fake_gateway):
        async def silent(url):
            transport = await fake_gateway.factory(url)
            while not transport.inbound.empty():
                transport.inbound.get_nowait()
            return transport

        client = GatewayClient(
            host="h",
            auth=GatewayAuth(token="t"),
            timeout=0.05,
            reconnect=ReconnectOptions(enabled=False),
            transport_factory=silent,
        )
        with pytest.raises(AgentTimeoutError, match="handshake"):
            await client.connect()
        assert fake_gateway.transports[0].closed

    @pytest.mark.asyncio
    async def test_unreachable(self, fake_gateway):
        fake_gateway.unreachable = True
        with pytest.raises(GatewayUnavailableError):
            await _client(fake_gateway).connect()


class TestRequests:
    @pytest.mark.asyncio
    async def test_not_connected(self, fake_gateway):
        with pytest.raises(GatewayUnavailableError):
            await _client(fake_gateway).request("health")

    @pytest.mark.asyncio
    async def test_config_get(self, fake_gateway):
        fake_gateway.live_config = {"model": "x"}
        async with _client(fake_gateway) as client:
            snapshot = await client.config_get()
            health = await client.health()
        assert snapshot.config == {"model": "x"}
        assert snapshot.hash == "live-hash"
        assert health.ok is True

    @pytest.mark.asyncio
    async def test_status_and_config_patch(self, fake_gateway):
        def answer(frame):
            payload = {"config": {"model": "z"}, "hash": "h2"}
            if frame["method"] == "status":
                payload = {"sessions": 2}
            return {"type": "res", "id": frame["id"], "ok": True, "payload": payload}

        async with _client(fake_gateway) as client:
            transport = fake_gateway.transports[0]
            transport.responder = answer
            assert await client.status() == {"sessions": 2}
            snapshot = await client.config_patch({"model": "z"}, base_hash="h1")

        assert snapshot.hash == "h2"
        sent = transport.sent[-1]
        assert sent["method"] == "config.patch"
        assert sent["params"] == {"patch": {"model": "z"}, "baseHash": "h1"}

    @pytest.mark.asyncio
    async def test_responses_correlated_by_id(self, fake_gateway):
        async with _client(fake_gateway) as client:
            transport = fake_gateway.transports[0]
            transport.responder = None
            first = asyncio.create_task(client.request("status"))
            second = asyncio.create_task(client.request("status"))
            while len(transport.sent) < 3:
                await asyncio.sleep(0)
            first_id, second_id = transport.sent[1]["id"], transport.sent[2]["id"]

            # answer out of order, one in the legacy shape
            transport.push({"id": second_id, "result": {"n": 2}})
            transport.push({"type": "res", "id": first_id, "ok": True, "payload": {"n": 1}})
            assert await first == {"n": 1}
            assert await second == {"n": 2}

    @pytest.mark.asyncio
    async def test_request_timeout_cleans_up(self, fake_gateway):
        async with _client(fake_gateway) as client:
            with pytest.raises(AgentTimeoutError):
                await client.request("status", timeout=0.05)
            assert client._pending == {}

    @pytest.mark.asyncio
    async def test_config_conflict(self, fake_gateway):
        def conflict(frame):
            return {
                "type": "res",
                "id": frame["id"],
                "ok": False,
                "error": {
                    "code": "INVALID_REQUEST",
                    "message": "base hash is stale",
                    "details": {"reason": "base_hash_mismatch"},
                },
            }

        async with _client(fake_gateway) as client:
            fake_gateway.transports[0].responder = conflict
            with pytest.raises(ConfigConflictError):
                await client.config_apply({"model": "y"}, base_hash="old")
            sent = fake_gateway.transports[0].sent[-1]
            assert sent["method"] == "config.apply"
            assert sent["params"]["baseHash"] == "old"


class TestEvents:
    @pytest.mark.asyncio
    async def test_sequence_tracking(self, fake_gateway):
        received: list[int] = []
        gaps: list[dict] = []
        done = asyncio.Event()

        def on_output(event):
            received.append(event.payload["seq"])
            if event.payload["seq"] == 5:
                done.set()

        async with _client(fake_gateway) as client:
            client.on("agentOutput", on_output)
            client.on(EVENT_GAP, lambda event: gaps.append(event.payload))
            transport = fake_gateway.transports[0]
            for seq in (1, 2, 2, 5):
                transport.push({"type": "event", "event": "agentOutput", "payload": {"seq": seq}})
            await _wait_for(done)

            assert received == [1, 2, 5]
            assert len(client.gaps) == 1
            assert (client.gaps[0].expected, client.gaps[0].received) == (3, 5)
            assert gaps == [{"stream": "default", "expected": 3, "received": 5}]

    @pytest.mark.asyncio
    async def test_presence_state_version(self, fake_gateway):
        seen: list[int] = []
        done = asyncio.Event()

        def on_presence(event):
            seen.append(event.payload["stateVersion"])
            done.set()

        async with _client(fake_gateway) as client:
            client.on("presence", on_presence)
            transport = fake_gateway.transports[0]
            transport.push({"type": "event", "event": "presence", "payload": {"stateVersion": 3}})
            transport.push({"type": "event", "event": "presence", "payload": {"stateVersion": 5}})
            await _wait_for(done)

            assert seen == [5]
            assert client.state_version == 5
            assert [(g.expected, g.received) for g in client.gaps] == [(4, 5)]

    @pytest.mark.asyncio
    async def test_keepalive_and_shutdown(self, fake_gateway):
        done = asyncio.Event()
        async with _client(fake_gateway) as client:
            client.on("shutdown", lambda event: done.set())
            transport = fake_gateway.transports[0]
            transport.push({"type": "keepalive", "ts": 1.0})
            transport.push({"type": "shutdown", "reason": "upgrade", "gracePeriodMs": 500})
            await _wait_for(done)
            assert client.last_keepalive is not None
            assert client.shutdown_notice.reason == "upgrade"
            assert client.shutdown_notice.grace_period_ms == 500

    @pytest.mark.asyncio
    async def test_failing_handler_isolated(self, fake_gateway):
        done = asyncio.Event()

        def broken(event):
            raise RuntimeError("handler bug")

        async with _client(fake_gateway) as client:
            client.on("agentOutput", broken)
            client.on("*", lambda event: done.set())
            fake_gateway.transports[0].push(
                {"type": "event", "event": "agentOutput", "payload": {"seq": 1}}
            )
            await _wait_for(done)
            assert client.is_connected


class TestReconnect:
    @pytest.mark.asyncio
    async def test_drop_fails_pending_and_reconnects(self, fake_gateway):
        disconnected = asyncio.Event()
        reconnected = asyncio.Event()
        client = _client(
            fake_gateway,
            reconnect=ReconnectOptions(enabled=True, max_attempts=3, base_delay_ms=0),
        )
        client.on(EVENT_DISCONNECTED, lambda event: disconnected.set())
        client.on(EVENT_RECONNECTED, lambda event: reconnected.set())
        await client.connect()
        try:
            first = fake_gateway.transports[0]
            first.responder = None
            pending = asyncio.create_task(client.request("status"))
            while len(first.sent) < 2:
                await asyncio.sleep(0)

            first.drop()
            with pytest.raises(GatewayUnavailableError):
                await pending
            await _wait_for(disconnected)
            await _wait_for(reconnected)

            assert len(fake_gateway.transports) == 2
            assert client.is_connected
            fake_gateway.live_config = {"model": "after"}
            assert (await client.config_get()).config == {"model": "after"}
        finally:
            await client.disconnect()

    @pytest.mark.asyncio
    async def test_sequences_resume_across_reconnect(self, fake_gateway):
        received: list[int] = []
        arrived = {2: asyncio.Event(), 5: asyncio.Event()}
        reconnected = asyncio.Event()

        def on_output(event):
            seq = event.payload["seq"]
            received.append(seq)
            if seq in arrived:
                arrived[seq].set()

        def output(seq):
            return {"type": "event", "event": "agentOutput", "payload": {"seq": seq}}

        client = _client(
            fake_gateway,
            reconnect=ReconnectOptions(enabled=True, max_attempts=3, base_delay_ms=0),
        )
        client.on("agentOutput", on_output)
        client.on(EVENT_RECONNECTED, lambda event: reconnected.set())
        await client.connect()
        try:
            first = fake_gateway.transports[0]
            first.push(output(1))
            first.push(output(2))
            await _wait_for(arrived[2])

            # the agent moves on while the socket is down
            fake_gateway.state_version = 7
            first.drop()
            await _wait_for(reconnected)

            second = fake_gateway.transports[1]
            second.push(output(2))
            second.push(output(5))
            await _wait_for(arrived[5])

            assert received == [1, 2, 5]
            assert client.state_version == 7
            assert [(g.stream, g.expected, g.received) for g in client.gaps] == [
                ("presence", 4, 7),
                ("default", 3, 5),
            ]
        finally:
            await client.disconnect()

    @pytest.mark.asyncio
    async def test_no_reconnect_when_disabled(self, fake_gateway):
        disconnected = asyncio.Event()
        async with _client(fake_gateway) as client:
            client.on(EVENT_DISCONNECTED, lambda event: disconnected.set())
            fake_gateway.transports[0].drop()
            await _wait_for(disconnected)
            await asyncio.sleep(0)
            assert not client.is_connected
            assert len(fake_gateway.transports) == 1
