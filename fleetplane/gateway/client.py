"""GatewayClient — one long-lived RPC/event channel to a running agent.

Lifecycle
---------
1. ``connect()`` opens the transport and performs the versioned handshake:
   wait for the server's challenge, send a connect frame offering a
   protocol range and credential, then read ``connected`` or ``error``.
2. A listener task reads frames: responses resolve pending request
   futures by id, events update sequence tracking and reach handlers.
3. If the socket drops unexpectedly and reconnect is enabled, the client
   retries with exponential backoff bounded by ``max_delay_ms``. Sequence
   and state-version tracking survive the reconnect, so replayed events
   are dropped and missing ones are reported as gaps.

Every network wait is bounded by a timeout; a timed out or cancelled
request removes its pending entry before the error surfaces.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from fleetplane.gateway.errors import (
    AgentTimeoutError,
    GatewayAuthError,
    GatewayError,
    GatewayErrorCode,
    GatewayProtocolError,
    GatewayUnavailableError,
    error_from_shape,
)
from fleetplane.gateway.protocol import (
    DEFAULT_GATEWAY_PORT,
    EVENT_AGENT_OUTPUT,
    EVENT_KEEPALIVE,
    EVENT_PRESENCE,
    EVENT_SHUTDOWN,
    AgentOutputEvent,
    ConfigApplyParams,
    ConfigPatchParams,
    ConfigSnapshot,
    ConnectFrame,
    ConnectResult,
    ErrorShape,
    EventFrame,
    GatewayAuth,
    GatewayHealth,
    KeepaliveEvent,
    PresenceEvent,
    RequestFrame,
    SequenceGap,
    ShutdownEvent,
    build_gateway_url,
    is_response,
    parse_event,
    parse_response,
)
from fleetplane.gateway.transport import GatewayTransport, TransportFactory, open_aiohttp_transport

logger = logging.getLogger(__name__)

EventHandler = Callable[[EventFrame], Any]

# Pseudo-events emitted by the client itself.
EVENT_GAP = "gap"
EVENT_DISCONNECTED = "disconnected"
EVENT_RECONNECTED = "reconnected"


class ReconnectOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    max_attempts: int = Field(default=10, ge=0)
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=30000, ge=0)

    def delay_ms(self, attempt: int) -> int:
        """Backoff before retry number *attempt* (0-based): base * 2^attempt, capped."""
        return min(self.base_delay_ms * (2 ** attempt), self.max_delay_ms)


class GatewayClient:
    """Client for one agent's gateway channel.

    Parameters
    ----------
    host, port:
        Gateway endpoint of the agent.
    auth:
        Credential offered during the handshake.
    timeout:
        Seconds allowed for the handshake and for each request.
    reconnect:
        Reconnection policy after an unexpected disconnect.
    transport_factory:
        Coroutine function ``url -> GatewayTransport``. Defaults to aiohttp.
    """

    def __init__(
        self,
        host: str,
        auth: GatewayAuth,
        port: int = DEFAULT_GATEWAY_PORT,
        timeout: float = 30.0,
        reconnect: ReconnectOptions | None = None,
        transport_factory: TransportFactory | None = None,
        client_metadata: dict[str, Any] | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self._auth = auth
        self._timeout = timeout
        self._reconnect = reconnect or ReconnectOptions()
        self._transport_factory = transport_factory or open_aiohttp_transport
        self._client_metadata = client_metadata or {"client": "fleetplane"}

        self._transport: GatewayTransport | None = None
        self._connected = False
        self._intentional_close = False
        self._listener: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._handlers: dict[str, list[EventHandler]] = {}

        # Resume tracking, kept across reconnects
        self._stream_seq: dict[str, int] = {}
        self._state_version: int | None = None
        self.gaps: list[SequenceGap] = []
        self.last_keepalive: float | None = None
        self.shutdown_notice: ShutdownEvent | None = None
        self.connect_result: ConnectResult | None = None

    @property
    def url(self) -> str:
        return build_gateway_url(self.host, self.port)

    @property
    def is_connected(self) -> bool:
        return (
            self._connected
            and self._transport is not None
            and not self._transport.closed
        )

    @property
    def state_version(self) -> int | None:
        return self._state_version

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def on(self, event: str, handler: EventHandler) -> None:
        """Subscribe *handler* to *event* (``"*"`` receives every event)."""
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    async def _emit(self, event: EventFrame) -> None:
        handlers = self._handlers.get(event.event, []) + self._handlers.get("*", [])
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001
                logger.error("Gateway event handler for %s failed: %s", event.event, exc)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> ConnectResult:
        """Open the channel and complete the handshake.

        Raises
        ------
        GatewayUnavailableError
            Socket could not be opened or closed during the handshake.
        AgentTimeoutError
            Handshake did not complete within the timeout.
        GatewayAuthError
            The credential was rejected.
        """
        self._intentional_close = False
        result = await self._open()
        self._start_listener()
        return result

    async def _open(self) -> ConnectResult:
        try:
            transport = await asyncio.wait_for(self._transport_factory(self.url), self._timeout)
        except asyncio.TimeoutError as exc:
            raise AgentTimeoutError(f"Timed out opening gateway socket {self.url}") from exc
        except GatewayError:
            raise
        except OSError as exc:
            raise GatewayUnavailableError(f"Failed to reach gateway {self.url}: {exc}") from exc

        try:
            result = await asyncio.wait_for(self._handshake(transport), self._timeout)
        except asyncio.TimeoutError as exc:
            await transport.close()
            raise AgentTimeoutError("Connect handshake timed out") from exc
        except BaseException:
            await transport.close()
            raise

        self._transport = transport
        self._connected = True
        self._note_state_version(result.state_version, source="handshake")
        self.connect_result = result
        logger.info("Connected to gateway %s (stateVersion=%d)", self.url, result.state_version)
        return result

    async def _handshake(self, transport: GatewayTransport) -> ConnectResult:
        await transport.receive()  # challenge; acknowledged by answering with connect
        frame = ConnectFrame(
            auth=self._auth,
            client_metadata=self._client_metadata,
            capabilities=["config", "events"],
        )
        await transport.send(frame.to_wire())
        reply = await transport.receive()

        if reply.get("type") == "error" or (reply.get("type") == "res" and reply.get("ok") is False):
            shape = ErrorShape.model_validate(reply.get("error") or reply)
            if "auth" in shape.message.lower():
                raise GatewayAuthError(shape.message, shape.code, shape.details)
            raise error_from_shape(shape.code, shape.message, shape.details)

        body = reply.get("payload") if reply.get("type") == "res" else reply
        try:
            return ConnectResult.model_validate(body or {})
        except ValidationError as exc:
            raise GatewayProtocolError(f"Invalid connect result: {exc}") from exc

    def _start_listener(self) -> None:
        self._listener = asyncio.create_task(self._listen(), name=f"gateway-listen-{self.host}")

    async def disconnect(self) -> None:
        """Close the channel without reconnecting. Pending requests fail."""
        self._intentional_close = True
        self._connected = False
        current = asyncio.current_task()
        for task in (self._reconnect_task, self._listener):
            if task is not None and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reconnect_task = None
        self._listener = None
        self._fail_pending(GatewayUnavailableError("Gateway client disconnected"))
        if self._transport is not None:
            await self._transport.close()
            self._transport = None

    async def __aenter__(self) -> GatewayClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    # ------------------------------------------------------------------
    # Listener
    # ------------------------------------------------------------------

    async def _listen(self) -> None:
        transport = self._transport
        if transport is None:
            return
        try:
            while True:
                frame = await transport.receive()
                await self._dispatch(frame)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            if self._intentional_close:
                return
            logger.warning("Gateway %s connection lost: %s", self.url, exc)
            self._connected = False
            self._fail_pending(GatewayUnavailableError(f"Gateway connection lost: {exc}"))
            await transport.close()
            await self._emit(EventFrame(event=EVENT_DISCONNECTED, payload={"reason": str(exc)}))
            if self._reconnect.enabled:
                self._reconnect_task = asyncio.create_task(
                    self._reconnect_loop(), name=f"gateway-reconnect-{self.host}"
                )

    async def _dispatch(self, frame: dict[str, Any]) -> None:
        if is_response(frame):
            try:
                response = parse_response(frame)
            except (ValidationError, ValueError, KeyError) as exc:
                logger.warning("Dropping malformed response from %s: %s", self.url, exc)
                return
            future = self._pending.get(response.id)
            if future is None or future.done():
                logger.debug("Response for unknown request %s", response.id)
                return
            if response.ok:
                future.set_result(response.payload)
            else:
                error = response.error or ErrorShape()
                future.set_exception(error_from_shape(error.code, error.message, error.details))
            return

        event = parse_event(frame)
        if event is None:
            logger.debug("Ignoring unrecognized frame type %r", frame.get("type"))
            return
        if await self._track(event):
            await self._emit(event)

    async def _track(self, event: EventFrame) -> bool:
        """Update resume tracking. Returns False for replayed events."""
        try:
            if event.event == EVENT_AGENT_OUTPUT:
                output = AgentOutputEvent.model_validate(event.payload)
                last = self._stream_seq.get(output.stream)
                if last is not None and output.seq <= last:
                    logger.debug("Dropping replayed %s seq=%d", output.stream, output.seq)
                    return False
                if last is not None and output.seq > last + 1:
                    await self._report_gap(SequenceGap(stream=output.stream, expected=last + 1, received=output.seq))
                self._stream_seq[output.stream] = output.seq
            elif event.event == EVENT_PRESENCE:
                presence = PresenceEvent.model_validate(event.payload)
                if self._state_version is not None and presence.state_version <= self._state_version:
                    return False
                self._note_state_version(presence.state_version, source="event")
            elif event.event == EVENT_KEEPALIVE:
                KeepaliveEvent.model_validate(event.payload)
                self.last_keepalive = time.monotonic()
            elif event.event == EVENT_SHUTDOWN:
                self.shutdown_notice = ShutdownEvent.model_validate(event.payload)
                logger.info(
                    "Gateway %s shutting down: %s (grace %dms)",
                    self.url,
                    self.shutdown_notice.reason,
                    self.shutdown_notice.grace_period_ms,
                )
        except ValidationError as exc:
            logger.warning("Malformed %s event from %s: %s", event.event, self.url, exc)
            return False
        return True

    def _note_state_version(self, version: int, source: str) -> None:
        last = self._state_version
        if last is not None and version > last + 1:
            gap = SequenceGap(stream="presence", expected=last + 1, received=version)
            self.gaps.append(gap)
            logger.warning(
                "Presence stateVersion gap on %s (%s): expected %d, got %d",
                self.url, source, gap.expected, gap.received,
            )
        if last is None or version > last:
            self._state_version = version

    async def _report_gap(self, gap: SequenceGap) -> None:
        self.gaps.append(gap)
        logger.warning(
            "Event gap on %s stream %s: expected seq %d, got %d",
            self.url, gap.stream, gap.expected, gap.received,
        )
        await self._emit(EventFrame(event=EVENT_GAP, payload=gap.model_dump()))

    def _fail_pending(self, error: GatewayError) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    async def _reconnect_loop(self) -> None:
        for attempt in range(self._reconnect.max_attempts):
            delay = self._reconnect.delay_ms(attempt) / 1000.0
            logger.info("Reconnecting to %s in %.2fs (attempt %d)", self.url, delay, attempt + 1)
            await asyncio.sleep(delay)
            if self._intentional_close:
                return
            try:
                await self._open()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Reconnect attempt %d to %s failed: %s", attempt + 1, self.url, exc)
                continue
            self._start_listener()
            await self._emit(EventFrame(event=EVENT_RECONNECTED, payload={"attempt": attempt + 1}))
            return
        logger.error(
            "Giving up on gateway %s after %d reconnect attempts",
            self.url,
            self._reconnect.max_attempts,
        )

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(
        self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> Any:
        """Send a request and wait for its correlated response.

        Raises
        ------
        GatewayUnavailableError
            Not connected, or the connection dropped while waiting.
        AgentTimeoutError
            No response within the timeout.
        GatewayError
            The agent answered with an error.
        """
        if not self.is_connected or self._transport is None:
            raise GatewayUnavailableError("Not connected to gateway", GatewayErrorCode.UNAVAILABLE)

        request_id = uuid.uuid4().hex
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._transport.send(RequestFrame(id=request_id, method=method, params=params).to_wire())
            return await asyncio.wait_for(future, timeout if timeout is not None else self._timeout)
        except asyncio.TimeoutError as exc:
            raise AgentTimeoutError(f"Request {method} timed out") from exc
        finally:
            self._pending.pop(request_id, None)

    async def health(self) -> GatewayHealth:
        return GatewayHealth.model_validate(await self.request("health"))

    async def status(self) -> dict[str, Any]:
        return dict(await self.request("status") or {})

    async def config_get(self) -> ConfigSnapshot:
        """Fetch the live effective configuration and its hash."""
        return ConfigSnapshot.model_validate(await self.request("config.get"))

    async def config_apply(
        self,
        raw: str | dict[str, Any],
        base_hash: str,
        session_key: str | None = None,
        restart_delay_ms: int | None = None,
    ) -> ConfigSnapshot:
        """Replace the live configuration if it still matches *base_hash*.

        Raises
        ------
        ConfigConflictError
            The live configuration changed since *base_hash* was read.
        """
        params = ConfigApplyParams.build(raw, base_hash, session_key, restart_delay_ms)
        return ConfigSnapshot.model_validate(await self.request("config.apply", params.to_wire()))

    async def config_patch(self, patch: dict[str, Any], base_hash: str) -> ConfigSnapshot:
        """Merge *patch* into the live configuration if it still matches *base_hash*."""
        params = ConfigPatchParams(patch=patch, base_hash=base_hash)
        return ConfigSnapshot.model_validate(await self.request("config.patch", params.to_wire()))
