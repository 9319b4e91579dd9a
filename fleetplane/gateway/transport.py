"""WebSocket transport for the gateway channel.

``GatewayTransport`` is the seam between the client's protocol logic and
the socket. ``AiohttpTransport`` is the production implementation; tests
substitute an in-process transport through the client's
``transport_factory`` parameter.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

import aiohttp

from fleetplane.gateway.errors import GatewayProtocolError, GatewayUnavailableError

logger = logging.getLogger(__name__)


@runtime_checkable
class GatewayTransport(Protocol):
    """A bidirectional JSON frame channel."""

    @property
    def closed(self) -> bool:
        ...

    async def send(self, frame: dict[str, Any]) -> None:
        ...

    async def receive(self) -> dict[str, Any]:
        """Wait for the next frame; raise ``GatewayUnavailableError`` once closed."""
        ...

    async def close(self) -> None:
        ...


TransportFactory = Callable[[str], Awaitable[GatewayTransport]]


class AiohttpTransport:
    """GatewayTransport over ``aiohttp.ClientSession.ws_connect``."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        ws: aiohttp.ClientWebSocketResponse,
        owns_session: bool = True,
    ) -> None:
        self._session = session
        self._ws = ws
        self._owns_session = owns_session

    @classmethod
    async def open(
        cls,
        url: str,
        session: aiohttp.ClientSession | None = None,
        heartbeat: float | None = 30.0,
    ) -> AiohttpTransport:
        owns_session = session is None
        session = session or aiohttp.ClientSession()
        try:
            ws = await session.ws_connect(url, heartbeat=heartbeat)
        except (aiohttp.ClientError, OSError) as exc:
            if owns_session:
                await session.close()
            raise GatewayUnavailableError(f"Failed to open gateway socket {url}: {exc}") from exc
        return cls(session, ws, owns_session=owns_session)

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def send(self, frame: dict[str, Any]) -> None:
        if self._ws.closed:
            raise GatewayUnavailableError("Gateway socket is closed")
        try:
            await self._ws.send_str(json.dumps(frame))
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise GatewayUnavailableError(f"Gateway send failed: {exc}") from exc

    async def receive(self) -> dict[str, Any]:
        msg = await self._ws.receive()
        if msg.type == aiohttp.WSMsgType.TEXT:
            try:
                data = json.loads(msg.data)
            except json.JSONDecodeError as exc:
                raise GatewayProtocolError(f"Invalid JSON frame: {exc}") from exc
            if not isinstance(data, dict):
                raise GatewayProtocolError("Gateway frame must be a JSON object")
            return data
        if msg.type == aiohttp.WSMsgType.ERROR:
            raise GatewayUnavailableError(f"Gateway socket error: {self._ws.exception()}")
        raise GatewayUnavailableError(f"Gateway socket closed ({msg.type.name})")

    async def close(self) -> None:
        try:
            await self._ws.close()
        finally:
            if self._owns_session:
                await self._session.close()


async def open_aiohttp_transport(url: str) -> GatewayTransport:
    return await AiohttpTransport.open(url)
