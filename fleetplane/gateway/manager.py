"""GatewayManager — pool of gateway clients keyed by instance id.

A connected client is reused; a stale one (socket closed, reconnect
exhausted) is disconnected and replaced on the next request for it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fleetplane.core.locks import AsyncKeyedLock
from fleetplane.gateway.client import GatewayClient, ReconnectOptions
from fleetplane.gateway.protocol import DEFAULT_GATEWAY_PORT, GatewayAuth
from fleetplane.gateway.transport import TransportFactory

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, int, GatewayAuth], GatewayClient]


class GatewayManager:
    """Owns at most one ``GatewayClient`` per instance.

    Parameters
    ----------
    timeout:
        Handshake and request timeout passed to new clients.
    reconnect:
        Reconnect policy passed to new clients.
    transport_factory:
        Transport used by new clients; defaults to aiohttp.
    client_factory:
        Overrides client construction entirely.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        reconnect: ReconnectOptions | None = None,
        transport_factory: TransportFactory | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._timeout = timeout
        self._reconnect = reconnect or ReconnectOptions()
        self._transport_factory = transport_factory
        self._client_factory = client_factory or self._default_factory
        self._clients: dict[str, GatewayClient] = {}
        self._locks = AsyncKeyedLock()

    def _default_factory(self, host: str, port: int, auth: GatewayAuth) -> GatewayClient:
        return GatewayClient(
            host=host,
            port=port,
            auth=auth,
            timeout=self._timeout,
            reconnect=self._reconnect,
            transport_factory=self._transport_factory,
        )

    async def get_client(
        self,
        instance_id: str,
        host: str,
        auth: GatewayAuth,
        port: int = DEFAULT_GATEWAY_PORT,
    ) -> GatewayClient:
        """Return a connected client for *instance_id*, connecting if needed."""
        async with self._locks.lease(instance_id):
            existing = self._clients.get(instance_id)
            if existing is not None and existing.is_connected:
                return existing
            if existing is not None:
                logger.info("Replacing stale gateway client for %s", instance_id)
                await existing.disconnect()
                del self._clients[instance_id]

            client = self._client_factory(host, port, auth)
            await client.connect()
            self._clients[instance_id] = client
            return client

    async def remove_client(self, instance_id: str) -> None:
        client = self._clients.pop(instance_id, None)
        if client is not None:
            await client.disconnect()

    def connected_instances(self) -> list[str]:
        return [iid for iid, client in self._clients.items() if client.is_connected]

    async def disconnect_all(self) -> None:
        for instance_id in list(self._clients):
            await self.remove_client(instance_id)

    async def __aenter__(self) -> GatewayManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect_all()
