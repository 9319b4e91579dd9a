"""InstanceGateway — gateway operations addressed by instance.

Resolves an instance's endpoint and stored credential, then uses a pooled
client to pull live state (``fetch``, ``health``) or push configuration
(``push_config``). The push is an optimistic-concurrency write: the live
hash read by ``config.get`` is sent back as the base hash of
``config.apply``, so a concurrent writer makes the apply fail with
``ConfigConflictError`` instead of being overwritten.
"""

from __future__ import annotations

import logging
from typing import Any

from fleetplane.core.hasher import config_fingerprint
from fleetplane.gateway.client import GatewayClient
from fleetplane.gateway.errors import GatewayAuthError, GatewayUnavailableError
from fleetplane.gateway.manager import GatewayManager
from fleetplane.gateway.protocol import (
    DEFAULT_GATEWAY_PORT,
    ConfigSnapshot,
    GatewayAuth,
    GatewayHealth,
)
from fleetplane.models.instances import Instance
from fleetplane.secrets.store import GATEWAY_TOKEN_KEY, SecretStore

logger = logging.getLogger(__name__)


class InstanceGateway:
    """Gateway access for instances, credentials read from the secret store.

    Parameters
    ----------
    manager:
        Connection pool the clients come from.
    secrets:
        Holds each instance's ``gateway_auth_token``.
    """

    def __init__(self, manager: GatewayManager, secrets: SecretStore) -> None:
        self._manager = manager
        self._secrets = secrets

    async def client_for(self, instance: Instance) -> GatewayClient:
        """Return a connected client for *instance*.

        Raises
        ------
        GatewayUnavailableError
            The instance has no gateway endpoint, or it cannot be reached.
        GatewayAuthError
            No credential is stored, or the agent rejected it.
        """
        if not instance.gateway_host:
            raise GatewayUnavailableError(f"Instance {instance.id} has no gateway endpoint")
        token = self._secrets.get(instance.id, GATEWAY_TOKEN_KEY)
        if token is None:
            raise GatewayAuthError(f"No gateway credential stored for instance {instance.id}")
        return await self._manager.get_client(
            instance.id,
            instance.gateway_host,
            GatewayAuth(token=token),
            port=instance.gateway_port or DEFAULT_GATEWAY_PORT,
        )

    async def fetch(self, instance: Instance) -> ConfigSnapshot:
        """Live configuration of *instance*."""
        client = await self.client_for(instance)
        return await client.config_get()

    async def health(self, instance: Instance) -> GatewayHealth:
        client = await self.client_for(instance)
        return await client.health()

    async def push_config(self, instance: Instance, config: dict[str, Any]) -> bool:
        """Make *config* the live configuration of *instance*.

        Returns False when the agent already runs *config*, True when it was
        applied.

        Raises
        ------
        ConfigConflictError
            The live configuration changed between read and apply.
        """
        client = await self.client_for(instance)
        desired = config_fingerprint(config)
        live = await client.config_get()
        if live.hash == desired or (live.config and config_fingerprint(live.config) == desired):
            logger.info("Instance %s already runs config %s", instance.id, desired[:12])
            return False
        await client.config_apply(config, base_hash=live.hash)
        logger.info("Applied config %s to %s over the gateway", desired[:12], instance.id)
        return True
