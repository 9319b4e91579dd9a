"""Gateway channel: RPC and event connection to running agents."""

from fleetplane.gateway.client import GatewayClient, ReconnectOptions
from fleetplane.gateway.errors import (
    AgentTimeoutError,
    ConfigConflictError,
    GatewayAuthError,
    GatewayError,
    GatewayErrorCode,
    GatewayProtocolError,
    GatewayUnavailableError,
)
from fleetplane.gateway.channel import InstanceGateway
from fleetplane.gateway.manager import GatewayManager
from fleetplane.gateway.protocol import (
    DEFAULT_GATEWAY_PORT,
    PROTOCOL_VERSION,
    ConfigSnapshot,
    GatewayAuth,
)

__all__ = [
    "AgentTimeoutError",
    "ConfigConflictError",
    "ConfigSnapshot",
    "DEFAULT_GATEWAY_PORT",
    "GatewayAuth",
    "GatewayAuthError",
    "GatewayClient",
    "GatewayError",
    "GatewayErrorCode",
    "GatewayManager",
    "GatewayProtocolError",
    "GatewayUnavailableError",
    "InstanceGateway",
    "PROTOCOL_VERSION",
    "ReconnectOptions",
]
