"""Gateway channel errors.

Every error carries one of the protocol error codes so callers can branch
on ``exc.code`` without parsing messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from fleetplane.core.errors import FleetplaneError


class GatewayErrorCode(str, Enum):
    NOT_LINKED = "NOT_LINKED"
    AGENT_TIMEOUT = "AGENT_TIMEOUT"
    INVALID_REQUEST = "INVALID_REQUEST"
    UNAVAILABLE = "UNAVAILABLE"


class GatewayError(FleetplaneError):
    """Base class for gateway failures."""

    default_code: GatewayErrorCode | None = None

    def __init__(
        self,
        message: str,
        code: GatewayErrorCode | str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code if code is not None else self.default_code
        self.details = details or {}


class GatewayUnavailableError(GatewayError):
    """The channel is closed, unreachable, or dropped mid-request."""

    default_code = GatewayErrorCode.UNAVAILABLE


class AgentTimeoutError(GatewayError):
    """The agent did not answer within the allotted time."""

    default_code = GatewayErrorCode.AGENT_TIMEOUT


class GatewayAuthError(GatewayError):
    """The handshake was rejected because of the credential."""


class GatewayProtocolError(GatewayError):
    """Malformed frame or request rejected as invalid."""

    default_code = GatewayErrorCode.INVALID_REQUEST


class ConfigConflictError(GatewayProtocolError):
    """A config write was rejected because its base hash is stale."""


_CONFLICT_REASONS = {"base_hash_mismatch", "hash_mismatch", "stale_base_hash"}


def error_from_shape(
    code: str | None, message: str, details: dict[str, Any] | None = None
) -> GatewayError:
    """Map a wire ``{code, message, details}`` error to a typed exception."""
    details = details or {}
    if details.get("reason") in _CONFLICT_REASONS:
        return ConfigConflictError(message, code, details)
    if code == GatewayErrorCode.AGENT_TIMEOUT.value:
        return AgentTimeoutError(message, code, details)
    if code == GatewayErrorCode.UNAVAILABLE.value:
        return GatewayUnavailableError(message, code, details)
    if code == GatewayErrorCode.INVALID_REQUEST.value:
        return GatewayProtocolError(message, code, details)
    return GatewayError(message, code, details)
