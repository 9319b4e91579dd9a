"""Gateway wire protocol — frame models and constants.

Frames are JSON objects with camelCase keys on the wire. Models accept
either snake_case or camelCase on input and dump camelCase with
``by_alias=True``.

Frame types
-----------
* ``challenge``  server -> client, first frame after the socket opens
* ``connect``    client -> server, offers protocol range and credential
* ``connected``  server -> client, handshake accepted
* ``error``      server -> client, handshake rejected
* ``req``/``res``  correlated request/response by ``id``
* ``event``      unsolicited server -> client notification
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

PROTOCOL_VERSION = 1
DEFAULT_GATEWAY_PORT = 18789


def build_gateway_url(host: str, port: int = DEFAULT_GATEWAY_PORT, secure: bool = False) -> str:
    scheme = "wss" if secure else "ws"
    return f"{scheme}://{host}:{port}"


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------


class AuthMode(str, Enum):
    TOKEN = "token"
    PASSWORD = "password"


class GatewayAuth(_Wire):
    mode: AuthMode = AuthMode.TOKEN
    token: str | None = None
    password: str | None = None

    @model_validator(mode="after")
    def _credential_matches_mode(self) -> GatewayAuth:
        if self.mode == AuthMode.TOKEN and not self.token:
            raise ValueError("token auth requires a token")
        if self.mode == AuthMode.PASSWORD and not self.password:
            raise ValueError("password auth requires a password")
        return self


class ProtocolRange(_Wire):
    min: int = PROTOCOL_VERSION
    max: int = PROTOCOL_VERSION


class ConnectFrame(_Wire):
    type: Literal["connect"] = "connect"
    protocol_version: ProtocolRange = Field(default_factory=ProtocolRange)
    auth: GatewayAuth
    client_metadata: dict[str, Any] = Field(default_factory=dict)
    capabilities: list[str] = Field(default_factory=list)


class Presence(_Wire):
    users: list[str] = Field(default_factory=list)
    state_version: int = 0


class GatewayHealth(_Wire):
    ok: bool
    channels: dict[str, Any] = Field(default_factory=dict)
    uptime: float | None = None


class ConnectResult(_Wire):
    presence: Presence = Field(default_factory=Presence)
    health: GatewayHealth = Field(default_factory=lambda: GatewayHealth(ok=True))
    state_version: int = 0


class ErrorShape(_Wire):
    code: str | None = None
    message: str = "Unknown gateway error"
    details: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Request / response
# ---------------------------------------------------------------------------


class RequestFrame(_Wire):
    type: Literal["req"] = "req"
    id: str
    method: str
    params: dict[str, Any] | None = None


class ResponseFrame(_Wire):
    """A response carries a result or an error, never both."""

    id: str
    ok: bool
    payload: Any = None
    error: ErrorShape | None = None

    @model_validator(mode="after")
    def _result_xor_error(self) -> ResponseFrame:
        if self.ok and self.error is not None:
            raise ValueError("successful response must not carry an error")
        if not self.ok and self.error is None:
            raise ValueError("failed response must carry an error")
        return self


def parse_response(frame: dict[str, Any]) -> ResponseFrame:
    """Normalize ``{type: res, id, ok, payload|error}`` and legacy ``{id, result|error}``."""
    if frame.get("type") == "res":
        return ResponseFrame.model_validate(frame)
    has_result = "result" in frame
    has_error = frame.get("error") is not None
    if has_result and has_error:
        raise ValueError("response carries both result and error")
    if has_error:
        return ResponseFrame(id=frame["id"], ok=False, error=ErrorShape.model_validate(frame["error"]))
    return ResponseFrame(id=frame["id"], ok=True, payload=frame.get("result"))


def is_response(frame: dict[str, Any]) -> bool:
    if frame.get("type") == "res":
        return True
    return "type" not in frame and "id" in frame and ("result" in frame or "error" in frame)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


class ConfigSnapshot(_Wire):
    """Live effective configuration with its content fingerprint."""

    config: dict[str, Any] = Field(default_factory=dict)
    hash: str


class ConfigApplyParams(_Wire):
    raw: str
    base_hash: str
    session_key: str | None = None
    restart_delay_ms: int | None = None

    @classmethod
    def build(
        cls,
        raw: str | dict[str, Any],
        base_hash: str,
        session_key: str | None = None,
        restart_delay_ms: int | None = None,
    ) -> ConfigApplyParams:
        if isinstance(raw, dict):
            raw = json.dumps(raw, sort_keys=True)
        return cls(
            raw=raw,
            base_hash=base_hash,
            session_key=session_key,
            restart_delay_ms=restart_delay_ms,
        )


class ConfigPatchParams(_Wire):
    patch: dict[str, Any]
    base_hash: str


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

EVENT_AGENT_OUTPUT = "agentOutput"
EVENT_PRESENCE = "presence"
EVENT_SHUTDOWN = "shutdown"
EVENT_KEEPALIVE = "keepalive"
KNOWN_EVENTS = frozenset({EVENT_AGENT_OUTPUT, EVENT_PRESENCE, EVENT_SHUTDOWN, EVENT_KEEPALIVE})


class EventFrame(_Wire):
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)


def parse_event(frame: dict[str, Any]) -> EventFrame | None:
    """Normalize ``{type: event, event, payload}`` and legacy ``{type: <name>, ...}``."""
    kind = frame.get("type")
    if kind == "event" and isinstance(frame.get("event"), str):
        return EventFrame(event=frame["event"], payload=frame.get("payload") or {})
    if kind in KNOWN_EVENTS:
        payload = frame.get("payload")
        if payload is None:
            payload = {k: v for k, v in frame.items() if k != "type"}
        return EventFrame(event=kind, payload=payload)
    return None


class AgentOutputEvent(_Wire):
    stream: str = "default"
    seq: int
    text: str | None = None
    data: dict[str, Any] | None = None


class PresenceEvent(_Wire):
    joined: list[str] = Field(default_factory=list)
    left: list[str] = Field(default_factory=list)
    state_version: int


class ShutdownEvent(_Wire):
    reason: str = ""
    grace_period_ms: int = 0


class KeepaliveEvent(_Wire):
    ts: float


class SequenceGap(_Wire):
    """A detected hole in an event sequence. Reported, never back-filled."""

    stream: str
    expected: int
    received: int

    @property
    def missing(self) -> int:
        return self.received - self.expected
